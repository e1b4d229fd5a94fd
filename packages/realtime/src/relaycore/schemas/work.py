"""Processing-engine message contract.

Request:  {id, type, data, options?}
Response: {id, success, result?, error?, processingTime}

Both cross the process boundary as plain dicts (model_dump(by_alias=True)),
so nothing but serializable values ever leaves the caller.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OperationType = Literal["aggregate", "filter", "sort", "transform", "analyze"]


class WorkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: OperationType
    data: list[dict[str, Any]] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class WorkResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    processing_time: float = Field(0.0, alias="processingTime")  # ms

    def to_message(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
