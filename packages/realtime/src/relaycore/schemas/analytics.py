"""Template-analytics hub payloads.

Learn: The hub owns these shapes, so the models are permissive:
unknown fields are kept (extra="allow") and everything except the
identifying key is optional. Field names are snake_case in Python and
camelCase on the wire.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class HubModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class TemplatePerformanceMetrics(HubModel):
    template_key: str
    template_name: Optional[str] = None
    intent_type: Optional[str] = None
    total_usages: int = 0
    success_rate: Optional[float] = None
    average_confidence_score: Optional[float] = None
    average_processing_time_ms: Optional[float] = None
    average_user_rating: Optional[float] = None
    last_used_date: Optional[datetime] = None


class RealTimeAnalyticsData(HubModel):
    active_users: int = 0
    queries_per_minute: float = 0.0
    active_templates: int = 0
    average_response_time: Optional[float] = None
    error_rate: Optional[float] = None
    top_templates: list[TemplatePerformanceMetrics] = Field(default_factory=list)
    recent_activity: list[dict[str, Any]] = Field(default_factory=list)
    last_updated: Optional[datetime] = None


class PerformanceAlert(HubModel):
    id: Optional[str] = None
    alert_type: Optional[str] = None
    severity: Optional[str] = None
    message: str = ""
    template_key: Optional[str] = None
    created_at: Optional[datetime] = None
