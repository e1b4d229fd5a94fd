"""Data processing engine — run row operations off the event loop.

Learn: Operations are CPU-bound, so they run in a ProcessPoolExecutor.
The loop never blocks; it only posts a request message and awaits a
Future. Each request is tracked in a WorkCorrelator by its id, and the
worker echoes that id back in its response, so concurrent submissions
settle their own callers no matter which finishes first.

Only plain dicts cross the process boundary:

    caller ──WorkRequest──▶ execute_request() in a worker
           ◀──WorkResponse── {id, success, result|error, processingTime}

A failure inside one request comes back as ``success=False`` on that
request's response. It never disturbs other requests or the caller's
loop. The typed helpers (aggregate, filter...) unwrap the response and
raise ProcessingError instead.
"""

import asyncio
import os
import time
from concurrent.futures import Executor, Future, ProcessPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

import structlog
from pydantic import ValidationError

from relaycore.errors import ProcessingError, RelayError, RequestCancelledError
from relaycore.processing.operations import run_operation
from relaycore.realtime.correlator import WorkCorrelator
from relaycore.schemas.work import WorkRequest, WorkResponse

logger = structlog.get_logger()


# ─── Worker side ─────────────────────────────────────────


def execute_request(message: dict) -> dict:
    """Run one request message and return a response message.

    Module-level so ProcessPoolExecutor can pickle it by reference.
    """
    started = time.perf_counter()
    request_id = str(message.get("id", "")) if isinstance(message, dict) else ""
    try:
        request = WorkRequest.model_validate(message)
        result = run_operation(request.type, request.data, request.options)
        response = WorkResponse(
            id=request.id,
            success=True,
            result=result,
            processing_time=_elapsed_ms(started),
        )
    except Exception as e:
        response = WorkResponse(
            id=request_id,
            success=False,
            error=_describe(e),
            processing_time=_elapsed_ms(started),
        )
    return response.to_message()


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _describe(exc: Exception) -> str:
    if isinstance(exc, RelayError):
        return str(exc)
    if isinstance(exc, ValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return f"Invalid request: {errors}"
    return f"{type(exc).__name__}: {exc}"


# ─── Caller side ─────────────────────────────────────────


@dataclass
class EngineStats:
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def in_flight(self) -> int:
        return self.submitted - self.succeeded - self.failed


class DataProcessingEngine:
    def __init__(
        self,
        max_workers: Optional[int] = None,
        *,
        executor: Optional[Executor] = None,
        correlator: Optional[WorkCorrelator] = None,
        request_timeout: Optional[float] = None,
    ):
        self.max_workers = max_workers or os.cpu_count() or 1
        self.request_timeout = request_timeout
        self.correlator = correlator or WorkCorrelator(prefix="work-")
        self.stats = EngineStats()
        self._executor = executor
        self._owns_executor = executor is None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_executor(self) -> Executor:
        # Created lazily so importing/constructing never forks
        if self._executor is None:
            self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
            logger.info("relaycore.engine.started", workers=self.max_workers)
        return self._executor

    async def submit(
        self, operation: str, data: Iterable[dict], options: Optional[dict] = None
    ) -> WorkResponse:
        """Run ``operation`` on ``data``. Never raises for a failed request."""
        message = {
            "id": self.correlator.next_id(),
            "type": operation,
            "data": list(data),
            "options": dict(options or {}),
        }
        return await self.submit_request(message)

    async def submit_request(self, request: Union[WorkRequest, dict]) -> WorkResponse:
        if self._closed:
            raise ProcessingError("Processing engine is shut down")

        if isinstance(request, WorkRequest):
            message = request.model_dump(by_alias=True)
        else:
            message = dict(request)
        if not message.get("id"):
            message["id"] = self.correlator.next_id()
        request_id = str(message["id"])
        message["id"] = request_id

        started = time.perf_counter()
        _, future = self.correlator.register(
            request_id, timeout=self.request_timeout, label=message.get("type")
        )
        self.stats.submitted += 1

        loop = asyncio.get_running_loop()
        try:
            job = loop.run_in_executor(self._get_executor(), execute_request, message)
        except RuntimeError as e:
            # Executor already shut down
            self.correlator.reject(request_id, ProcessingError(f"Worker pool unavailable: {e}"))
        else:
            job.add_done_callback(lambda j: self._on_job_done(request_id, j))

        try:
            response = await future
        except RelayError as e:
            response = WorkResponse(
                id=request_id,
                success=False,
                error=str(e),
                processing_time=_elapsed_ms(started),
            )

        if response.success:
            self.stats.succeeded += 1
        else:
            self.stats.failed += 1
            logger.warning(
                "relaycore.engine.request_failed",
                request_id=request_id,
                operation=message.get("type"),
                error=response.error,
            )
        return response

    def _on_job_done(self, request_id: str, job: "asyncio.Future | Future") -> None:
        if job.cancelled():
            self.correlator.reject(request_id, RequestCancelledError(f"Request {request_id} was cancelled"))
            return
        exc = job.exception()
        if exc is not None:
            # BrokenProcessPool, unpicklable payloads, ...
            logger.error("relaycore.engine.worker_failed", request_id=request_id, error=str(exc))
            self.correlator.resolve(
                request_id,
                WorkResponse(id=request_id, success=False, error=f"Worker failure: {_describe(exc)}"),
            )
            return
        response = WorkResponse.model_validate(job.result())
        if response.id != request_id:
            self.correlator.reject(
                request_id,
                ProcessingError(f"Worker answered {response.id!r} for request {request_id!r}"),
            )
            return
        self.correlator.resolve(request_id, response)

    async def process_many(self, requests: Iterable[Union[WorkRequest, dict]]) -> list[WorkResponse]:
        """Submit all at once; responses come back in request order."""
        return list(await asyncio.gather(*(self.submit_request(r) for r in requests)))

    # ─── Typed helpers ────────────────────────────────────

    async def run(self, operation: str, data: Iterable[dict], options: Optional[dict] = None) -> Any:
        response = await self.submit(operation, data, options)
        if not response.success:
            raise ProcessingError(response.error or f"{operation} failed")
        return response.result

    async def aggregate(
        self, data: Iterable[dict], aggregations: dict, group_by: Optional[str] = None
    ) -> Any:
        return await self.run("aggregate", data, {"groupBy": group_by, "aggregations": aggregations})

    async def filter(
        self,
        data: Iterable[dict],
        filters: Optional[list] = None,
        search_term: Optional[str] = None,
        search_fields: Optional[list] = None,
    ) -> list[dict]:
        options: dict = {"filters": filters or []}
        if search_term is not None:
            options["searchTerm"] = search_term
        if search_fields is not None:
            options["searchFields"] = search_fields
        return await self.run("filter", data, options)

    async def sort(self, data: Iterable[dict], sort_by: str, sort_order: str = "asc") -> list[dict]:
        return await self.run("sort", data, {"sortBy": sort_by, "sortOrder": sort_order})

    async def transform(self, data: Iterable[dict], transformations: list) -> list[dict]:
        return await self.run("transform", data, {"transformations": transformations})

    async def analyze(self, data: Iterable[dict], fields: Optional[list] = None) -> dict:
        return await self.run("analyze", data, {"fields": fields} if fields else {})

    # ─── Lifecycle ────────────────────────────────────────

    def shutdown(self, wait: bool = True) -> None:
        """Blocking shutdown for code outside an event loop."""
        executor = self._close()
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)
            logger.info("relaycore.engine.stopped", **self._stats_dict())

    async def aclose(self) -> None:
        """Shut down without stalling the loop while running jobs finish."""
        executor = self._close()
        if executor is not None:
            await asyncio.to_thread(executor.shutdown, wait=True, cancel_futures=True)
            logger.info("relaycore.engine.stopped", **self._stats_dict())

    def _close(self) -> Optional[Executor]:
        """Reject pending callers. Returns the executor still to shut down."""
        if self._closed:
            return None
        self._closed = True
        cancelled = self.correlator.reject_all(
            lambda: RequestCancelledError("Processing engine shut down")
        )
        logger.info("relaycore.engine.closing", cancelled=cancelled)
        if self._executor is not None and self._owns_executor:
            return self._executor
        return None

    def _stats_dict(self) -> dict:
        return {
            "submitted": self.stats.submitted,
            "succeeded": self.stats.succeeded,
            "failed": self.stats.failed,
        }

    async def __aenter__(self) -> "DataProcessingEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
