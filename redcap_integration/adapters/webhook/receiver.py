"""Receiver for REDCap Data Entry Triggers.

Parses the trigger body, runs the integrator and translates the outcome
into an HTTP status code and JSON body. The HTTP transport itself lives in
http_server.py.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from redcap_integration.core.errors import (
    ConfigNotFoundError,
    IntegrationError,
    MalformedTriggerError,
    SourceFetchError,
    SourceWriteBackError,
    TargetOperationError,
    TargetTransportError,
    ValidationError,
)
from redcap_integration.core.models import PipelineResult
from redcap_integration.core.ports import TriggerHandlerPort
from redcap_integration.core.trigger_parser import TriggerParser

logger = logging.getLogger(__name__)

# Most specific first
_STATUS_BY_ERROR: tuple[tuple[type[IntegrationError], int], ...] = (
    (MalformedTriggerError, 400),
    (ValidationError, 400),
    (ConfigNotFoundError, 404),
    (TargetOperationError, 500),
    (SourceFetchError, 502),
    (TargetTransportError, 502),
    (SourceWriteBackError, 502),
)


def status_for_error(error: IntegrationError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def status_for_result(result: PipelineResult) -> int:
    """200 unless REDCap refused the write-back of a changed subject."""
    if result.write_back_attempted and not (
        result.write_back_succeeded or result.write_back_no_effect
    ):
        return 500
    return 200


def result_body(result: PipelineResult) -> dict[str, Any]:
    subject = result.subject
    return {
        "success": result.success,
        "stage": result.stage.value,
        "write_back_attempted": result.write_back_attempted,
        "write_back_succeeded": result.write_back_succeeded,
        "write_back_no_effect": result.write_back_no_effect,
        "subject": (
            {
                "id": subject.identifier,
                "operation_status": subject.operation_status.value,
            }
            if subject
            else None
        ),
    }


class RecordLocks:
    """One asyncio.Lock per (project id, record) while it is in use.

    REDCap can fire several triggers for a single save; without this two
    requests for the same record could both create a subject.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[int | None, int | None], asyncio.Lock] = {}
        self._users: dict[tuple[int | None, int | None], int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, project_id: int | None, record: int | None) -> AsyncIterator[None]:
        key = (project_id, record)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class WebhookReceiver:
    """Handles Data Entry Trigger requests.

    Forwards parsed triggers to the TriggerHandlerPort, one request at a
    time per record.
    """

    def __init__(
        self,
        trigger_handler: TriggerHandlerPort,
        parser: TriggerParser,
    ):
        """Initialize the webhook receiver.

        Args:
            trigger_handler: Runs the integration pipeline.
            parser: Turns request bodies into triggers.
        """
        self.trigger_handler = trigger_handler
        self.parser = parser
        self.record_locks = RecordLocks()

    async def handle_trigger(self, body: str | bytes) -> tuple[int, dict[str, Any]]:
        """Process one trigger body.

        Returns:
            Tuple of (HTTP status code, JSON-serialisable body).
        """
        try:
            trigger = self.parser.parse(body)
        except MalformedTriggerError as e:
            logger.warning(f"Rejected malformed trigger: {e}")
            return 400, {"status": "error", "error": "malformed_trigger", "message": str(e)}

        logger.info(
            "Trigger received",
            extra={
                "project_id": trigger.project_id,
                "record": trigger.record,
                "instrument": trigger.instrument,
                "event_name": trigger.event_name,
            },
        )

        try:
            async with self.record_locks.hold(trigger.project_id, trigger.record):
                result = await self.trigger_handler.handle(trigger)
        except IntegrationError as e:
            status = status_for_error(e)
            log = logger.warning if status < 500 else logger.error
            log(
                f"Trigger processing failed: {e}",
                extra={"project_id": trigger.project_id, "record": trigger.record},
            )
            body_out: dict[str, Any] = {
                "status": "error",
                "error": type(e).__name__,
                "message": str(e),
            }
            partial = getattr(e, "result", None)
            if isinstance(partial, PipelineResult):
                body_out["result"] = result_body(partial)
                body_out["subject_updated"] = bool(
                    partial.subject and partial.subject.was_mutated
                )
            return status, body_out

        status = status_for_result(result)
        return status, {
            "status": "success" if status == 200 else "error",
            "result": result_body(result),
        }
