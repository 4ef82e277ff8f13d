"""Fake TargetSystemPort implementation for testing."""

from collections.abc import Mapping
from dataclasses import dataclass

from redcap_integration.core.models import Subject, SubjectOperationStatus
from redcap_integration.core.ports import TargetSystemPort


@dataclass(frozen=True)
class UpsertCall:
    source_url: str
    project_id: int
    record_id: int
    attributes: dict[str, str]
    existing_external_id: str | None


class FakeTargetSystemPort(TargetSystemPort):
    """In-memory Management Portal adapter for testing.

    Returns a configurable status and identifier, and records every
    upsert for assertions.
    """

    def __init__(
        self,
        status: SubjectOperationStatus = SubjectOperationStatus.CREATED,
        identifier: str | None = "S1",
    ):
        self.status = status
        self.identifier = identifier
        self.upsert_calls: list[UpsertCall] = []
        self._error: Exception | None = None

    @property
    def upsert_call_count(self) -> int:
        return len(self.upsert_calls)

    def set_error(self, error: Exception | None) -> None:
        """Configure the fake to raise on the next upsert."""
        self._error = error

    async def upsert_subject(
        self,
        source_url: str,
        project_id: int,
        record_id: int,
        attributes: Mapping[str, str],
        existing_external_id: str | None = None,
    ) -> Subject:
        self.upsert_calls.append(
            UpsertCall(source_url, project_id, record_id, dict(attributes), existing_external_id)
        )
        if self._error:
            raise self._error
        return Subject(
            identifier=existing_external_id or self.identifier,
            operation_status=self.status,
            external_id=record_id,
            attributes=dict(attributes),
        )

    def get_last_upsert(self) -> UpsertCall | None:
        """Get the most recent upsert, if any."""
        if self.upsert_calls:
            return self.upsert_calls[-1]
        return None
