"""Port interfaces for the REDCap integration service.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - SourceSystemPort: Read record fields from and write forms to REDCap
   - TargetSystemPort: Create or update subjects in the Management Portal

2. **Driving Ports** (adapters/external systems call into core)
   - TriggerHandlerPort: Entry point for a parsed Data Entry Trigger
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

from .models import PipelineResult, Subject, Trigger, WriteBackStatus


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class SourceSystemPort(ABC):
    """Port for the REDCap project that fired the trigger.

    One instance is bound to one project (URL and API token). Adapters
    must not retry; a failed call ends the current request.
    """

    @abstractmethod
    async def fetch_attributes(
        self, field_names: Sequence[str], record_id: int
    ) -> dict[str, str]:
        """Fetch the named fields of a single record.

        Args:
            field_names: Field names to request, without duplicates.
            record_id: REDCap record id.

        Returns:
            Mapping of field name to value. Fields REDCap does not return
            are absent.

        Raises:
            SourceFetchError: On transport failure, non-success status,
                or a response that is not a non-empty list of objects.
        """

    @abstractmethod
    async def write_back(
        self,
        subject: Subject,
        record_id: int,
        event_name: str,
        form_name: str,
    ) -> WriteBackStatus:
        """Store the subject identifier and mark the form complete.

        Args:
            subject: Subject returned by the identity service.
            record_id: REDCap record id.
            event_name: Event holding the integration form.
            form_name: Name of the integration form.

        Returns:
            SUCCEEDED, NO_EFFECT when REDCap accepted the call but updated
            nothing, or REJECTED when REDCap answered with an error status.

        Raises:
            SourceWriteBackError: Only on transport failure.
        """


class TargetSystemPort(ABC):
    """Port for the Management Portal identity service."""

    @abstractmethod
    async def upsert_subject(
        self,
        source_url: str,
        project_id: int,
        record_id: int,
        attributes: Mapping[str, str],
        existing_external_id: str | None = None,
    ) -> Subject:
        """Create or update the subject for a REDCap record.

        If ``existing_external_id`` names a known subject, its attributes
        are updated (UPDATED) or left alone when nothing differs
        (UNCHANGED). Otherwise a subject scoped to (source_url, project_id,
        record_id) is created (CREATED).

        Returns:
            Subject with operation_status FAILED when the identity service
            rejects the operation.

        Raises:
            TargetTransportError: Only when the service cannot be reached.
        """


# ============================================================================
# DRIVING PORTS (Adapters/external systems call into core)
# ============================================================================


class TriggerHandlerPort(ABC):
    """Port for processing a parsed trigger end to end.

    Driving port: the webhook receiver calls this once per request.
    """

    @abstractmethod
    async def handle(self, trigger: Trigger) -> PipelineResult:
        """Run fetch, upsert and write-back for one trigger.

        Raises:
            ValidationError, ConfigNotFoundError: Before any remote call.
            SourceFetchError: Under the strict fetch policy.
            TargetOperationError: When the subject operation failed.
            TargetTransportError, SourceWriteBackError: On transport failure.
        """
