"""Error taxonomy for the integration pipeline.

Client-side errors (malformed trigger, unknown project, missing values)
are raised before any remote call is made. Remote-side errors carry the
partial result where a remote system may already have been changed.
"""

from .models import PipelineResult


class IntegrationError(Exception):
    """Base class for all errors raised by the integration core."""


class MalformedTriggerError(IntegrationError):
    """The Data Entry Trigger body could not be parsed."""


class ConfigurationError(IntegrationError):
    """The project table is invalid (unreadable, malformed, or ambiguous)."""


class ConfigNotFoundError(IntegrationError):
    """No project is configured for the trigger's host and project id."""

    def __init__(self, host: str | None, project_id: int):
        where = f" for instance {host}" if host else ""
        super().__init__(f"No project {project_id} configured{where}")
        self.host = host
        self.project_id = project_id


class ValidationError(IntegrationError):
    """A value required to process the trigger is missing."""


class SourceFetchError(IntegrationError):
    """Field values could not be fetched from REDCap."""


class SourceWriteBackError(IntegrationError):
    """The integration form could not be written back to REDCap.

    Raised on transport failure only. By the time this is raised the
    subject has already been created or updated; ``result`` says so.
    """

    def __init__(self, message: str, result: PipelineResult | None = None):
        super().__init__(message)
        self.result = result


class TargetTransportError(IntegrationError):
    """The Management Portal could not be reached."""


class TargetOperationError(IntegrationError):
    """The Management Portal refused to create or update the subject."""

    def __init__(self, message: str, result: PipelineResult | None = None):
        super().__init__(message)
        self.result = result


__all__ = [
    "ConfigNotFoundError",
    "ConfigurationError",
    "IntegrationError",
    "MalformedTriggerError",
    "SourceFetchError",
    "SourceWriteBackError",
    "TargetOperationError",
    "TargetTransportError",
    "ValidationError",
]
