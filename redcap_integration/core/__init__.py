"""Core domain logic for the REDCap integration service.

This package contains zero external dependencies and represents
the pure business logic of the application. All adapters and
external integrations are handled by the adapters package.
"""

from .models import (
    AttributeMapping,
    FetchFailurePolicy,
    InstrumentStatus,
    IntegrationRun,
    IntegrationStage,
    PipelineResult,
    ProjectConfig,
    Subject,
    SubjectOperationStatus,
    Trigger,
    WriteBackStatus,
)

__all__ = [
    "AttributeMapping",
    "FetchFailurePolicy",
    "InstrumentStatus",
    "IntegrationRun",
    "IntegrationStage",
    "PipelineResult",
    "ProjectConfig",
    "Subject",
    "SubjectOperationStatus",
    "Trigger",
    "WriteBackStatus",
]
