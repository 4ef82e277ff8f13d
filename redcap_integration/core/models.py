"""Domain models for the REDCap integration service.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from urllib.parse import urljoin, urlsplit

# Field that carries a previously assigned subject identifier through the
# fetch call and receives the identifier on write-back.
DEFAULT_SUBJECT_ID_FIELD = "subjectId"

DEFAULT_API_PATH = "/redcap/api/"

COMPLETE_SUFFIX = "_complete"


class InstrumentStatus(Enum):
    """Completion status REDCap reports for the saved instrument.

    For data entry forms 0=Incomplete, 1=Unverified, 2=Complete. Surveys
    only use 0 (partial response) and 2 (completed response).
    """

    INCOMPLETE = 0
    UNVERIFIED = 1
    COMPLETE = 2

    @classmethod
    def from_code(cls, code: int) -> "InstrumentStatus":
        """Map a REDCap status code to its enum member."""
        try:
            return cls(code)
        except ValueError:
            raise ValueError(
                f"{code} is not a valid instrument status (expected 0, 1 or 2)"
            ) from None


@dataclass(frozen=True)
class Trigger:
    """A parsed REDCap Data Entry Trigger.

    Every field is optional: REDCap omits parameters that do not apply
    (e.g. redcap_event_name outside longitudinal projects). Whether a
    missing value is acceptable is decided by the integrator, not here.
    """

    project_id: int | None = None
    username: str | None = None
    instrument: str | None = None
    record: int | None = None
    event_name: str | None = None
    data_access_group: str | None = None
    instrument_status: InstrumentStatus | None = None
    source_url: str | None = None
    project_url: str | None = None

    def is_event(self, event_name: str | None) -> bool:
        """Check whether this trigger was fired for the given event."""
        if self.event_name is None or event_name is None:
            return False
        return self.event_name.casefold() == event_name.casefold()


@dataclass(frozen=True)
class AttributeMapping:
    """Maps a REDCap field to a Management Portal subject attribute.

    Structural equality and hashing let mappings live in a set, so a
    field listed twice in configuration is only requested once.
    """

    field_name: str
    attribute_key: str

    def __post_init__(self) -> None:
        if not self.field_name or not self.field_name.strip():
            raise ValueError("field_name must be a non-empty string")
        if not self.attribute_key or not self.attribute_key.strip():
            raise ValueError("attribute_key must be a non-empty string")


def ordered_set(items: Iterable[str]) -> tuple[str, ...]:
    """Deduplicate by hash while keeping first-seen order."""
    return tuple(dict.fromkeys(items))


@dataclass(frozen=True)
class ProjectConfig:
    """Processing rules for one REDCap project.

    Loaded once at startup and never modified afterwards.
    """

    source_url: str
    project_id: int
    token: str = field(repr=False)
    target_project_name: str
    enrolment_event_name: str | None = None
    integration_form_name: str | None = None
    attribute_mappings: tuple[AttributeMapping, ...] = ()
    subject_id_field: str = DEFAULT_SUBJECT_ID_FIELD
    api_path: str = DEFAULT_API_PATH
    # Ignore triggers fired for any event other than the enrolment event
    enrolment_event_only: bool = False

    def __post_init__(self) -> None:
        """Validate the URL and collapse duplicate mappings."""
        parts = urlsplit(self.source_url)
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            raise ValueError(f"source_url must be an http(s) URL, got {self.source_url!r}")
        if not self.token:
            raise ValueError("token must be a non-empty string")
        object.__setattr__(
            self, "attribute_mappings", tuple(dict.fromkeys(self.attribute_mappings))
        )

    @property
    def host(self) -> str:
        """Lowercase hostname of the REDCap instance."""
        return urlsplit(self.source_url).hostname or ""

    @property
    def api_url(self) -> str:
        """REDCap API endpoint on the configured instance."""
        parts = urlsplit(self.source_url)
        return urljoin(f"{parts.scheme}://{parts.netloc}", self.api_path)

    def fetch_fields(self) -> tuple[str, ...]:
        """Field names to request: every mapped field plus the subject id field."""
        return ordered_set(
            [m.field_name for m in self.attribute_mappings] + [self.subject_id_field]
        )

    def map_attributes(self, values: Mapping[str, str]) -> dict[str, str]:
        """Translate fetched field values into subject attributes.

        Fields absent from ``values`` are skipped. When two mappings share
        an attribute key the first mapping in configuration order wins.
        """
        attributes: dict[str, str] = {}
        for mapping in self.attribute_mappings:
            if mapping.field_name in values:
                attributes.setdefault(mapping.attribute_key, values[mapping.field_name])
        return attributes


class SubjectOperationStatus(Enum):
    """Outcome of a create-or-update call against the identity service."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True)
class Subject:
    """A participant as known by the Management Portal."""

    identifier: str | None
    operation_status: SubjectOperationStatus
    external_id: int | None = None
    attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Convert attributes dict to read-only proxy."""
        if isinstance(self.attributes, dict):
            object.__setattr__(self, "attributes", MappingProxyType(self.attributes))

    @property
    def was_mutated(self) -> bool:
        """True when the identity service stored something new."""
        return self.operation_status in {
            SubjectOperationStatus.CREATED,
            SubjectOperationStatus.UPDATED,
        }


class WriteBackStatus(Enum):
    """Outcome of writing the integration form back to REDCap.

    NO_EFFECT covers a successful HTTP call where REDCap reports that zero
    records were imported.
    """

    SUCCEEDED = "succeeded"
    NO_EFFECT = "no_effect"
    REJECTED = "rejected"


class FetchFailurePolicy(Enum):
    """What the integrator does when REDCap field values cannot be fetched.

    LENIENT continues with no attributes and no known subject id, so a
    brand-new record can still be enrolled. STRICT aborts the request.
    """

    LENIENT = "lenient"
    STRICT = "strict"


class IntegrationStage(Enum):
    """Lifecycle of a single trigger through the integration pipeline."""

    RECEIVED = "received"
    VALIDATED = "validated"
    ATTRIBUTES_RESOLVED = "attributes_resolved"
    SUBJECT_RESOLVED = "subject_resolved"
    WRITTEN_BACK = "written_back"
    SKIPPED = "skipped"
    FAILED = "failed"


_TRANSITIONS: dict[IntegrationStage, frozenset[IntegrationStage]] = {
    IntegrationStage.RECEIVED: frozenset({IntegrationStage.VALIDATED}),
    IntegrationStage.VALIDATED: frozenset(
        {IntegrationStage.ATTRIBUTES_RESOLVED, IntegrationStage.SKIPPED}
    ),
    IntegrationStage.ATTRIBUTES_RESOLVED: frozenset({IntegrationStage.SUBJECT_RESOLVED}),
    IntegrationStage.SUBJECT_RESOLVED: frozenset(
        {IntegrationStage.WRITTEN_BACK, IntegrationStage.SKIPPED}
    ),
    IntegrationStage.WRITTEN_BACK: frozenset(),
    IntegrationStage.SKIPPED: frozenset(),
    IntegrationStage.FAILED: frozenset(),
}


@dataclass
class IntegrationRun:
    """Tracks one trigger's progress through the pipeline.

    State Transitions:
        RECEIVED → VALIDATED → ATTRIBUTES_RESOLVED → SUBJECT_RESOLVED
        SUBJECT_RESOLVED → WRITTEN_BACK | SKIPPED
        VALIDATED → SKIPPED (other event, enrolment-only project)
        ANY non-terminal → FAILED

    Note: This dataclass is intentionally mutable; one instance lives for
    exactly one request.
    """

    project_id: int | None
    record: int | None
    stage: IntegrationStage = IntegrationStage.RECEIVED
    subject: Subject | None = None

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.stage]

    def advance(self, stage: IntegrationStage) -> None:
        """Move to the next stage, rejecting transitions the pipeline never makes."""
        if stage is IntegrationStage.FAILED:
            self.fail()
            return
        if stage not in _TRANSITIONS[self.stage]:
            raise ValueError(f"Cannot move from {self.stage.value} to {stage.value}")
        self.stage = stage

    def fail(self) -> None:
        """Mark the run as failed."""
        if self.is_terminal:
            raise ValueError(f"Run already finished in {self.stage.value}")
        self.stage = IntegrationStage.FAILED


@dataclass(frozen=True)
class PipelineResult:
    """What the integrator tells its caller about a processed trigger."""

    success: bool
    write_back_attempted: bool = False
    write_back_succeeded: bool = False
    write_back_no_effect: bool = False
    subject: Subject | None = None
    stage: IntegrationStage = IntegrationStage.SKIPPED
