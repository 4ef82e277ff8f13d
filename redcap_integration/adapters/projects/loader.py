"""YAML project table loader.

Each entry pairs the REDCap settings of a project with the Management
Portal project its participants are enrolled in::

    projects:
      - redcap_info:
          url: https://redcap.example.org/redcap/
          project_id: 12
          token: 0123456789ABCDEF
          enrolment_event: enrolment_arm_1
          integration_form: radar_integrate
          attributes:
            - field_name: age
              attribute_key: attrAge
        mp_info:
          project_name: radar-test
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from redcap_integration.core.errors import ConfigurationError
from redcap_integration.core.models import (
    DEFAULT_API_PATH,
    DEFAULT_SUBJECT_ID_FIELD,
    AttributeMapping,
    ProjectConfig,
)

logger = logging.getLogger(__name__)


class AttributeEntry(BaseModel):
    """A REDCap field copied into a subject attribute."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field_name: str = Field(min_length=1)
    attribute_key: str = Field(min_length=1)


class RedCapInfo(BaseModel):
    """REDCap side of a project entry."""

    model_config = ConfigDict(extra="forbid")

    url: str
    project_id: int
    token: str = Field(min_length=1, repr=False)
    enrolment_event: str | None = None
    integration_form: str | None = None
    attributes: list[AttributeEntry] = Field(default_factory=list)
    subject_id_field: str = DEFAULT_SUBJECT_ID_FIELD
    api_path: str = DEFAULT_API_PATH
    enrolment_event_only: bool = False

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure the REDCap URL is absolute."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v


class ManagementPortalInfo(BaseModel):
    """Management Portal side of a project entry."""

    model_config = ConfigDict(extra="forbid")

    project_name: str = Field(min_length=1)


class ProjectEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    redcap_info: RedCapInfo
    mp_info: ManagementPortalInfo

    def to_config(self) -> ProjectConfig:
        info = self.redcap_info
        return ProjectConfig(
            source_url=info.url,
            project_id=info.project_id,
            token=info.token,
            target_project_name=self.mp_info.project_name,
            enrolment_event_name=info.enrolment_event,
            integration_form_name=info.integration_form,
            attribute_mappings=tuple(
                AttributeMapping(a.field_name, a.attribute_key) for a in info.attributes
            ),
            subject_id_field=info.subject_id_field,
            api_path=info.api_path,
            enrolment_event_only=info.enrolment_event_only,
        )


class ProjectTable(BaseModel):
    model_config = ConfigDict(extra="forbid")

    projects: list[ProjectEntry] = Field(default_factory=list)


def parse_projects(data: Any) -> list[ProjectConfig]:
    """Validate an already-loaded YAML document into project configs.

    Raises:
        ConfigurationError: If the document does not match the schema.
    """
    try:
        table = ProjectTable.model_validate(data or {})
        return [entry.to_config() for entry in table.projects]
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid project configuration: {e}") from e


def load_projects(path: str | Path) -> list[ProjectConfig]:
    """Load the project table from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Project configuration {path} cannot be found")

    logger.info(f"Loading project configuration from {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read project configuration {path}: {e}") from e

    projects = parse_projects(data)
    if not projects:
        logger.warning(f"No projects configured in {path}")
    return projects
