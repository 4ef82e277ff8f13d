"""REDCap record API client.

Implements SourceSystemPort by posting form-encoded requests to the
REDCap API of one project. Every request carries the project's API token
in the body.
"""

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from redcap_integration.core.errors import SourceFetchError, SourceWriteBackError
from redcap_integration.core.models import (
    COMPLETE_SUFFIX,
    InstrumentStatus,
    ProjectConfig,
    Subject,
    WriteBackStatus,
)
from redcap_integration.core.ports import SourceSystemPort

logger = logging.getLogger(__name__)

TOKEN_LABEL = "token"
DATA_LABEL = "data"
FIELDS_LABEL = "fields"
RECORDS_LABEL = "records"
RESULT_INDEX = 0


@dataclass(frozen=True)
class EavEntry:
    """One entity-attribute-value item of a REDCap record import."""

    record: str
    redcap_event_name: str
    field_name: str
    value: str

    def as_dict(self) -> dict[str, str]:
        return {
            "record": self.record,
            "redcap_event_name": self.redcap_event_name,
            "field_name": self.field_name,
            "value": self.value,
        }


def encode_list_params(values: Sequence[str], label: str) -> dict[str, str]:
    """Encode a list the way REDCap expects: ``label[0]``, ``label[1]``, ..."""
    return {f"{label}[{index}]": value for index, value in enumerate(values)}


def fetch_parameters(field_names: Sequence[str], record_id: int) -> dict[str, str]:
    """Request parameters for a flat export of one record."""
    parameters = {
        "content": "record",
        "format": "json",
        "type": "flat",
        "rawOrLabel": "label",
    }
    parameters.update(encode_list_params(list(field_names), FIELDS_LABEL))
    parameters.update(encode_list_params([str(record_id)], RECORDS_LABEL))
    return parameters


def write_back_parameters(entries: Sequence[EavEntry]) -> dict[str, str]:
    """Request parameters for an EAV import that overwrites existing values."""
    return {
        DATA_LABEL: json.dumps([entry.as_dict() for entry in entries]),
        "content": "record",
        "format": "json",
        "type": "eav",
        "overwriteBehavior": "overwrite",
        "returnContent": "count",
        "returnFormat": "json",
    }


class RedCapClient(SourceSystemPort):
    """REDCap API client bound to a single project."""

    def __init__(self, config: ProjectConfig, client: httpx.AsyncClient):
        """Initialize the client.

        Args:
            config: Project whose URL and token are used.
            client: Shared HTTP client; its lifetime is owned by the caller.
        """
        self.config = config
        self.client = client
        if not config.source_url.startswith("https://"):
            logger.warning(
                "The REDCap instance is not using an encrypted connection",
                extra={"redcap_url": config.source_url},
            )

    @property
    def api_url(self) -> str:
        return self.config.api_url

    async def _post(self, parameters: dict[str, str]) -> httpx.Response:
        body = dict(parameters)
        body[TOKEN_LABEL] = self.config.token
        return await self.client.post(self.api_url, data=body)

    async def fetch_attributes(
        self, field_names: Sequence[str], record_id: int
    ) -> dict[str, str]:
        """Fetch the labelled values of the given fields for one record."""
        try:
            response = await self._post(fetch_parameters(field_names, record_id))
        except httpx.RequestError as e:
            raise SourceFetchError(f"Error fetching REDCap record {record_id}: {e}") from e

        if response.is_error:
            raise SourceFetchError(
                f"REDCap returned {response.status_code} fetching record {record_id}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise SourceFetchError(f"REDCap returned invalid JSON for record {record_id}") from e

        if not isinstance(result, list) or not result:
            raise SourceFetchError(f"REDCap returned no data for record {record_id}")
        data = result[RESULT_INDEX]
        if not isinstance(data, dict):
            raise SourceFetchError(f"Unexpected REDCap response for record {record_id}")

        logger.info(f"Successful fetch for record {record_id}")
        return {str(k): "" if v is None else str(v) for k, v in data.items()}

    def integration_entries(
        self, subject: Subject, record_id: int, event_name: str, form_name: str
    ) -> list[EavEntry]:
        """EAV entries holding the subject id and the form completion flag."""
        record = str(record_id)
        entries = {
            EavEntry(record, event_name, self.config.subject_id_field, subject.identifier or ""),
            EavEntry(
                record,
                event_name,
                f"{form_name}{COMPLETE_SUFFIX}",
                str(InstrumentStatus.COMPLETE.value),
            ),
        }
        return sorted(entries, key=lambda e: e.field_name)

    async def write_back(
        self,
        subject: Subject,
        record_id: int,
        event_name: str,
        form_name: str,
    ) -> WriteBackStatus:
        """Write the subject id into the integration form and mark it complete."""
        entries = self.integration_entries(subject, record_id, event_name, form_name)
        try:
            response = await self._post(write_back_parameters(entries))
        except httpx.RequestError as e:
            raise SourceWriteBackError(f"Error updating REDCap form: {e}") from e

        if response.is_error:
            logger.error(
                f"REDCap rejected update for record {record_id}: {response.status_code}",
                extra={"response": response.text[:500]},
            )
            return WriteBackStatus.REJECTED

        if _imported_count(response) == 0:
            return WriteBackStatus.NO_EFFECT

        logger.info(f"Successful update for record {record_id}")
        return WriteBackStatus.SUCCEEDED


def _imported_count(response: httpx.Response) -> int | None:
    """Read ``{"count": N}`` from an import response, None if absent."""
    try:
        body: Any = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and "count" in body:
        try:
            return int(body["count"])
        except (TypeError, ValueError):
            return None
    return None


def make_source_factory(
    client: httpx.AsyncClient,
) -> Callable[[ProjectConfig], SourceSystemPort]:
    """Build the per-project client factory handed to the Integrator.

    Clients are created on first use and reused for later triggers of the
    same project.
    """
    clients: dict[ProjectConfig, RedCapClient] = {}

    def factory(config: ProjectConfig) -> SourceSystemPort:
        if config not in clients:
            clients[config] = RedCapClient(config, client)
        return clients[config]

    return factory
