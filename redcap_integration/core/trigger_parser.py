"""Parser for REDCap Data Entry Trigger bodies.

REDCap posts the trigger as ``name=value`` pairs joined by ``&``:

- project_id: numeric project id (the ``pid`` in REDCap URLs)
- username: user saving the form, or ``[survey respondent]``
- instrument: unique name of the saved instrument
- record: record id
- redcap_event_name: unique event name (longitudinal projects only)
- redcap_data_access_group: data access group of the record, if any
- <instrument>_complete: instrument status, 0, 1 or 2
- redcap_url: base address of the REDCap instance
- project_url: address of the project home page
"""

import logging
from enum import Enum
from urllib.parse import unquote_plus, urlsplit

from .errors import MalformedTriggerError
from .models import COMPLETE_SUFFIX, InstrumentStatus, Trigger

logger = logging.getLogger(__name__)

PROJECT_URL_QUERY_MARKER = "index.php?"


class TriggerParameter(Enum):
    """Parameters REDCap can send, valued by the Trigger field they fill."""

    PROJECT_ID = "project_id"
    USERNAME = "username"
    INSTRUMENT = "instrument"
    RECORD = "record"
    EVENT_NAME = "event_name"
    DATA_ACCESS_GROUP = "data_access_group"
    INSTRUMENT_STATUS = "instrument_status"
    SOURCE_URL = "source_url"
    PROJECT_URL = "project_url"


# Exact parameter names. <instrument>_complete is matched separately.
_PARAMETERS: dict[str, TriggerParameter] = {
    "project_id": TriggerParameter.PROJECT_ID,
    "username": TriggerParameter.USERNAME,
    "instrument": TriggerParameter.INSTRUMENT,
    "record": TriggerParameter.RECORD,
    "redcap_event_name": TriggerParameter.EVENT_NAME,
    "redcap_data_access_group": TriggerParameter.DATA_ACCESS_GROUP,
    "redcap_url": TriggerParameter.SOURCE_URL,
    "project_url": TriggerParameter.PROJECT_URL,
}


def instrument_status_field(instrument: str) -> str:
    """Name of the status field belonging to an instrument."""
    return f"{instrument}{COMPLETE_SUFFIX}"


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise MalformedTriggerError(f"{name} must be an integer, got {value!r}") from None


def _parse_url(name: str, value: str) -> str:
    parts = urlsplit(value)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise MalformedTriggerError(f"{name} must be an http(s) URL, got {value!r}")
    return value


def _parse_status(name: str, value: str) -> InstrumentStatus:
    try:
        return InstrumentStatus.from_code(_parse_int(name, value))
    except ValueError as e:
        raise MalformedTriggerError(str(e)) from None


def base_url_from_project_url(project_url: str) -> str:
    """Strip the ``index.php?...`` part of a project URL.

    ``https://host/redcap_v13/index.php?pid=12`` becomes
    ``https://host/redcap_v13/``.
    """
    marker = project_url.find(PROJECT_URL_QUERY_MARKER)
    if marker < 0:
        raise MalformedTriggerError(
            f"project_url does not contain {PROJECT_URL_QUERY_MARKER!r}: {project_url!r}"
        )
    return _parse_url("project_url", project_url[:marker])


class TriggerParser:
    """Turns a raw Data Entry Trigger body into a Trigger.

    Token order does not matter, with one exception: the status token is
    only recognised once ``instrument`` has been seen, because its name is
    derived from the instrument's value.
    """

    def parse(self, raw: str | bytes) -> Trigger:
        """Parse a trigger body.

        Raises:
            MalformedTriggerError: If a token cannot be classified, a
                parameter repeats, or a numeric/URL/status value is invalid.
        """
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedTriggerError(f"Trigger body is not UTF-8: {e}") from None

        values: dict[TriggerParameter, object] = {}
        for token in raw.split("&"):
            if not token.strip():
                continue
            name, value = self._split(token)
            parameter = self._classify(name, values.get(TriggerParameter.INSTRUMENT))
            if parameter in values:
                raise MalformedTriggerError(f"Parameter {name!r} appears more than once")
            values[parameter] = self._convert(parameter, name, value)

        project_url = values.get(TriggerParameter.PROJECT_URL)
        if isinstance(project_url, str):
            # The project URL wins over redcap_url whichever came first
            values[TriggerParameter.SOURCE_URL] = base_url_from_project_url(project_url)

        trigger = Trigger(**{parameter.value: value for parameter, value in values.items()})
        logger.debug("Parsed trigger", extra={"trigger": repr(trigger)})
        return trigger

    @staticmethod
    def _split(token: str) -> tuple[str, str]:
        name, sep, value = token.partition("=")
        if not sep or not name.strip():
            raise MalformedTriggerError(f"{token!r} cannot be parsed")
        return name.strip(), unquote_plus(value).strip()

    @staticmethod
    def _classify(name: str, instrument: object) -> TriggerParameter:
        parameter = _PARAMETERS.get(name)
        if parameter is not None:
            return parameter
        if isinstance(instrument, str) and name == instrument_status_field(instrument):
            return TriggerParameter.INSTRUMENT_STATUS
        raise MalformedTriggerError(f"Unknown trigger parameter {name!r}")

    @staticmethod
    def _convert(parameter: TriggerParameter, name: str, value: str) -> object:
        if parameter in {TriggerParameter.PROJECT_ID, TriggerParameter.RECORD}:
            return _parse_int(name, value)
        if parameter in {TriggerParameter.SOURCE_URL, TriggerParameter.PROJECT_URL}:
            return _parse_url(name, value)
        if parameter is TriggerParameter.INSTRUMENT_STATUS:
            return _parse_status(name, value)
        return value
