"""Management Portal subject API client.

Implements TargetSystemPort. Subjects are looked up first by the id
REDCap already stores for the record, then by the REDCap record id kept in
the subject's ``externalId``, so repeated triggers for one record update
the same subject instead of creating duplicates.
"""

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote, urljoin

import httpx

from redcap_integration.core.errors import TargetTransportError
from redcap_integration.core.models import Subject, SubjectOperationStatus
from redcap_integration.core.ports import TargetSystemPort
from redcap_integration.core.project_resolver import ProjectConfigResolver

from .token import OAuthTokenProvider, TokenRequestError

logger = logging.getLogger(__name__)


class SubjectRequestRejected(Exception):
    """The portal answered a subject request with an error status."""

    def __init__(self, method: str, url: str, status_code: int, body: str):
        super().__init__(f"{method} {url} returned {status_code}")
        self.status_code = status_code
        self.body = body


def external_link(source_url: str, project_id: int, record_id: int) -> str:
    """Link from the subject back to the record's home page in REDCap."""
    base = source_url if source_url.endswith("/") else f"{source_url}/"
    return urljoin(base, f"DataEntry/record_home.php?pid={project_id}&id={record_id}")


def as_subject(data: Any) -> dict[str, Any]:
    """Check that a decoded response is a single subject object."""
    if not isinstance(data, dict):
        raise ValueError(f"expected a subject object, got {type(data).__name__}")
    if not isinstance(data.get("attributes") or {}, dict):
        raise ValueError("subject attributes are not an object")
    return data


def subject_login(subject: dict[str, Any]) -> str:
    """The subject id the portal assigned, which must be a non-empty string."""
    login = subject.get("login")
    if not isinstance(login, str) or not login:
        raise ValueError("subject has no login")
    return login


class ManagementPortalClient(TargetSystemPort):
    """Creates and updates subjects through the Management Portal REST API."""

    def __init__(
        self,
        base_url: str,
        token_provider: OAuthTokenProvider,
        resolver: ProjectConfigResolver,
        client: httpx.AsyncClient,
        subject_endpoint: str = "api/subjects",
        project_endpoint: str = "api/projects/",
    ):
        """Initialize the client.

        Args:
            base_url: Management Portal root, e.g. https://portal.example.org/managementportal/
            token_provider: Source of bearer tokens.
            resolver: Used to find the portal project of a REDCap project.
            client: Shared HTTP client; its lifetime is owned by the caller.
            subject_endpoint: Subject resource, relative to base_url.
            project_endpoint: Project resource prefix, relative to base_url.
        """
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.token_provider = token_provider
        self.resolver = resolver
        self.client = client
        self.subject_url = urljoin(self.base_url, subject_endpoint)
        self.project_url = urljoin(
            self.base_url, project_endpoint if project_endpoint.endswith("/") else f"{project_endpoint}/"
        )
        if not self.base_url.startswith("https://"):
            logger.warning(
                "The Management Portal instance is not using an encrypted connection",
                extra={"management_portal_url": self.base_url},
            )

    async def upsert_subject(
        self,
        source_url: str,
        project_id: int,
        record_id: int,
        attributes: Mapping[str, str],
        existing_external_id: str | None = None,
    ) -> Subject:
        """Create or update the subject for a REDCap record."""
        project_name = self.resolver.resolve(source_url, project_id).target_project_name
        try:
            existing = await self._find_subject(project_name, record_id, existing_external_id)
            if existing is None:
                return await self._create_subject(
                    project_name, source_url, project_id, record_id, attributes
                )
            return await self._update_subject(existing, record_id, attributes)
        except httpx.RequestError as e:
            raise TargetTransportError(f"Error contacting Management Portal: {e}") from e
        except TokenRequestError as e:
            logger.error(f"Cannot authenticate against Management Portal: {e}")
        except SubjectRequestRejected as e:
            if e.status_code == 401:
                self.token_provider.invalidate()
            logger.error(
                f"Management Portal rejected subject operation for record {record_id}: {e}",
                extra={"project_name": project_name, "response": e.body[:500]},
            )
        except ValueError as e:
            logger.error(
                f"Management Portal returned an unreadable response for record {record_id}: {e}",
                extra={"project_name": project_name},
            )
        return Subject(
            identifier=existing_external_id,
            operation_status=SubjectOperationStatus.FAILED,
            external_id=record_id,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await self.token_provider.get_token()
        response = await self.client.request(
            method,
            url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            **kwargs,
        )
        if response.is_error and response.status_code != 404:
            raise SubjectRequestRejected(method, url, response.status_code, response.text)
        return response

    async def _find_subject(
        self, project_name: str, record_id: int, existing_external_id: str | None
    ) -> dict[str, Any] | None:
        if existing_external_id:
            response = await self._request(
                "GET", f"{self.subject_url}/{quote(existing_external_id, safe='')}"
            )
            if response.status_code != 404:
                return as_subject(response.json())
            logger.warning(
                f"Subject {existing_external_id} stored in REDCap is unknown to Management Portal",
                extra={"record": record_id},
            )

        response = await self._request(
            "GET",
            f"{self.project_url}{quote(project_name, safe='')}/subjects",
            params={"externalId": str(record_id)},
        )
        if response.status_code == 404:
            return None
        candidates = response.json()
        if not isinstance(candidates, list):
            raise ValueError(f"expected a list of subjects, got {type(candidates).__name__}")
        for candidate in candidates:
            subject = as_subject(candidate)
            if str(subject.get("externalId")) == str(record_id):
                return subject
        return None

    async def _create_subject(
        self,
        project_name: str,
        source_url: str,
        project_id: int,
        record_id: int,
        attributes: Mapping[str, str],
    ) -> Subject:
        payload = {
            "externalId": str(record_id),
            "externalLink": external_link(source_url, project_id, record_id),
            "project": {"projectName": project_name},
            "attributes": dict(attributes),
        }
        response = await self._request("POST", self.subject_url, json=payload)
        if response.status_code == 404:
            raise SubjectRequestRejected("POST", self.subject_url, 404, response.text)
        body = as_subject(response.json())
        login = subject_login(body)
        logger.info(
            f"Created subject {login} for record {record_id}",
            extra={"project_name": project_name},
        )
        return Subject(
            identifier=login,
            operation_status=SubjectOperationStatus.CREATED,
            external_id=record_id,
            attributes=dict(body.get("attributes") or attributes),
        )

    async def _update_subject(
        self, existing: dict[str, Any], record_id: int, attributes: Mapping[str, str]
    ) -> Subject:
        current = dict(existing.get("attributes") or {})
        login = subject_login(existing)
        if all(current.get(key) == value for key, value in attributes.items()):
            return Subject(
                identifier=login,
                operation_status=SubjectOperationStatus.UNCHANGED,
                external_id=record_id,
                attributes=current,
            )

        merged = {**current, **attributes}
        response = await self._request(
            "PUT", self.subject_url, json={**existing, "attributes": merged}
        )
        if response.status_code == 404:
            raise SubjectRequestRejected("PUT", self.subject_url, 404, response.text)
        logger.info(f"Updated subject {login} for record {record_id}")
        return Subject(
            identifier=login,
            operation_status=SubjectOperationStatus.UPDATED,
            external_id=record_id,
            attributes=merged,
        )
