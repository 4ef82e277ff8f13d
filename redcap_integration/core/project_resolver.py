"""Resolution of a trigger's origin to its project configuration."""

import logging
from collections.abc import Iterable
from types import MappingProxyType
from urllib.parse import urlsplit

from .errors import ConfigNotFoundError, ConfigurationError, ValidationError
from .models import ProjectConfig

logger = logging.getLogger(__name__)


def normalize_host(host_or_url: str) -> str:
    """Reduce a bare host or a full URL to its lowercase hostname."""
    value = host_or_url.strip()
    if "://" in value:
        return (urlsplit(value).hostname or "").lower()
    # Bare host, possibly with a port
    return (urlsplit(f"//{value}").hostname or "").lower()


class ProjectConfigResolver:
    """Read-only lookup of ProjectConfig by (host, project id).

    The table is built once; at most one project may be configured for a
    given host and project id.
    """

    def __init__(self, configs: Iterable[ProjectConfig]):
        table: dict[tuple[str, int], ProjectConfig] = {}
        for config in configs:
            key = (config.host, config.project_id)
            if key in table:
                raise ConfigurationError(
                    f"Project {config.project_id} is configured more than once "
                    f"for instance {config.host}"
                )
            table[key] = config
        self._table = MappingProxyType(table)
        logger.info(f"Loaded {len(table)} project configuration(s)")

    @property
    def projects(self) -> tuple[ProjectConfig, ...]:
        """All configured projects, in configuration order."""
        return tuple(self._table.values())

    def resolve(self, host: str | None, project_id: int) -> ProjectConfig:
        """Find the configuration for a REDCap instance and project.

        Without a host the project id alone must identify one project.

        Args:
            host: Hostname of the instance, any URL on it, or None.
            project_id: REDCap project id.

        Raises:
            ConfigNotFoundError: If no project matches.
            ValidationError: If no host is given and several instances
                have a project with this id.
        """
        if host is None:
            matches = [c for (_, pid), c in self._table.items() if pid == project_id]
            if len(matches) > 1:
                raise ValidationError(
                    f"Project {project_id} exists on {len(matches)} instances; "
                    "the trigger must carry redcap_url or project_url"
                )
            if not matches:
                raise ConfigNotFoundError(None, project_id)
            return matches[0]

        config = self._table.get((normalize_host(host), project_id))
        if config is None:
            raise ConfigNotFoundError(host, project_id)
        return config
