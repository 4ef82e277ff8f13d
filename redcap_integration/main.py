"""Composition root for the REDCap integration service.

The only module that imports both the core and the concrete adapters.
build_application() wires the project table, the REDCap and Management
Portal clients, the integrator and the trigger endpoint; bootstrap()
runs them until the process is stopped.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from urllib.parse import urljoin

import httpx

from redcap_integration.adapters.management_portal.client import ManagementPortalClient
from redcap_integration.adapters.management_portal.token import OAuthTokenProvider
from redcap_integration.adapters.projects.loader import load_projects
from redcap_integration.adapters.redcap.client import make_source_factory
from redcap_integration.adapters.webhook.http_server import WebhookHTTPServer
from redcap_integration.adapters.webhook.receiver import WebhookReceiver
from redcap_integration.config import Settings, load_settings
from redcap_integration.core.errors import ConfigurationError
from redcap_integration.core.integrator import Integrator
from redcap_integration.core.project_resolver import ProjectConfigResolver
from redcap_integration.core.trigger_parser import TriggerParser


def configure_logging(log_level: str, log_format: str) -> None:
    """Send all log records to stdout in the requested format."""
    level = getattr(logging, log_level, logging.INFO)

    if log_format == "json":
        line_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
    else:
        line_format = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

    logging.basicConfig(
        level=level,
        format=line_format,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )
    # httpx logs every request at INFO, including REDCap URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class Application:
    """Everything bootstrap() wires together."""

    http_client: httpx.AsyncClient
    resolver: ProjectConfigResolver
    integrator: Integrator
    receiver: WebhookReceiver
    server: WebhookHTTPServer

    async def close(self) -> None:
        await self.server.stop()
        await self.http_client.aclose()


def build_application(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> Application:
    """Instantiate adapters and core services from settings.

    Raises:
        ConfigurationError: If the project table cannot be loaded.
    """
    logger = logging.getLogger(__name__)

    resolver = ProjectConfigResolver(load_projects(settings.projects_file))

    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    token_provider = OAuthTokenProvider(
        client=http_client,
        token_url=urljoin(settings.management_portal_url, settings.mp_token_endpoint),
        client_id=settings.mp_oauth_client_id,
        client_secret=settings.mp_oauth_client_secret,
    )
    target = ManagementPortalClient(
        base_url=settings.management_portal_url,
        token_provider=token_provider,
        resolver=resolver,
        client=http_client,
        subject_endpoint=settings.mp_subject_endpoint,
        project_endpoint=settings.mp_project_endpoint,
    )
    logger.info(f"Management Portal: {settings.management_portal_url}")

    integrator = Integrator(
        resolver=resolver,
        source_factory=make_source_factory(http_client),
        target=target,
        fetch_failure_policy=settings.fetch_policy,
    )
    logger.info(f"Fetch failure policy: {settings.fetch_failure_policy}")

    receiver = WebhookReceiver(trigger_handler=integrator, parser=TriggerParser())
    server = WebhookHTTPServer(
        webhook_receiver=receiver,
        host=settings.webhook_host,
        port=settings.webhook_port,
        trigger_path=settings.webhook_trigger_path,
        # Fetch, token, lookup, write and write-back can each take the full timeout
        request_timeout=settings.http_timeout_seconds * 6,
    )
    return Application(
        http_client=http_client,
        resolver=resolver,
        integrator=integrator,
        receiver=receiver,
        server=server,
    )


async def bootstrap() -> None:
    """Load configuration, wire adapters, and start the webhook server.

    Raises:
        SystemExit: If the project table cannot be loaded.
        asyncio.CancelledError: When the event loop is shut down.
    """
    settings = load_settings()

    configure_logging("DEBUG" if settings.debug else settings.log_level, settings.log_format)
    logger = logging.getLogger(__name__)
    logger.info("Loading REDCap integration service...")

    try:
        app = build_application(settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        await app.server.start()
        while True:
            await asyncio.sleep(1)
    finally:
        await app.close()


def main() -> None:
    """Console entry point.

    Exits 0 after a cancelled shutdown, 130 on Ctrl-C and 1 on any other
    fatal error.
    """
    logger = logging.getLogger(__name__)
    try:
        asyncio.run(bootstrap())
    except KeyboardInterrupt:
        logger.warning("Interrupted, stopping trigger endpoint")
        sys.exit(130)
    except asyncio.CancelledError:
        logger.info("Trigger endpoint shut down")
        sys.exit(0)
    except Exception as e:
        logger.error(f"REDCap integration service failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
