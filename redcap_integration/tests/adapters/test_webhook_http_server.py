"""Tests for WebhookHTTPServer adapter."""

import asyncio

import httpx
import pytest

from redcap_integration.adapters.webhook.http_server import WebhookHTTPServer
from redcap_integration.adapters.webhook.receiver import WebhookReceiver
from redcap_integration.core.models import InstrumentStatus, PipelineResult, Trigger
from redcap_integration.core.ports import TriggerHandlerPort
from redcap_integration.core.trigger_parser import TriggerParser


class RecordingHandler(TriggerHandlerPort):
    def __init__(self) -> None:
        self.triggers: list[Trigger] = []

    async def handle(self, trigger: Trigger) -> PipelineResult:
        self.triggers.append(trigger)
        return PipelineResult(success=True)


class SlowHandler(TriggerHandlerPort):
    """Upserts, then outlasts the request timeout before writing back."""

    def __init__(self) -> None:
        self.upserted = False
        self.written_back = False

    async def handle(self, trigger: Trigger) -> PipelineResult:
        self.upserted = True
        await asyncio.sleep(0.5)
        self.written_back = True
        return PipelineResult(success=True, write_back_attempted=True, write_back_succeeded=True)


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def receiver(handler: RecordingHandler) -> WebhookReceiver:
    return WebhookReceiver(trigger_handler=handler, parser=TriggerParser())


class TestWebhookHTTPServerInitialization:
    """Tests for WebhookHTTPServer configuration validation."""

    def test_trigger_path_without_slash_raises_value_error(
        self, receiver: WebhookReceiver
    ) -> None:
        with pytest.raises(ValueError, match="must start with '/'"):
            WebhookHTTPServer(webhook_receiver=receiver, trigger_path="trigger")

    def test_defaults(self, receiver: WebhookReceiver) -> None:
        server = WebhookHTTPServer(webhook_receiver=receiver)
        assert server.port == 8080
        assert server.trigger_path == "/trigger"
        assert server.server is None


class TestWebhookHTTPServerRequests:
    """End-to-end requests against a server on a free local port."""

    @pytest.mark.asyncio
    async def test_trigger_forwarded_to_handler(
        self, receiver: WebhookReceiver, handler: RecordingHandler
    ) -> None:
        server = WebhookHTTPServer(webhook_receiver=receiver, host="127.0.0.1", port=0)
        await server.start()
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server.port}") as client:
                response = await client.post(
                    "/trigger",
                    content="project_id=12&record=5&instrument=enrolment&enrolment_complete=2",
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        finally:
            await server.stop()

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert len(handler.triggers) == 1
        trigger = handler.triggers[0]
        assert trigger.project_id == 12
        assert trigger.record == 5
        assert trigger.instrument_status is InstrumentStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_malformed_body_rejected(
        self, receiver: WebhookReceiver, handler: RecordingHandler
    ) -> None:
        server = WebhookHTTPServer(webhook_receiver=receiver, host="127.0.0.1", port=0)
        await server.start()
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server.port}") as client:
                response = await client.post("/trigger", content="project_id=abc")
        finally:
            await server.stop()

        assert response.status_code == 400
        assert response.json()["error"] == "malformed_trigger"
        assert handler.triggers == []

    @pytest.mark.asyncio
    async def test_health_and_unknown_paths(self, receiver: WebhookReceiver) -> None:
        server = WebhookHTTPServer(
            webhook_receiver=receiver, host="127.0.0.1", port=0, trigger_path="/redcap/trigger"
        )
        await server.start()
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server.port}") as client:
                health = await client.get("/health")
                wrong_path = await client.post("/trigger", content="project_id=12")
                wrong_method = await client.get("/redcap/trigger")
        finally:
            await server.stop()

        assert health.status_code == 200
        assert health.json() == {"status": "healthy"}
        assert wrong_path.status_code == 404
        assert wrong_method.status_code == 404

    @pytest.mark.asyncio
    async def test_timed_out_trigger_still_completes(self) -> None:
        """A 504 answer leaves the running pipeline to finish its write-back."""
        handler = SlowHandler()
        receiver = WebhookReceiver(trigger_handler=handler, parser=TriggerParser())
        server = WebhookHTTPServer(
            webhook_receiver=receiver, host="127.0.0.1", port=0, request_timeout=0.1
        )
        await server.start()
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server.port}") as client:
                response = await client.post("/trigger", content="project_id=12&record=5")

            assert response.status_code == 504
            assert handler.upserted
            for _ in range(50):
                if handler.written_back:
                    break
                await asyncio.sleep(0.05)
        finally:
            await server.stop()

        assert handler.written_back
