"""Tests for WebhookReceiver status mapping and per-record serialisation."""

import asyncio

import pytest

from redcap_integration.adapters.webhook.receiver import (
    RecordLocks,
    WebhookReceiver,
    status_for_result,
)
from redcap_integration.core.errors import (
    SourceFetchError,
    SourceWriteBackError,
    TargetTransportError,
)
from redcap_integration.core.integrator import Integrator
from redcap_integration.core.models import (
    AttributeMapping,
    FetchFailurePolicy,
    PipelineResult,
    ProjectConfig,
    SubjectOperationStatus,
    Trigger,
    WriteBackStatus,
)
from redcap_integration.core.ports import TriggerHandlerPort
from redcap_integration.core.project_resolver import ProjectConfigResolver
from redcap_integration.core.trigger_parser import TriggerParser
from redcap_integration.tests.fakes import FakeSourceSystemPort, FakeTargetSystemPort

BODY = (
    "redcap_url=https%3A%2F%2Fredcap.example.org%2F"
    "&project_id=12&record=5&redcap_event_name=enrolment_arm_1"
    "&instrument=enrolment&enrolment_complete=2"
)


@pytest.fixture
def source() -> FakeSourceSystemPort:
    return FakeSourceSystemPort({"age": "40"})


@pytest.fixture
def target() -> FakeTargetSystemPort:
    return FakeTargetSystemPort()


def make_receiver(
    source: FakeSourceSystemPort,
    target: FakeTargetSystemPort,
    policy: FetchFailurePolicy = FetchFailurePolicy.LENIENT,
) -> WebhookReceiver:
    config = ProjectConfig(
        source_url="https://redcap.example.org/",
        project_id=12,
        token="t",
        target_project_name="radar",
        enrolment_event_name="enrolment_arm_1",
        integration_form_name="radar_integrate",
        attribute_mappings=(AttributeMapping("age", "attrAge"),),
    )
    integrator = Integrator(ProjectConfigResolver([config]), lambda _: source, target, policy)
    return WebhookReceiver(trigger_handler=integrator, parser=TriggerParser())


@pytest.fixture
def receiver(source: FakeSourceSystemPort, target: FakeTargetSystemPort) -> WebhookReceiver:
    return make_receiver(source, target)


class TestHandleTrigger:
    @pytest.mark.asyncio
    async def test_success(self, receiver: WebhookReceiver) -> None:
        status, body = await receiver.handle_trigger(BODY.encode())

        assert status == 200
        assert body["status"] == "success"
        assert body["result"]["write_back_succeeded"] is True
        assert body["result"]["subject"] == {"id": "S1", "operation_status": "created"}

    @pytest.mark.asyncio
    async def test_malformed_trigger(
        self, receiver: WebhookReceiver, target: FakeTargetSystemPort
    ) -> None:
        status, body = await receiver.handle_trigger("project_id=12&color=blue")

        assert status == 400
        assert body["error"] == "malformed_trigger"
        assert target.upsert_call_count == 0

    @pytest.mark.asyncio
    async def test_missing_record(
        self, receiver: WebhookReceiver, target: FakeTargetSystemPort
    ) -> None:
        status, body = await receiver.handle_trigger(BODY.replace("&record=5", ""))

        assert status == 400
        assert body["error"] == "ValidationError"
        assert target.upsert_call_count == 0

    @pytest.mark.asyncio
    async def test_unknown_project(self, receiver: WebhookReceiver) -> None:
        status, body = await receiver.handle_trigger(BODY.replace("project_id=12", "project_id=99"))

        assert status == 404
        assert body["error"] == "ConfigNotFoundError"

    @pytest.mark.asyncio
    async def test_failed_subject(
        self, receiver: WebhookReceiver, target: FakeTargetSystemPort
    ) -> None:
        target.status = SubjectOperationStatus.FAILED

        status, body = await receiver.handle_trigger(BODY)

        assert status == 500
        assert body["error"] == "TargetOperationError"
        assert body["subject_updated"] is False

    @pytest.mark.asyncio
    async def test_portal_unreachable(
        self, receiver: WebhookReceiver, target: FakeTargetSystemPort
    ) -> None:
        target.set_error(TargetTransportError("connection refused"))

        status, _ = await receiver.handle_trigger(BODY)

        assert status == 502

    @pytest.mark.asyncio
    async def test_strict_fetch_failure(
        self, source: FakeSourceSystemPort, target: FakeTargetSystemPort
    ) -> None:
        receiver = make_receiver(source, target, FetchFailurePolicy.STRICT)
        source.set_fetch_error(SourceFetchError("REDCap returned 500"))

        status, body = await receiver.handle_trigger(BODY)

        assert status == 502
        assert body["error"] == "SourceFetchError"

    @pytest.mark.asyncio
    async def test_write_back_error_reports_updated_subject(
        self, receiver: WebhookReceiver, source: FakeSourceSystemPort
    ) -> None:
        source.set_write_back_error(SourceWriteBackError("timed out"))

        status, body = await receiver.handle_trigger(BODY)

        assert status == 502
        assert body["subject_updated"] is True
        assert body["result"]["subject"]["id"] == "S1"

    @pytest.mark.asyncio
    async def test_rejected_write_back_is_error(
        self, receiver: WebhookReceiver, source: FakeSourceSystemPort
    ) -> None:
        source.write_back_status = WriteBackStatus.REJECTED

        status, body = await receiver.handle_trigger(BODY)

        assert status == 500
        assert body["status"] == "error"

    @pytest.mark.asyncio
    async def test_write_back_without_effect_is_success(
        self, receiver: WebhookReceiver, source: FakeSourceSystemPort
    ) -> None:
        source.write_back_status = WriteBackStatus.NO_EFFECT

        status, body = await receiver.handle_trigger(BODY)

        assert status == 200
        assert body["result"]["write_back_no_effect"] is True

    @pytest.mark.asyncio
    async def test_follow_up_event_updates_subject(
        self,
        receiver: WebhookReceiver,
        source: FakeSourceSystemPort,
        target: FakeTargetSystemPort,
    ) -> None:
        source.values["subjectId"] = "S1"

        status, body = await receiver.handle_trigger(
            "project_id=12&instrument=demographics&record=5"
            "&redcap_event_name=month_1_arm_1&demographics_complete=2"
        )

        assert status == 200
        assert body["status"] == "success"
        assert target.upsert_call_count == 1
        assert target.get_last_upsert().existing_external_id == "S1"
        assert source.get_last_write_back().event_name == "enrolment_arm_1"


class SlowHandler(TriggerHandlerPort):
    """Records how many triggers run at once."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    async def handle(self, trigger: Trigger) -> PipelineResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return PipelineResult(success=True)


class TestRecordLocks:
    @pytest.mark.asyncio
    async def test_same_record_serialised(self) -> None:
        handler = SlowHandler()
        receiver = WebhookReceiver(trigger_handler=handler, parser=TriggerParser())

        await asyncio.gather(*(receiver.handle_trigger("project_id=12&record=5") for _ in range(3)))

        assert handler.max_active == 1
        assert len(receiver.record_locks) == 0

    @pytest.mark.asyncio
    async def test_different_records_run_concurrently(self) -> None:
        handler = SlowHandler()
        receiver = WebhookReceiver(trigger_handler=handler, parser=TriggerParser())

        await asyncio.gather(
            receiver.handle_trigger("project_id=12&record=5"),
            receiver.handle_trigger("project_id=12&record=6"),
        )

        assert handler.max_active == 2

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self) -> None:
        locks = RecordLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold(12, 5):
                raise RuntimeError("boom")
        assert len(locks) == 0


def test_status_for_result_without_write_back() -> None:
    assert status_for_result(PipelineResult(success=True)) == 200
