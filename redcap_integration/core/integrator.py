"""Integration orchestration for REDCap Data Entry Triggers.

This module sequences the work for one trigger across the two remote
systems: fetch field values from REDCap, create or update the subject in
the Management Portal, then write the confirmation back into REDCap.
"""

import logging
from collections.abc import Callable

from .errors import (
    SourceFetchError,
    SourceWriteBackError,
    TargetOperationError,
    ValidationError,
)
from .models import (
    FetchFailurePolicy,
    IntegrationRun,
    IntegrationStage,
    PipelineResult,
    ProjectConfig,
    SubjectOperationStatus,
    Trigger,
    WriteBackStatus,
)
from .ports import SourceSystemPort, TargetSystemPort, TriggerHandlerPort
from .project_resolver import ProjectConfigResolver

logger = logging.getLogger(__name__)

SourceFactory = Callable[[ProjectConfig], SourceSystemPort]


class Integrator(TriggerHandlerPort):
    """Orchestrates the handling of a Data Entry Trigger.

    Uses ports but contains no adapter-specific logic. The REDCap client
    is built per project by ``source_factory`` since every project has its
    own API token.
    """

    def __init__(
        self,
        resolver: ProjectConfigResolver,
        source_factory: SourceFactory,
        target: TargetSystemPort,
        fetch_failure_policy: FetchFailurePolicy = FetchFailurePolicy.LENIENT,
    ):
        self.resolver = resolver
        self.source_factory = source_factory
        self.target = target
        self.fetch_failure_policy = fetch_failure_policy

    def validate(self, trigger: Trigger) -> ProjectConfig:
        """Check that the trigger can be processed, without any remote call.

        Raises:
            ValidationError: If a required value is missing.
            ConfigNotFoundError: If the project is not configured.
        """
        if trigger.project_id is None:
            raise ValidationError("Trigger must carry project_id")
        config = self.resolver.resolve(trigger.source_url, trigger.project_id)

        missing = [
            name
            for name, value in (
                ("record", trigger.record),
                ("redcap_event_name", trigger.event_name),
                ("enrolment event", config.enrolment_event_name),
                ("integration form", config.integration_form_name),
            )
            if value is None
        ]
        if missing:
            raise ValidationError(f"Missing required values: {', '.join(missing)}")
        return config

    async def handle(self, trigger: Trigger) -> PipelineResult:
        """Run the pipeline for one trigger.

        Steps:
        1. Validate the trigger against its project configuration
        2. Fetch mapped fields plus the stored subject id from REDCap
        3. Create or update the subject in the Management Portal
        4. Write the subject id back into the integration form

        Raises:
            ValidationError, ConfigNotFoundError: Nothing has been called.
            SourceFetchError: Fetch failed under the strict policy.
            TargetOperationError: The Management Portal rejected the subject.
            TargetTransportError: The Management Portal was unreachable.
            SourceWriteBackError: Write-back failed after the subject changed.
        """
        run = IntegrationRun(project_id=trigger.project_id, record=trigger.record)
        try:
            return await self._run(trigger, run)
        except Exception:
            if not run.is_terminal:
                run.fail()
            raise

    async def _run(self, trigger: Trigger, run: IntegrationRun) -> PipelineResult:
        # 1. Validate
        config = self.validate(trigger)
        assert trigger.record is not None
        assert config.enrolment_event_name is not None
        assert config.integration_form_name is not None
        record_id = trigger.record
        run.advance(IntegrationStage.VALIDATED)

        # Saves in any event update attributes; the write-back always targets
        # the enrolment event. Projects can opt into enrolment-only syncing.
        if config.enrolment_event_only and not trigger.is_event(config.enrolment_event_name):
            run.advance(IntegrationStage.SKIPPED)
            logger.info(
                "Ignoring trigger outside the enrolment event",
                extra={
                    "project_id": config.project_id,
                    "record": record_id,
                    "event_name": trigger.event_name,
                },
            )
            return PipelineResult(success=True, stage=run.stage)

        # 2. Fetch
        fields = config.fetch_fields()
        logger.info(
            f"Fetching fields for record {record_id}",
            extra={"project_id": config.project_id, "fields": list(fields)},
        )
        source = self.source_factory(config)
        try:
            values = dict(await source.fetch_attributes(fields, record_id))
        except SourceFetchError as e:
            if self.fetch_failure_policy is FetchFailurePolicy.STRICT:
                logger.error(
                    f"Error fetching fields for record {record_id}: {e}",
                    extra={"project_id": config.project_id},
                )
                raise
            logger.warning(
                f"Error fetching fields for record {record_id}, "
                f"continuing without a stored subject id: {e}",
                extra={"project_id": config.project_id},
            )
            values = {}

        existing_external_id = values.pop(config.subject_id_field, None) or None
        attributes = config.map_attributes(values)
        run.advance(IntegrationStage.ATTRIBUTES_RESOLVED)

        # 3. Upsert
        subject = await self.target.upsert_subject(
            config.source_url,
            config.project_id,
            record_id,
            attributes,
            existing_external_id,
        )
        run.subject = subject
        run.advance(IntegrationStage.SUBJECT_RESOLVED)
        logger.info(
            f"Subject for record {record_id}: {subject.operation_status.value}",
            extra={
                "project_id": config.project_id,
                "subject_id": subject.identifier,
            },
        )

        if subject.operation_status is SubjectOperationStatus.FAILED:
            run.fail()
            raise TargetOperationError(
                f"Operation on subject for record {record_id} failed in Management Portal",
                result=PipelineResult(success=False, subject=subject, stage=run.stage),
            )

        if subject.operation_status is SubjectOperationStatus.UNCHANGED:
            run.advance(IntegrationStage.SKIPPED)
            return PipelineResult(success=True, subject=subject, stage=run.stage)

        # 4. Write back
        try:
            status = await source.write_back(
                subject,
                record_id,
                config.enrolment_event_name,
                config.integration_form_name,
            )
        except SourceWriteBackError as e:
            run.fail()
            e.result = PipelineResult(
                success=False,
                write_back_attempted=True,
                subject=subject,
                stage=run.stage,
            )
            logger.error(
                f"Subject {subject.identifier} was {subject.operation_status.value} "
                f"but the integration form could not be written: {e}",
                extra={"project_id": config.project_id, "record": record_id},
            )
            raise

        run.advance(IntegrationStage.WRITTEN_BACK)
        if status is not WriteBackStatus.SUCCEEDED:
            logger.warning(
                f"Write-back for record {record_id} reported {status.value}",
                extra={"project_id": config.project_id, "subject_id": subject.identifier},
            )
        return PipelineResult(
            success=True,
            write_back_attempted=True,
            write_back_succeeded=status is WriteBackStatus.SUCCEEDED,
            write_back_no_effect=status is WriteBackStatus.NO_EFFECT,
            subject=subject,
            stage=run.stage,
        )
