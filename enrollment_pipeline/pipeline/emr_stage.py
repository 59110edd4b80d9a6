"""
EMR transmission stage.

Collect verified health records -> convert to FHIR -> validate -> transmit,
run as a DAG so each step's status and timing land in the audit trail.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from sqlalchemy.orm import Session

from enrollment_pipeline.exceptions import (
    CircuitOpen,
    IntegrationError,
    PreconditionNotMet,
    ValidationError,
)
from enrollment_pipeline.models.enrollment import Enrollment, EnrollmentStatus
from enrollment_pipeline.pipeline.dag import DAG
from enrollment_pipeline.pipeline.events import (
    AlreadyProcessing,
    Deferred,
    JobOutcome,
    Skipped,
    Stage,
    StageFailed,
    StageSucceeded,
)
from enrollment_pipeline.services import audit
from enrollment_pipeline.services.emr import TARGET, EmrClient, FailureHook
from enrollment_pipeline.services.fhir import FhirConverter
from enrollment_pipeline.services.locks import ProcessingLocks, lock_key

logger = logging.getLogger(__name__)

RESOURCE_KINDS = ("Patient", "Condition", "MedicationStatement")


# ---------------------------------------------------------------------------
# Pipeline factory
# ---------------------------------------------------------------------------
def build_emr_transmission_pipeline(
    enrollment: Enrollment, converter: FhirConverter, client: EmrClient
) -> DAG:
    def collect(context: dict[str, Any]) -> dict[str, Any]:
        records = enrollment.verified_health_records()
        if not records:
            raise PreconditionNotMet(f"Enrollment {enrollment.id} has no verified health record")
        logger.info("Collected %d verified health records", len(records))
        return {"records": records}

    def convert(context: dict[str, Any]) -> dict[str, Any]:
        resources = [
            (kind, converter.convert_cached(record, kind))
            for record in context["records"]
            for kind in RESOURCE_KINDS
        ]
        return {"resources": resources}

    def validate(context: dict[str, Any]) -> dict[str, Any]:
        invalid = [kind for kind, resource in context["resources"] if not converter.validate(resource, kind)]
        if invalid:
            raise ValidationError(f"Invalid FHIR resources: {', '.join(invalid)}")
        return {"validated_count": len(context["resources"])}

    def transmit(context: dict[str, Any]) -> dict[str, Any]:
        transmitted = []
        for kind, resource in context["resources"]:
            created = client.send(resource, kind)
            transmitted.append({"kind": kind, "id": resource["id"], "emr_id": created.get("id")})
        return {"transmitted": transmitted}

    dag = DAG("emr_transmission")
    dag.add_task("collect", collect)
    dag.add_task("convert", convert, depends_on=["collect"])
    dag.add_task("validate", validate, depends_on=["convert"])
    dag.add_task("transmit", transmit, depends_on=["validate"])
    return dag


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------
class EmrTransmissionStage:
    def __init__(
        self,
        db: Session,
        converter: FhirConverter,
        client_factory: Callable[[FailureHook], EmrClient],
        locks: ProcessingLocks,
    ):
        self.db = db
        self._converter = converter
        self._client_factory = client_factory
        self._locks = locks

    def run(self, enrollment_id: uuid.UUID) -> JobOutcome:
        enrollment = self.db.get(Enrollment, enrollment_id)
        if enrollment is None:
            return Skipped(f"enrollment {enrollment_id} no longer exists")
        if enrollment.status != EnrollmentStatus.HEALTH_DECLARATION_PENDING.value:
            return Skipped(f"enrollment {enrollment.id} is {enrollment.status}")

        with self._locks.hold(TARGET, enrollment.id) as acquired:
            if not acquired:
                return AlreadyProcessing(lock_key(TARGET, enrollment.id))

            def record_failure(error: IntegrationError, attempt: int) -> None:
                audit.log_integration_failure(
                    self.db,
                    target=TARGET,
                    resource_type="enrollment",
                    resource_id=enrollment.id,
                    error=error,
                    attempt=attempt,
                )

            client = self._client_factory(record_failure)
            dag = build_emr_transmission_pipeline(enrollment, self._converter, client)
            summary = dag.run({"enrollment_id": str(enrollment.id)})
            failed = dag.failed_task()

            if failed is None:
                audit.log_action(
                    self.db,
                    actor="integration_pipeline",
                    action="emr_transmitted",
                    resource_type="enrollment",
                    resource_id=enrollment.id,
                    detail={"pipeline": summary, "transmitted": dag.result("transmitted", [])},
                )
                self.db.commit()
                return StageSucceeded(enrollment.id, Stage.EMR_TRANSMISSION)

            self.db.commit()
            error = failed.exception
            if isinstance(error, CircuitOpen):
                logger.warning("EMR transmission for %s deferred: %s", enrollment.id, error)
                return Deferred(error.retry_after, str(error))
            return StageFailed(
                enrollment.id,
                Stage.EMR_TRANSMISSION,
                error_type=type(error).__name__,
                error=str(error),
            )
