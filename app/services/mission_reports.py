"""
Mission Report Finalizer

Writes the single after-action report of a COMPLETED mission. The existing
report is checked before inserting; the unique mission_id column catches a
concurrent second writer.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import MissionNotCompletedError, ReportAlreadyExistsError
from app.models.database import (
    AuditAction,
    EntityType,
    Mission,
    MissionReport,
    MissionStatus,
)
from app.models.schemas import MissionReportInput
from app.services.audit import AuditRecorder

logger = structlog.get_logger(__name__)


class MissionReportFinalizer:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditRecorder(session)

    async def get_report(self, mission_id: uuid.UUID) -> Optional[MissionReport]:
        result = await self.session.execute(
            select(MissionReport).where(MissionReport.mission_id == mission_id)
        )
        return result.scalar_one_or_none()

    async def finalize(
        self,
        mission: Mission,
        submitter_id: uuid.UUID,
        payload: MissionReportInput,
    ) -> MissionReport:
        """Insert the mission's report. Runs inside the caller's transaction."""
        if mission.status != MissionStatus.COMPLETED:
            raise MissionNotCompletedError(mission.id, mission.status.value)

        if await self.get_report(mission.id) is not None:
            logger.warning("Duplicate mission report rejected", mission_id=str(mission.id))
            raise ReportAlreadyExistsError(mission.id)

        report = MissionReport(
            mission_id=mission.id,
            summary=payload.summary,
            actions_taken=payload.actions_taken,
            resources_used=payload.resources_used,
            casualties=payload.casualties,
            property_damage=payload.property_damage,
            submitted_by=submitter_id,
        )
        self.session.add(report)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ReportAlreadyExistsError(mission.id) from exc

        await self.audit.record(
            submitter_id,
            AuditAction.COMPLETE,
            EntityType.MISSION_REPORT,
            report.id,
            {
                "mission_id": mission.id,
                "casualties": payload.casualties,
                "property_damage": payload.property_damage,
            },
        )

        logger.info(
            "Mission report filed",
            mission_id=str(mission.id),
            report_id=str(report.id),
            submitted_by=str(submitter_id),
        )
        return report
