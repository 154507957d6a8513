"""Predefined periodic jobs for the incident response manager.

Each job takes the manager as a keyword argument and does nothing when it
is missing, so a partially wired deployment still starts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from irdesk.incidents.manager import IncidentResponseManager

logger = structlog.get_logger()


async def escalation_sweep_job(manager: IncidentResponseManager | None = None) -> None:
    if manager is None:
        logger.debug("escalation_sweep_skipped", reason="no manager")
        return
    notices = await manager.run_escalation_sweep()
    logger.info("escalation_sweep_completed", escalated=len(notices))


async def retention_sweep_job(manager: IncidentResponseManager | None = None) -> None:
    if manager is None:
        logger.debug("retention_sweep_skipped", reason="no manager")
        return
    result = await manager.run_retention_sweep()
    logger.info(
        "retention_sweep_job_completed",
        incidents_removed=len(result.incidents_removed),
        reports_removed=result.reports_removed,
    )


async def metrics_refresh_job(manager: IncidentResponseManager | None = None) -> None:
    if manager is None:
        logger.debug("metrics_refresh_skipped", reason="no manager")
        return
    await manager.refresh_metrics()


async def compliance_report_job(manager: IncidentResponseManager | None = None) -> None:
    if manager is None:
        logger.debug("compliance_report_skipped", reason="no manager")
        return
    reports = await manager.generate_compliance_reports()
    logger.info("compliance_report_job_completed", reports=len(reports))
