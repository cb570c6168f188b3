"""Audit orchestration: runs every service audit in sequence and aggregates results."""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .models import AuditReport, AuditResult, AuditStatus, EventType, HealthReport, SecurityEvent, ServiceStatus, Severity
from .registry import ServiceRegistry

logger = logging.getLogger(__name__)


class AuditPipeline:
    """Runs audits and health checks across the registry.

    A failing service never aborts the others; it is reported in place.
    """

    def __init__(self, registry: ServiceRegistry, history_limit: int = 50):
        self.registry = registry
        self.history_limit = history_limit
        self._reports: List[AuditReport] = []

    def run_audit(
        self,
        services: Optional[Sequence[str]] = None,
        scan_id: Optional[str] = None,
    ) -> AuditReport:
        names = list(services) if services else self.registry.names()
        report = AuditReport(scan_id=scan_id, started_at=datetime.now(timezone.utc))
        logger.info(f"Starting audit of {len(names)} service(s)")

        for i, name in enumerate(names, 1):
            service = self.registry.get(name)
            logger.info(f"Step {i}/{len(names)}: auditing {name}...")
            try:
                result = service.run_audit(scan_id=scan_id)
            except Exception as e:
                logger.error(f"Audit of {name} raised: {e}", exc_info=True)
                result = AuditResult(
                    service=name,
                    display_name=name,
                    status=AuditStatus.ISSUES_FOUND,
                    issues=[SecurityEvent(
                        type=EventType.SYSTEM,
                        severity=Severity.HIGH,
                        description=f"Audit of {name} failed: {e}",
                        service=name,
                        scan_id=scan_id,
                        details={"error": str(e)},
                    )],
                )
            report.results.append(result)
            logger.info(f"Step {i}: {name} -> {result.status.value} ({len(result.issues)} issues)")

        report.completed_at = datetime.now(timezone.utc)
        logger.info(
            f"Audit completed: {report.total_issues} total issues "
            f"({report.critical_issues} critical, {report.high_issues} high)"
        )

        self._reports.append(report)
        keep = max(self.history_limit, 0)
        del self._reports[:len(self._reports) - keep]
        return report

    def health_check(self) -> HealthReport:
        report = HealthReport()
        for name in self.registry.names():
            try:
                status = self.registry.get(name).get_status()
            except Exception as e:
                logger.error(f"Status check of {name} raised: {e}", exc_info=True)
                status = ServiceStatus(name=name, enabled=True, message=f"Status check failed: {e}")
            report.services.append(status)
        if not report.healthy:
            logger.warning(f"Unhealthy services: {', '.join(report.unhealthy_services)}")
        return report

    def get_recent_reports(self, limit: int = 10) -> List[AuditReport]:
        return self._reports[-limit:] if limit > 0 else []
