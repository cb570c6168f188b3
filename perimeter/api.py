"""FastAPI routes for perimeter health, audits and recent security events."""

import logging
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Query

from .capabilities import FirewallService, IntrusionPreventionService, MonitorService
from .models import SecurityEvent, Severity
from .pipeline import AuditPipeline
from .registry import ServiceNotFoundError, ServiceRegistry

logger = logging.getLogger(__name__)


def collect_recent_events(
    registry: ServiceRegistry,
    limit: int = 50,
    service: Optional[str] = None,
) -> List[SecurityEvent]:
    """Recent events from every event-producing adapter, newest first."""
    if service:
        candidates = [registry.get(service)]
    else:
        candidates = []
        for interface in (MonitorService, FirewallService, IntrusionPreventionService):
            for adapter in registry.filter_by_capability(interface):
                if adapter not in candidates:
                    candidates.append(adapter)

    events: List[SecurityEvent] = []
    for adapter in candidates:
        if not adapter.is_enabled() or not hasattr(adapter, "get_recent_events"):
            continue
        try:
            events.extend(adapter.get_recent_events(limit))
        except Exception as e:
            logger.error(f"Reading events from {adapter.service_name} failed: {e}", exc_info=True)
    events.sort(key=lambda e: e.timestamp, reverse=True)
    return events[:limit]


def create_perimeter_router(
    registry: ServiceRegistry,
    pipeline: AuditPipeline,
) -> APIRouter:
    """Create FastAPI router with perimeter status endpoints."""

    router = APIRouter(prefix="/perimeter", tags=["perimeter"])

    @router.get("/health")
    def get_health() -> Dict[str, Any]:
        """Aggregate health of all enabled services."""
        return pipeline.health_check().to_dict()

    @router.get("/services")
    def get_services() -> Dict[str, Any]:
        services = []
        for name in registry.names():
            adapter = registry.get(name)
            services.append({
                "name": name,
                "display_name": adapter.display_name,
                "capabilities": [c.value for c in adapter.capabilities],
                "enabled": adapter.is_enabled(),
            })
        return {"services": services, "count": len(services)}

    @router.get("/services/{name}")
    def get_service(name: str) -> Dict[str, Any]:
        try:
            adapter = registry.get(name)
        except ServiceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return adapter.get_status().to_dict()

    @router.get("/audits")
    def get_audits(limit: int = Query(10, ge=1, le=100)) -> Dict[str, Any]:
        """Get recent audit reports."""
        reports = pipeline.get_recent_reports(limit)
        return {"audits": [r.to_dict() for r in reports], "count": len(reports)}

    @router.post("/audit")
    def run_audit(
        service: Optional[List[str]] = Query(None),
        scan_id: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        """Run an audit of every (or the named) service."""
        try:
            report = pipeline.run_audit(services=service, scan_id=scan_id)
        except ServiceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return report.to_dict()

    @router.get("/events")
    def get_events(
        limit: int = Query(50, ge=1, le=500),
        severity: Optional[str] = Query(None),
        service: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        """Get recent events, optionally filtered by minimum severity."""
        try:
            events = collect_recent_events(registry, limit=limit * 2, service=service)
        except ServiceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

        if severity:
            try:
                minimum = Severity(severity.lower()).rank
            except ValueError:
                raise HTTPException(status_code=422, detail=f"Unknown severity '{severity}'")
            events = [e for e in events if e.severity.rank >= minimum]

        events = events[:limit]
        return {"events": [e.to_dict() for e in events], "count": len(events)}

    return router


def create_app(registry: ServiceRegistry, pipeline: Optional[AuditPipeline] = None) -> FastAPI:
    app = FastAPI(title="Perimeter")
    app.include_router(create_perimeter_router(registry, pipeline or AuditPipeline(registry)))
    return app


def serve(app: FastAPI, host: str = "127.0.0.1", port: int = 8000):
    logger.info(f"Starting perimeter API on {host}:{port}")
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info"
    )
