from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from raas.engine.exporter import StatusExporter
from raas.server.deps import get_exporter, get_service
from raas.service import RaasService

router = APIRouter(prefix="/instances", tags=["instances"])


@router.get("")
async def list_instances(exporter: StatusExporter = Depends(get_exporter)) -> Dict[str, Any]:
    snapshots = exporter.list_instances()
    return {"instances": [s.to_dict() for s in snapshots], "count": len(snapshots)}


@router.get("/{instance_id}/status")
async def instance_status(instance_id: str, exporter: StatusExporter = Depends(get_exporter)) -> Dict[str, Any]:
    """Last committed snapshot. Never waits on an in-flight transition."""
    return exporter.get_status(instance_id).to_dict()


@router.get("/{instance_id}/logs")
async def instance_logs(
    instance_id: str,
    limit: Optional[int] = Query(None, ge=0),
    exporter: StatusExporter = Depends(get_exporter),
) -> Dict[str, Any]:
    lines = exporter.get_logs(instance_id, limit)
    return {"instance_id": instance_id, "lines": lines, "count": len(lines)}


@router.get("/{instance_id}/health")
async def instance_health(instance_id: str, exporter: StatusExporter = Depends(get_exporter)) -> Dict[str, Any]:
    return {"instance_id": instance_id, **exporter.get_health(instance_id).to_dict()}


@router.get("/{instance_id}/results")
async def instance_results(instance_id: str, service: RaasService = Depends(get_service)) -> Dict[str, Any]:
    """Recent transition results (admitted and rejected) for this instance."""
    service.registry.get(instance_id)
    results = service.dispatcher.recent_results(instance_id)
    return {"instance_id": instance_id, "results": [r.to_dict() for r in results]}
