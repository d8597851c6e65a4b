"""Single-instance routes for the bring-up rollup, served beside /v1.

/status, /logs and /health answer for the rollup deployed at bring-up.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from raas.engine.exporter import StatusExporter
from raas.server.deps import default_instance_id, get_exporter, get_service
from raas.service import RaasService

router = APIRouter(tags=["system"])


@router.get("/status")
async def status(
    instance_id: str = Depends(default_instance_id),
    exporter: StatusExporter = Depends(get_exporter),
) -> Dict[str, Any]:
    return exporter.get_status(instance_id).to_dict()


@router.get("/logs")
async def logs(
    limit: Optional[int] = Query(None, ge=0),
    instance_id: str = Depends(default_instance_id),
    exporter: StatusExporter = Depends(get_exporter),
) -> Dict[str, Any]:
    lines = exporter.get_logs(instance_id, limit)
    return {"instance_id": instance_id, "lines": lines, "count": len(lines)}


@router.get("/health")
async def health(
    instance_id: str = Depends(default_instance_id),
    exporter: StatusExporter = Depends(get_exporter),
) -> Dict[str, Any]:
    return {"instance_id": instance_id, **exporter.get_health(instance_id).to_dict()}


@router.get("/prerequisites")
async def prerequisites(service: RaasService = Depends(get_service)) -> Dict[str, Any]:
    """Host tooling found by the last prerequisite probe."""
    return {"prerequisites": dict(service.prerequisites)}
