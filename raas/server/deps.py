from __future__ import annotations

from fastapi import Request

from raas.engine.exporter import StatusExporter
from raas.errors import InstanceNotFound
from raas.service import RaasService


def get_service(request: Request) -> RaasService:
    return request.app.state.service


def get_exporter(request: Request) -> StatusExporter:
    return get_service(request).exporter


def default_instance_id(request: Request) -> str:
    instance_id = get_service(request).default_instance_id
    if instance_id is None:
        raise InstanceNotFound("<default>")
    return instance_id
