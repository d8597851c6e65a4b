"""Status Exporter: read-only view of the registry for the HTTP surface.

Every call copies state out of the registry without touching a lifecycle
lock, so reads never wait on an in-flight deploy or restart. A snapshot may
already be superseded by the time the caller looks at it.
"""

from __future__ import annotations

from typing import List, Optional

from raas.data.registry import HealthSnapshot, InstanceRegistry, InstanceSnapshot


class StatusExporter:
    def __init__(self, registry: InstanceRegistry, max_log_limit: int = 1000):
        self.registry = registry
        self.max_log_limit = max_log_limit

    def list_instances(self) -> List[InstanceSnapshot]:
        return self.registry.snapshots()

    def get_status(self, instance_id: str) -> InstanceSnapshot:
        return self.registry.get(instance_id).snapshot()

    def get_logs(self, instance_id: str, limit: Optional[int] = None) -> List[str]:
        """Most recent ``limit`` log lines (capped at max_log_limit), oldest first."""
        record = self.registry.get(instance_id)
        if limit is None or limit > self.max_log_limit:
            limit = self.max_log_limit
        return record.logs(max(limit, 0))

    def get_health(self, instance_id: str) -> HealthSnapshot:
        return self.registry.get(instance_id).health
