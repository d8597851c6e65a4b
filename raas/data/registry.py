"""Instance Registry: the single shared, mutable view of every managed rollup."""
#
# PURPOSE:
# Each managed rollup gets an InstanceRecord holding its lifecycle state,
# public chain configuration, public metadata, last health observation and a
# bounded tail of log lines. The registry is created by the service root and
# passed to the Dispatcher (writer) and the Status Exporter (reader).
#
# LOCKING:
# - LifecycleLock (one per instance, created lazily): serializes lifecycle
#   transitions. Try-acquire only; a held lock means InstanceBusy.
# - InstanceRecord._guard: a short lock that keeps a snapshot consistent.
#   It is never held across an await and never waits on a lifecycle lock.
# - InstanceRegistry._lock: guards the id -> record / id -> lock maps.
#
# INVARIANTS:
# - state only changes through InstanceRecord.commit(), which requires the
#   lifecycle lock to be held.
# - log_tail and health are best-effort and may be written without it.
#   Every log_tail line passes through redact_secrets() on the way in.
#   Older health observations never overwrite newer ones.
# - Records are never deleted.
#

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from raas.base.config import redact_secrets
from raas.engine.state_machine import LifecycleState
from raas.errors import InstanceNotFound

_UNSET: Any = object()


@dataclass(frozen=True)
class HealthSnapshot:
    timestamp: float
    healthy: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChainConfig:
    """Public chain parameters. Nothing in here is secret."""

    chain_id: int
    name: str
    parent_chain_rpc: str
    avail_app_id: str
    fallback_s3_enable: bool = False
    local_rpc_endpoint: str = "http://localhost:8449"
    explorer_url: str = "http://localhost:4000"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ChainConfig":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in values.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeploymentArtifacts:
    """What a Deploy left behind on disk and on chain, keyed by its idempotency key."""

    idempotency_key: str
    work_dir: str
    node_config_path: Optional[str] = None
    setup_config_path: Optional[str] = None
    contracts_deployed: bool = False
    bridge_deployed: bool = False
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeploymentArtifacts":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


class LifecycleLock:
    """Non-blocking mutual exclusion for one instance's lifecycle transitions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._holder: Optional[str] = None
        self._acquired_at: Optional[float] = None

    def try_acquire(self, operation: str) -> bool:
        if not self._lock.acquire(blocking=False):
            return False
        self._holder = operation
        self._acquired_at = time.time()
        return True

    def release(self) -> None:
        self._holder = None
        self._acquired_at = None
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    @property
    def acquired_at(self) -> Optional[float]:
        return self._acquired_at


@dataclass(frozen=True)
class InstanceSnapshot:
    """Immutable copy of an InstanceRecord as of its last commit."""

    id: str
    state: LifecycleState
    chain_config: Dict[str, Any]
    metadata: Dict[str, Any]
    health: HealthSnapshot
    container_ids: Tuple[str, ...]
    deployment: Optional[Dict[str, Any]]
    bridge: Optional[Dict[str, Any]]
    last_operation: Optional[str]
    updated_at: float
    log_lines: int
    busy: bool
    in_flight: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "chain_config": dict(self.chain_config),
            "metadata": dict(self.metadata),
            "health": self.health.to_dict(),
            "container_ids": list(self.container_ids),
            "deployment": dict(self.deployment) if self.deployment else None,
            "bridge": dict(self.bridge) if self.bridge else None,
            "last_operation": self.last_operation,
            "updated_at": self.updated_at,
            "log_lines": self.log_lines,
            "busy": self.busy,
            "in_flight": self.in_flight,
        }


class InstanceRecord:
    """
    Authoritative record for one managed rollup.

    Args:
        instance_id: Immutable identifier
        chain_config: Public chain parameters
        lock: The instance's lifecycle lock (owned by the registry)
        log_tail_capacity: Maximum lines kept; the oldest are evicted first
        metadata: Initial public key/value metadata
    """

    def __init__(
        self,
        instance_id: str,
        chain_config: ChainConfig,
        lock: LifecycleLock,
        log_tail_capacity: int = 2000,
        metadata: Optional[Mapping[str, Any]] = None,
    ):
        self._id = instance_id
        self._lock = lock
        self._guard = threading.Lock()

        self._state = LifecycleState.UNINITIALIZED
        self._chain_config = chain_config
        self._metadata: Dict[str, Any] = dict(metadata or {"name": chain_config.name})
        self._health = HealthSnapshot(timestamp=time.time(), healthy=False, reason="not deployed")
        self._log_tail: Deque[str] = deque(maxlen=log_tail_capacity)
        self._container_ids: Tuple[str, ...] = ()
        self._deployment: Optional[DeploymentArtifacts] = None
        self._bridge: Optional[Dict[str, Any]] = None
        self._last_operation: Optional[str] = None
        self._updated_at = time.time()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def lock(self) -> LifecycleLock:
        return self._lock

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def chain_config(self) -> ChainConfig:
        return self._chain_config

    @property
    def metadata(self) -> Dict[str, Any]:
        with self._guard:
            return dict(self._metadata)

    @property
    def health(self) -> HealthSnapshot:
        return self._health

    @property
    def container_ids(self) -> Tuple[str, ...]:
        return self._container_ids

    @property
    def deployment(self) -> Optional[DeploymentArtifacts]:
        return self._deployment

    @property
    def bridge(self) -> Optional[Dict[str, Any]]:
        with self._guard:
            return dict(self._bridge) if self._bridge is not None else None

    def logs(self, limit: Optional[int] = None) -> List[str]:
        """Most recent log lines, oldest first."""
        with self._guard:
            lines = list(self._log_tail)
        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []
        return lines

    def snapshot(self) -> InstanceSnapshot:
        with self._guard:
            return InstanceSnapshot(
                id=self._id,
                state=self._state,
                chain_config=self._chain_config.to_dict(),
                metadata=dict(self._metadata),
                health=self._health,
                container_ids=self._container_ids,
                deployment=self._deployment.to_dict() if self._deployment else None,
                bridge=dict(self._bridge) if self._bridge is not None else None,
                last_operation=self._last_operation,
                updated_at=self._updated_at,
                log_lines=len(self._log_tail),
                busy=self._lock.locked,
                in_flight=self._lock.holder,
            )

    # ------------------------------------------------------------------
    # Best-effort writes (no lifecycle lock required)
    # ------------------------------------------------------------------

    def append_log(self, message: str) -> None:
        timestamp = time.strftime("%H:%M:%S", time.localtime())
        entry = f"[{timestamp}] {redact_secrets(message)}"
        with self._guard:
            self._log_tail.append(entry)

    def update_health(self, health: HealthSnapshot) -> bool:
        """Record a health observation. Returns False when an older one is ignored."""
        with self._guard:
            if health.timestamp < self._health.timestamp:
                return False
            self._health = health
            return True

    # ------------------------------------------------------------------
    # Lifecycle writes (lifecycle lock required)
    # ------------------------------------------------------------------

    def commit(
        self,
        state: LifecycleState,
        *,
        operation: Optional[str] = None,
        chain_config: Optional[ChainConfig] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        container_ids: Optional[Iterable[str]] = None,
        deployment: Any = _UNSET,
        bridge: Any = _UNSET,
    ) -> None:
        """Apply a lifecycle change atomically with respect to snapshot readers."""
        if not self._lock.locked:
            raise RuntimeError(f"Instance '{self._id}' state changed without holding its lifecycle lock")
        with self._guard:
            self._state = LifecycleState(state)
            if operation is not None:
                self._last_operation = operation
            if chain_config is not None:
                self._chain_config = chain_config
            if metadata is not None:
                self._metadata = dict(metadata)
            if container_ids is not None:
                self._container_ids = tuple(container_ids)
            if deployment is not _UNSET:
                self._deployment = deployment
            if bridge is not _UNSET:
                self._bridge = dict(bridge) if bridge is not None else None
            self._updated_at = time.time()

    def __repr__(self) -> str:
        return f"InstanceRecord(id={self._id!r}, state={self._state.value})"


class InstanceRegistry:
    """Owns every InstanceRecord and its lifecycle lock, keyed by instance id."""

    def __init__(self, log_tail_capacity: int = 2000):
        self._log_tail_capacity = log_tail_capacity
        self._records: Dict[str, InstanceRecord] = {}
        self._locks: Dict[str, LifecycleLock] = {}
        self._lock = threading.Lock()

    def lock_for(self, instance_id: str) -> LifecycleLock:
        with self._lock:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = LifecycleLock()
                self._locks[instance_id] = lock
            return lock

    def register(
        self,
        instance_id: str,
        chain_config: ChainConfig,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> InstanceRecord:
        """Create a record in Uninitialized. Registering an existing id is an error."""
        lock = self.lock_for(instance_id)
        with self._lock:
            if instance_id in self._records:
                raise ValueError(f"Instance '{instance_id}' is already registered")
            record = InstanceRecord(
                instance_id,
                chain_config,
                lock,
                log_tail_capacity=self._log_tail_capacity,
                metadata=metadata,
            )
            self._records[instance_id] = record
            return record

    def ensure(self, instance_id: str, chain_config: ChainConfig) -> Tuple[InstanceRecord, bool]:
        """Return the record for ``instance_id``, creating it if needed. Second item: created."""
        lock = self.lock_for(instance_id)
        with self._lock:
            record = self._records.get(instance_id)
            if record is not None:
                return record, False
            record = InstanceRecord(
                instance_id,
                chain_config,
                lock,
                log_tail_capacity=self._log_tail_capacity,
            )
            self._records[instance_id] = record
            return record, True

    def get(self, instance_id: str) -> InstanceRecord:
        record = self.find(instance_id)
        if record is None:
            raise InstanceNotFound(instance_id)
        return record

    def find(self, instance_id: str) -> Optional[InstanceRecord]:
        with self._lock:
            return self._records.get(instance_id)

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def snapshots(self) -> List[InstanceSnapshot]:
        with self._lock:
            records = [self._records[key] for key in sorted(self._records)]
        return [record.snapshot() for record in records]

    def __contains__(self, instance_id: object) -> bool:
        with self._lock:
            return instance_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
