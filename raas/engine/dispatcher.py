"""Job Dispatcher: admits, serializes and commits lifecycle requests."""
#
# PURPOSE:
# Single entry point for every state-changing request. submit() applies the
# admission checks in a fixed order and only then hands the work to the
# Process Driver:
#
#   1. secret-exclusion + schema check on the public arguments
#      (before the registry is even looked at)
#   2. instance existence (Deploy provisions a missing record)
#   3. state-machine admissibility
#   4. non-blocking lifecycle lock acquisition (InstanceBusy when held)
#
# A request that finds the instance in an in-progress state while its lock is
# held gets InstanceBusy rather than InvalidStateTransition.
#
# A request rejected at any of these points leaves the InstanceRecord exactly
# as it was; the rejection is logged and kept in the dispatcher's history.
#
# This module never imports the credential vault. The driver it is given
# already holds the only vault grant.
#

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from raas.data.registry import HealthSnapshot, InstanceRecord, InstanceRegistry
from raas.engine.state_machine import IN_PROGRESS_STATES, LifecycleState, Operation, TransitionPlan, plan
from raas.engine.steps import StepOutcome
from raas.errors import InstanceBusy, RaasError, handle_error
from raas.jobs.schemas import DeployArgs, PublicArguments, parse_arguments

logger = logging.getLogger(__name__)

# Record fields a failed transition may still commit: observed facts about
# what already exists, never the requested configuration changes.
_PARTIAL_PROGRESS_FIELDS = ("chain_config", "container_ids", "deployment")


class Outcome(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class TransitionRequest:
    instance_id: str
    operation: Operation
    public_arguments: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        instance_id: str,
        operation: Union[Operation, str],
        public_arguments: Optional[Mapping[str, Any]] = None,
    ) -> "TransitionRequest":
        return cls(instance_id, Operation(operation), public_arguments if public_arguments is not None else {})


@dataclass(frozen=True)
class TransitionResult:
    instance_id: str
    operation: Operation
    outcome: Outcome
    resulting_state: Optional[LifecycleState]
    reason: Optional[str] = None
    error_code: Optional[str] = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.time)
    finished_at: float = field(default_factory=time.time)
    steps: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    @property
    def message(self) -> str:
        if self.outcome == Outcome.SUCCEEDED:
            return f"{self.operation.value} succeeded on {self.instance_id}"
        return f"{self.operation.value} {self.outcome.value.lower()} on {self.instance_id}: {self.reason}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "instance_id": self.instance_id,
            "operation": self.operation.value,
            "outcome": self.outcome.value,
            "resulting_state": self.resulting_state.value if self.resulting_state else None,
            "reason": self.reason,
            "error_code": self.error_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "steps": list(self.steps),
        }


class JobDispatcher:
    """
    Validates and serializes lifecycle requests against the registry.

    Args:
        registry: The service-owned Instance Registry
        driver: Anything with ``async execute(operation, record, arguments) -> StepOutcome``
        history_size: Recent TransitionResults kept per registered instance
    """

    def __init__(self, registry: InstanceRegistry, driver: Any, history_size: int = 50):
        self.registry = registry
        self.driver = driver
        self._history_size = history_size
        self._history: Dict[str, Deque[TransitionResult]] = {}

    def recent_results(self, instance_id: str) -> List[TransitionResult]:
        return list(self._history.get(instance_id, ()))

    def _remember(self, result: TransitionResult) -> TransitionResult:
        # Ids the registry never provisioned get no history bucket
        if result.instance_id not in self.registry:
            return result
        bucket = self._history.get(result.instance_id)
        if bucket is None:
            bucket = self._history.setdefault(result.instance_id, deque(maxlen=self._history_size))
        bucket.append(result)
        return result

    def _reject(
        self,
        request: TransitionRequest,
        error: RaasError,
        started_at: float,
        record: Optional[InstanceRecord] = None,
    ) -> TransitionResult:
        logger.warning(
            f"[Dispatcher] Rejected {request.operation.value} on {request.instance_id}: "
            f"{error.code.value} {error.message}"
        )
        return self._remember(
            TransitionResult(
                instance_id=request.instance_id,
                operation=request.operation,
                outcome=Outcome.REJECTED,
                resulting_state=record.state if record is not None else None,
                reason=error.message,
                error_code=error.code.value,
                started_at=started_at,
            )
        )

    async def submit(self, request: TransitionRequest) -> TransitionResult:
        started_at = time.time()
        operation = request.operation

        # 1. Public arguments: secret scan and schema, before any lookup
        try:
            arguments = parse_arguments(operation, request.public_arguments)
        except RaasError as e:
            return self._reject(request, e, started_at)

        # 2-4. Existence, admissibility, lock
        record: Optional[InstanceRecord] = None
        try:
            record = self._lookup(request, arguments)
            if record.lock.locked and record.state in IN_PROGRESS_STATES:
                # The intermediate state belongs to the transition in flight
                raise InstanceBusy(record.id, held_by=record.lock.holder)
            transition = plan(record.state, operation)
            if not record.lock.try_acquire(operation.value):
                raise InstanceBusy(record.id, held_by=record.lock.holder)
            # State may have moved between the check and the acquire
            try:
                transition = plan(record.state, operation)
            except RaasError:
                record.lock.release()
                raise
        except RaasError as e:
            return self._reject(request, e, started_at, record)

        try:
            return self._remember(await self._run(record, transition, arguments, started_at))
        finally:
            record.lock.release()

    def _lookup(self, request: TransitionRequest, arguments: PublicArguments) -> InstanceRecord:
        if request.operation == Operation.DEPLOY and isinstance(arguments, DeployArgs):
            record, created = self.registry.ensure(request.instance_id, arguments.to_chain_config())
            if created:
                logger.info(f"[Dispatcher] Provisioned instance {record.id} for deploy")
            return record
        return self.registry.get(request.instance_id)

    async def _run(
        self,
        record: InstanceRecord,
        transition: TransitionPlan,
        arguments: PublicArguments,
        started_at: float,
    ) -> TransitionResult:
        operation = transition.operation
        record.commit(transition.in_progress, operation=operation.value)
        logger.info(
            f"[Dispatcher] {operation.value} admitted on {record.id}: "
            f"{transition.source.value} -> {transition.in_progress.value}"
        )

        try:
            outcome: StepOutcome = await self.driver.execute(operation, record, arguments)
        except Exception as e:
            logger.error(f"[Dispatcher] Driver raised during {operation.value} on {record.id}: {e}", exc_info=True)
            outcome = StepOutcome(operation=operation.value, succeeded=False, error=handle_error(e, "process driver"))

        steps = [s.to_dict() for s in outcome.steps]
        if outcome.succeeded:
            record.commit(transition.on_success, operation=operation.value, **outcome.changes)
            if outcome.health is not None:
                record.update_health(outcome.health)
            logger.info(f"[Dispatcher] {operation.value} succeeded on {record.id} -> {transition.on_success.value}")
            return TransitionResult(
                instance_id=record.id,
                operation=operation,
                outcome=Outcome.SUCCEEDED,
                resulting_state=transition.on_success,
                started_at=started_at,
                finished_at=time.time(),
                steps=steps,
            )

        if outcome.error is None:
            outcome.error = handle_error(RuntimeError("driver reported failure without an error"))
        error = outcome.error
        reason = outcome.progress_reason()
        partial = {k: v for k, v in outcome.changes.items() if k in _PARTIAL_PROGRESS_FIELDS}
        record.commit(transition.on_failure, operation=operation.value, **partial)
        if transition.on_failure == LifecycleState.FAILED:
            record.update_health(HealthSnapshot(timestamp=time.time(), healthy=False, reason=reason))
        record.append_log(f"{operation.value} failed: {error.code.value} {reason}")
        logger.error(f"[Dispatcher] {operation.value} failed on {record.id} -> {transition.on_failure.value}: {reason}")
        return TransitionResult(
            instance_id=record.id,
            operation=operation,
            outcome=Outcome.FAILED,
            resulting_state=transition.on_failure,
            reason=reason,
            error_code=error.code.value,
            started_at=started_at,
            finished_at=time.time(),
            steps=steps,
        )
