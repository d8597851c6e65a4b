"""Lifecycle state machine: which operation may run from which state, and where it lands.

Transitions are fail-closed: any (state, operation) pair not listed below is
rejected with InvalidStateTransition. Nothing here performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Tuple, Union

from raas.errors import InvalidStateTransition


class LifecycleState(str, Enum):
    UNINITIALIZED = "Uninitialized"
    DEPLOYING = "Deploying"
    RUNNING = "Running"
    RESTARTING = "Restarting"
    UPDATING = "Updating"
    FAILED = "Failed"


class Operation(str, Enum):
    DEPLOY = "deploy"
    RESTART = "restart"
    UPDATE_METADATA = "update_metadata"
    UPDATE_BRIDGE = "update_bridge"


IN_PROGRESS_STATES = frozenset({
    LifecycleState.DEPLOYING,
    LifecycleState.RESTARTING,
    LifecycleState.UPDATING,
})


@dataclass(frozen=True)
class TransitionPlan:
    operation: Operation
    source: LifecycleState
    in_progress: LifecycleState
    on_success: LifecycleState
    on_failure: LifecycleState


# operation -> (valid sources, in progress, on success, on failure)
_TABLE: Dict[Operation, Tuple[FrozenSet[LifecycleState], LifecycleState, LifecycleState, LifecycleState]] = {
    Operation.DEPLOY: (
        frozenset({LifecycleState.UNINITIALIZED, LifecycleState.FAILED}),
        LifecycleState.DEPLOYING,
        LifecycleState.RUNNING,
        LifecycleState.FAILED,
    ),
    Operation.RESTART: (
        frozenset({LifecycleState.RUNNING, LifecycleState.FAILED}),
        LifecycleState.RESTARTING,
        LifecycleState.RUNNING,
        LifecycleState.FAILED,
    ),
    # Configuration writes never take the node down: a failed update leaves
    # the instance Running with the old values.
    Operation.UPDATE_METADATA: (
        frozenset({LifecycleState.RUNNING}),
        LifecycleState.UPDATING,
        LifecycleState.RUNNING,
        LifecycleState.RUNNING,
    ),
    Operation.UPDATE_BRIDGE: (
        frozenset({LifecycleState.RUNNING}),
        LifecycleState.UPDATING,
        LifecycleState.RUNNING,
        LifecycleState.RUNNING,
    ),
}


def plan(state: Union[LifecycleState, str], operation: Union[Operation, str]) -> TransitionPlan:
    """Resolve the transition for ``operation`` from ``state`` or raise InvalidStateTransition."""
    state = LifecycleState(state)
    operation = Operation(operation)
    sources, in_progress, on_success, on_failure = _TABLE[operation]
    if state not in sources:
        raise InvalidStateTransition(operation.value, state.value)
    return TransitionPlan(
        operation=operation,
        source=state,
        in_progress=in_progress,
        on_success=on_success,
        on_failure=on_failure,
    )


def is_allowed(state: Union[LifecycleState, str], operation: Union[Operation, str]) -> bool:
    return LifecycleState(state) in _TABLE[Operation(operation)][0]


def allowed_operations(state: Union[LifecycleState, str]) -> List[Operation]:
    state = LifecycleState(state)
    return [op for op, (sources, *_rest) in _TABLE.items() if state in sources]
