"""Step runner: bounded retries with exponential backoff and a per-step timeout."""
#
# PURPOSE:
# Every side effect of a lifecycle operation (pull an image, run the deploy
# tool, start containers, wait for health) runs as a named step. Each step
# walks its own small state machine:
#
#     pending -> running -> succeeded
#                        -> failed_retryable -> running (next attempt)
#                        -> failed_fatal
#
# ERROR CLASSIFICATION:
# - TransientStepError and timeouts: retried until max_attempts
# - PermanentStepError and RaasError (e.g. CredentialMissing): fatal at once
# - Anything else: treated as transient
#
# When a step gives up it raises StepFailure (or StepTimeout) carrying the
# step name, the attempt count and the first unrecoverable reason.
#

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from raas.base.config import RetryConfig
from raas.errors import RaasError, StepFailure, StepTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"


class TransientStepError(Exception):
    """Safe to retry: a command exited non-zero, the node is not up yet, a network blip."""


class PermanentStepError(Exception):
    """Do not retry: missing artifacts, invalid configuration, missing tooling."""


@dataclass
class StepRecord:
    name: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def backoff_delay(attempt: int, retry: RetryConfig) -> float:
    """Delay before attempt ``attempt + 1``: base * multiplier ** (attempt - 1), capped."""
    delay = retry.base_delay * (retry.multiplier ** max(attempt - 1, 0))
    return min(delay, retry.max_delay)


@dataclass
class StepRunner:
    """
    Runs named async steps under the retry policy.

    Attributes:
        retry: Attempts and backoff parameters
        on_log: Optional sink for progress lines (the instance log tail)
        sleep: Injectable for tests
        history: Every StepRecord produced by this runner, in order
    """

    retry: RetryConfig
    on_log: Optional[Callable[[str], None]] = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    history: List[StepRecord] = field(default_factory=list)

    def _log(self, message: str) -> None:
        if self.on_log is not None:
            self.on_log(message)

    async def run(
        self,
        name: str,
        action: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> T:
        record = StepRecord(name=name)
        self.history.append(record)
        attempts_allowed = max(1, max_attempts or self.retry.max_attempts)

        while True:
            record.attempts += 1
            record.status = StepStatus.RUNNING
            if record.started_at is None:
                record.started_at = time.time()
            self._log(f"[step:{name}] attempt {record.attempts}/{attempts_allowed}")

            try:
                if timeout is not None:
                    result = await asyncio.wait_for(action(), timeout=timeout)
                else:
                    result = await action()
            except asyncio.TimeoutError as exc:
                record.error = f"timed out after {timeout:g}s" if timeout is not None else "timed out"
                if record.attempts >= attempts_allowed:
                    self._finish(record, StepStatus.FAILED_FATAL)
                    if timeout is None:
                        raise StepFailure(name, record.error, attempts=record.attempts) from exc
                    raise StepTimeout(name, timeout, attempts=record.attempts) from exc
                record.status = StepStatus.FAILED_RETRYABLE
            except (PermanentStepError, RaasError) as exc:
                record.error = str(exc)
                self._finish(record, StepStatus.FAILED_FATAL)
                if isinstance(exc, RaasError):
                    raise
                raise StepFailure(name, str(exc), attempts=record.attempts) from exc
            except asyncio.CancelledError:
                record.error = "cancelled"
                self._finish(record, StepStatus.FAILED_FATAL)
                raise
            except Exception as exc:
                record.error = str(exc) or type(exc).__name__
                if record.attempts >= attempts_allowed:
                    self._finish(record, StepStatus.FAILED_FATAL)
                    raise StepFailure(name, record.error, attempts=record.attempts) from exc
                record.status = StepStatus.FAILED_RETRYABLE
            else:
                record.error = None
                self._finish(record, StepStatus.SUCCEEDED)
                self._log(f"[step:{name}] succeeded")
                return result

            delay = backoff_delay(record.attempts, self.retry)
            logger.warning(f"[Step:{name}] attempt {record.attempts} failed ({record.error}); retrying in {delay:g}s")
            self._log(f"[step:{name}] failed: {record.error}; retrying in {delay:g}s")
            await self.sleep(delay)

    def _finish(self, record: StepRecord, status: StepStatus) -> None:
        record.status = status
        record.finished_at = time.time()
        if status == StepStatus.FAILED_FATAL:
            logger.error(f"[Step:{record.name}] gave up after {record.attempts} attempt(s): {record.error}")
            self._log(f"[step:{record.name}] failed: {record.error}")


@dataclass
class StepOutcome:
    """
    What the Process Driver reports back for one lifecycle operation.

    ``changes`` holds the InstanceRecord fields to commit (chain_config,
    metadata, container_ids, deployment, bridge). On failure it still carries
    whatever partial progress was observed, e.g. container ids that were
    started before health polling timed out.
    """

    operation: str
    succeeded: bool
    steps: List[StepRecord] = field(default_factory=list)
    changes: Dict[str, Any] = field(default_factory=dict)
    health: Optional[Any] = None
    error: Optional[RaasError] = None

    @property
    def completed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status == StepStatus.SUCCEEDED]

    @property
    def failed_step(self) -> Optional[str]:
        for s in self.steps:
            if s.status == StepStatus.FAILED_FATAL:
                return s.name
        return None

    def progress_reason(self) -> str:
        """Readable partial-progress summary for health.reason."""
        if self.error is None:
            return f"{self.operation} completed"
        done = ", ".join(self.completed_steps) or "none"
        where = f" at step '{self.failed_step}'" if self.failed_step else ""
        return f"{self.operation} failed{where} (completed: {done}): {self.error.message}"
