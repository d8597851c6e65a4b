"""Structured error taxonomy for the Orbit RaaS control plane."""
#
# PURPOSE:
# Every rejected or failed lifecycle request carries a typed error with a
# searchable code and a human-readable reason. The same objects are used by
# the job surface (TransitionResult.error_code) and by the HTTP read surface
# (JSON error bodies).
#
# ERROR CODE FORMAT:
# - JOB_XXX: Job argument / admission errors (rejected before any side effect)
# - INSTANCE_XXX: Registry lookups and lock contention
# - VAULT_XXX: Credential configuration
# - STEP_XXX: Process Driver step failures
# - CONFIG_XXX: Service configuration
# - SYSTEM_XXX: Anything unexpected
#
# USAGE:
#   from raas.errors import InstanceBusy
#
#   raise InstanceBusy("orbit-1", held_by="restart")
#

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Job errors
    JOB_VALIDATION_FAILED = "JOB_001"
    JOB_INVALID_TRANSITION = "JOB_002"
    JOB_UNKNOWN = "JOB_003"

    # Instance errors
    INSTANCE_NOT_FOUND = "INSTANCE_001"
    INSTANCE_BUSY = "INSTANCE_002"

    # Vault errors
    VAULT_CREDENTIAL_MISSING = "VAULT_001"
    VAULT_ACCESS_DENIED = "VAULT_002"

    # Step errors
    STEP_FAILED = "STEP_001"
    STEP_TIMEOUT = "STEP_002"

    # Config errors
    CONFIG_INVALID = "CONFIG_001"
    CONFIG_MISSING_REQUIRED = "CONFIG_002"

    # System errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class RaasError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "INSTANCE_002")
        message: Human-readable error message
        details: Optional dictionary with additional context
        http_status: Suggested HTTP status code for API responses
    """

    HTTP_STATUS_MAP: Dict[ErrorCode, int] = {
        ErrorCode.JOB_VALIDATION_FAILED: 400,
        ErrorCode.JOB_INVALID_TRANSITION: 409,
        ErrorCode.JOB_UNKNOWN: 404,
        ErrorCode.INSTANCE_NOT_FOUND: 404,
        ErrorCode.INSTANCE_BUSY: 409,
        ErrorCode.VAULT_CREDENTIAL_MISSING: 500,
        ErrorCode.VAULT_ACCESS_DENIED: 403,
        ErrorCode.STEP_FAILED: 502,
        ErrorCode.STEP_TIMEOUT: 504,
        ErrorCode.CONFIG_INVALID: 500,
        ErrorCode.CONFIG_MISSING_REQUIRED: 500,
        ErrorCode.SYSTEM_INTERNAL_ERROR: 500,
    }

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.HTTP_STATUS_MAP.get(code, 500)
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "http_status": self.http_status,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# ============================================================================
# Typed errors
# ============================================================================

class JobValidationError(RaasError):
    """Public job arguments failed schema validation or looked like a secret."""

    def __init__(self, message: str, violations: Optional[list] = None):
        self.violations = list(violations or [])
        super().__init__(
            ErrorCode.JOB_VALIDATION_FAILED,
            message,
            details={"violations": self.violations},
        )


class InvalidStateTransition(RaasError):
    """The requested operation is not legal from the instance's current state."""

    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(
            ErrorCode.JOB_INVALID_TRANSITION,
            f"Operation '{operation}' is not allowed from state '{state}'",
            details={"operation": operation, "state": state},
        )


class UnknownJob(RaasError):
    def __init__(self, job_id: Any):
        super().__init__(ErrorCode.JOB_UNKNOWN, f"Unknown job id: {job_id}", details={"job_id": job_id})


class InstanceNotFound(RaasError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(
            ErrorCode.INSTANCE_NOT_FOUND,
            f"No rollup instance with id '{instance_id}'",
            details={"instance_id": instance_id},
        )


class InstanceBusy(RaasError):
    """Another lifecycle transition holds the instance lock. Callers retry."""

    def __init__(self, instance_id: str, held_by: Optional[str] = None):
        self.instance_id = instance_id
        self.held_by = held_by
        super().__init__(
            ErrorCode.INSTANCE_BUSY,
            f"Instance '{instance_id}' is busy"
            + (f" (in-flight: {held_by})" if held_by else ""),
            details={"instance_id": instance_id, "held_by": held_by},
        )


class CredentialMissing(RaasError):
    def __init__(self, role: str):
        self.role = role
        super().__init__(
            ErrorCode.VAULT_CREDENTIAL_MISSING,
            f"Credential for role '{role}' is not configured",
            details={"role": role},
        )


class VaultAccessDenied(RaasError):
    def __init__(self, message: str = "Caller does not hold a vault grant"):
        super().__init__(ErrorCode.VAULT_ACCESS_DENIED, message)


class StepFailure(RaasError):
    """
    A Process Driver step exhausted its retries or failed fatally.

    Attributes:
        step: Name of the step that failed
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        step: str,
        reason: str,
        attempts: int = 1,
        code: ErrorCode = ErrorCode.STEP_FAILED,
    ):
        self.step = step
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            code,
            f"Step '{step}' failed after {attempts} attempt(s): {reason}",
            details={"step": step, "attempts": attempts, "reason": reason},
        )


class StepTimeout(StepFailure):
    """A health poll or external call exceeded its deadline."""

    def __init__(self, step: str, timeout: float, attempts: int = 1):
        self.timeout = timeout
        super().__init__(
            step,
            f"timed out after {timeout:g}s",
            attempts=attempts,
            code=ErrorCode.STEP_TIMEOUT,
        )


class ConfigError(RaasError):
    def __init__(self, message: str, missing: Optional[str] = None):
        code = ErrorCode.CONFIG_MISSING_REQUIRED if missing else ErrorCode.CONFIG_INVALID
        super().__init__(code, message, details={"missing": missing} if missing else None)


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> RaasError:
    """
    Convert a generic exception to a RaasError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while restarting containers")

    Returns:
        RaasError with appropriate code and message
    """
    if isinstance(error, RaasError):
        return error

    message = str(error) or type(error).__name__
    if context:
        message = f"{context}: {message}"

    return RaasError(
        ErrorCode.SYSTEM_INTERNAL_ERROR,
        message,
        details={
            "original_type": type(error).__name__,
            "original_message": str(error),
        },
    )


__all__ = [
    "ErrorCode",
    "RaasError",
    "JobValidationError",
    "InvalidStateTransition",
    "UnknownJob",
    "InstanceNotFound",
    "InstanceBusy",
    "CredentialMissing",
    "VaultAccessDenied",
    "StepFailure",
    "StepTimeout",
    "ConfigError",
    "handle_error",
]
