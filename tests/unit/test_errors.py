import json

from raas.errors import (
    ConfigError,
    ErrorCode,
    InstanceBusy,
    InvalidStateTransition,
    JobValidationError,
    RaasError,
    StepFailure,
    StepTimeout,
    handle_error,
)


def test_http_status_follows_code():
    assert InstanceBusy("orbit-1").http_status == 409
    assert InvalidStateTransition("Restart", "Uninitialized").http_status == 409
    assert JobValidationError("bad").http_status == 400
    assert StepTimeout("health", 5).http_status == 504


def test_to_dict_is_json_ready():
    error = InstanceBusy("orbit-1", held_by="restart")
    body = json.loads(error.to_json())
    assert body == {
        "code": "INSTANCE_002",
        "message": "Instance 'orbit-1' is busy (in-flight: restart)",
        "details": {"instance_id": "orbit-1", "held_by": "restart"},
        "http_status": 409,
    }


def test_step_timeout_is_a_step_failure():
    error = StepTimeout("wait_healthy", 2.5, attempts=3)
    assert isinstance(error, StepFailure)
    assert error.code is ErrorCode.STEP_TIMEOUT
    assert "timed out after 2.5s" in error.message
    assert error.details["attempts"] == 3


def test_config_error_codes():
    assert ConfigError("bad value").code is ErrorCode.CONFIG_INVALID
    missing = ConfigError("AVAIL_APP_ID is required", missing="AVAIL_APP_ID")
    assert missing.code is ErrorCode.CONFIG_MISSING_REQUIRED
    assert missing.details == {"missing": "AVAIL_APP_ID"}


def test_handle_error_passes_raas_errors_through():
    error = InstanceBusy("orbit-1")
    assert handle_error(error) is error


def test_handle_error_wraps_unexpected():
    wrapped = handle_error(OSError("disk full"), context="writing metadata")
    assert isinstance(wrapped, RaasError)
    assert wrapped.code is ErrorCode.SYSTEM_INTERNAL_ERROR
    assert wrapped.message == "writing metadata: disk full"
    assert wrapped.details["original_type"] == "OSError"
