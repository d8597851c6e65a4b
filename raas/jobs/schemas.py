"""Public job argument schemas and the secret-exclusion check that runs before them."""
#
# PURPOSE:
# Job arguments come from an external dispatch layer and are public by
# definition. Two gates stand between them and the Process Driver:
#
# 1. scan_for_secrets(): walks the raw mapping and rejects any field whose
#    NAME looks like a credential (privateKey, seed, mnemonic, ...) or whose
#    VALUE is shaped like one (32-byte hex key, BIP-39 phrase, substrate URI).
# 2. A per-operation pydantic model with extra="forbid", so unknown fields
#    never slip through.
#
# None of these models has a field that can hold credential material; the
# Vault's SigningCapability type is never referenced here.
#

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Type, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from raas.data.registry import ChainConfig
from raas.engine.state_machine import Operation
from raas.errors import JobValidationError

logger = logging.getLogger(__name__)

# Field-name fragments that mark a credential. Compared against the key with
# case, "_" and "-" removed.
SECRET_NAME_FRAGMENTS = (
    "privatekey",
    "secretkey",
    "secret",
    "seed",
    "mnemonic",
    "passphrase",
    "password",
    "signingkey",
    "apikey",
    "credential",
)

_HEX_KEY = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_MNEMONIC_WORD = re.compile(r"^[a-z]{3,8}$")
_MNEMONIC_LENGTHS = (12, 15, 18, 21, 24)
# Substrate secret URIs such as "//Alice" or "<phrase>//hard/soft"
_SUBSTRATE_URI = re.compile(r"^//[A-Za-z0-9]|\S//[A-Za-z0-9]")
_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Bridge tuning knobs a job may set, and the fixed variable each one reaches
# the setup tool through. Nothing else from a job enters a child environment.
BRIDGE_PARAMETERS: Dict[str, str] = {
    "gas_limit": "BRIDGE_GAS_LIMIT",
    "gas_price_bid": "BRIDGE_GAS_PRICE_BID",
    "max_submission_cost": "BRIDGE_MAX_SUBMISSION_COST",
    "native_token": "BRIDGE_NATIVE_TOKEN",
    "rollup_owner": "BRIDGE_ROLLUP_OWNER",
}
_PARAMETER_VALUE = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")


def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


def _looks_like_secret_value(value: str) -> Optional[str]:
    text = value.strip()
    if _HEX_KEY.match(text):
        return "value is shaped like a private key"
    words = text.split()
    if len(words) in _MNEMONIC_LENGTHS and all(_MNEMONIC_WORD.match(w) for w in words):
        return "value is shaped like a mnemonic phrase"
    if "://" not in text and _SUBSTRATE_URI.search(text):
        return "value is shaped like a substrate secret URI"
    return None


def scan_for_secrets(raw: Any, path: str = "") -> List[str]:
    """
    Return one violation per secret-looking field in ``raw``.

    Violations name the field path and the reason only, never the value.
    """
    violations: List[str] = []
    if isinstance(raw, Mapping):
        for key, value in raw.items():
            field_path = f"{path}.{key}" if path else str(key)
            normalized = _normalize_key(key)
            if any(fragment in normalized for fragment in SECRET_NAME_FRAGMENTS):
                violations.append(f"{field_path}: field name is reserved for credentials")
                continue
            violations.extend(scan_for_secrets(value, field_path))
    elif isinstance(raw, (list, tuple)):
        for index, item in enumerate(raw):
            violations.extend(scan_for_secrets(item, f"{path}[{index}]"))
    elif isinstance(raw, str):
        reason = _looks_like_secret_value(raw)
        if reason:
            violations.append(f"{path or '<value>'}: {reason}")
    return violations


def _check_url(value: str, schemes=("http", "https", "ws", "wss")) -> str:
    value = value.strip()
    parsed = urlparse(value)
    if parsed.scheme not in schemes:
        raise ValueError(f"URL scheme must be one of {', '.join(schemes)}")
    if not parsed.netloc:
        raise ValueError("URL is missing a network location")
    return value


# ============================================================================
# Per-operation argument models
# ============================================================================

class PublicArguments(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class DeployArgs(PublicArguments):
    name: str = Field(..., min_length=1, max_length=128)
    chain_id: int = Field(..., gt=0)
    avail_app_id: str = Field(..., min_length=1, max_length=32)
    parent_chain_rpc: str = Field(..., min_length=1, max_length=2048)
    fallback_s3_enable: bool = False
    local_rpc_endpoint: str = "http://localhost:8449"
    explorer_url: str = "http://localhost:4000"

    @field_validator("avail_app_id", mode="before")
    @classmethod
    def coerce_app_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("avail_app_id")
    @classmethod
    def validate_app_id(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("avail_app_id must be a non-negative integer")
        return v

    @field_validator("parent_chain_rpc", "local_rpc_endpoint")
    @classmethod
    def validate_rpc(cls, v: str) -> str:
        return _check_url(v)

    @field_validator("explorer_url")
    @classmethod
    def validate_explorer(cls, v: str) -> str:
        return _check_url(v, schemes=("http", "https"))

    def to_chain_config(self) -> ChainConfig:
        return ChainConfig(**self.model_dump())


class RestartArgs(PublicArguments):
    reason: Optional[str] = Field(None, max_length=512)


class UpdateMetadataArgs(PublicArguments):
    name: Optional[str] = Field(None, min_length=1, max_length=128)
    description: Optional[str] = Field(None, max_length=4096)
    explorer_url: Optional[str] = None
    extra: Dict[str, str] = Field(default_factory=dict)

    @field_validator("explorer_url")
    @classmethod
    def validate_explorer(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_url(v, schemes=("http", "https"))

    @field_validator("extra")
    @classmethod
    def validate_extra(cls, v: Dict[str, str]) -> Dict[str, str]:
        if len(v) > 32:
            raise ValueError("extra may hold at most 32 entries")
        reserved = {"name", "description", "explorer_url"}
        clash = sorted(reserved.intersection(v))
        if clash:
            raise ValueError(f"extra may not redefine: {', '.join(clash)}")
        return v

    @model_validator(mode="after")
    def require_change(self) -> "UpdateMetadataArgs":
        if self.name is None and self.description is None and self.explorer_url is None and not self.extra:
            raise ValueError("at least one metadata field is required")
        return self

    def updates(self) -> Dict[str, Any]:
        """Flat key/value changes to merge into InstanceRecord.metadata."""
        changes: Dict[str, Any] = dict(self.extra)
        for key in ("name", "description", "explorer_url"):
            value = getattr(self, key)
            if value is not None:
                changes[key] = value
        return changes


class UpdateBridgeArgs(PublicArguments):
    bridge_address: Optional[str] = None
    inbox_address: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)

    @field_validator("bridge_address", "inbox_address")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _ADDRESS.match(v):
            raise ValueError("must be a 0x-prefixed 20-byte hex address")
        return v

    @field_validator("parameters")
    @classmethod
    def validate_parameters(cls, v: Dict[str, str]) -> Dict[str, str]:
        unknown = sorted(key for key in v if key not in BRIDGE_PARAMETERS)
        if unknown:
            raise ValueError(
                f"unknown bridge parameter(s) {', '.join(unknown)}; "
                f"allowed: {', '.join(sorted(BRIDGE_PARAMETERS))}"
            )
        for key, value in v.items():
            if not _PARAMETER_VALUE.match(value):
                raise ValueError(f"bridge parameter {key} has an unsupported value")
        return v

    @model_validator(mode="after")
    def require_change(self) -> "UpdateBridgeArgs":
        if self.bridge_address is None and self.inbox_address is None and not self.parameters:
            raise ValueError("at least one bridge field is required")
        return self

    def bridge_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {"parameters": dict(self.parameters)}
        if self.bridge_address is not None:
            config["bridge_address"] = self.bridge_address
        if self.inbox_address is not None:
            config["inbox_address"] = self.inbox_address
        return config

    def tool_environment(self) -> Dict[str, str]:
        """Bridge parameters keyed by their fixed ``BRIDGE_*`` variable names."""
        return {BRIDGE_PARAMETERS[key]: value for key, value in self.parameters.items()}


ARGUMENT_MODELS: Dict[Operation, Type[PublicArguments]] = {
    Operation.DEPLOY: DeployArgs,
    Operation.RESTART: RestartArgs,
    Operation.UPDATE_METADATA: UpdateMetadataArgs,
    Operation.UPDATE_BRIDGE: UpdateBridgeArgs,
}


def parse_arguments(operation: Union[Operation, str], raw: Optional[Mapping[str, Any]]) -> PublicArguments:
    """
    Secret-scan then validate ``raw`` into the model for ``operation``.

    Raises:
        JobValidationError: on any secret-looking field or schema violation
    """
    operation = Operation(operation)
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise JobValidationError("Job arguments must be an object", [f"got {type(raw).__name__}"])

    violations = scan_for_secrets(raw)
    if violations:
        logger.warning(f"[Schemas] Rejected {operation.value} arguments: {'; '.join(violations)}")
        raise JobValidationError("Job arguments must not carry credentials", violations)

    model = ARGUMENT_MODELS[operation]
    try:
        return model.model_validate(dict(raw))
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise JobValidationError(f"Invalid arguments for {operation.value}", errors) from None
