# ============================================================================
# raas/base/config.py
# Application Configuration Management
# ============================================================================
#
# PURPOSE:
# Defines every tunable of the control plane: where the HTTP read surface
# listens, how the Process Driver talks to docker/npm/yarn, how long steps may
# take and how often they are retried, and how logging is set up.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: one immutable group per concern
# 2. Environment variables: RAAS_* settings plus the rollup variables the
#    operator already uses (ROLLUP_NAME, AVAIL_APP_ID, PARENT_CHAIN_RPC, ...)
# 3. No secrets here: private keys and seeds are loaded by the Vault only
#
# ============================================================================

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from raas.errors import ConfigError

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ============================================================================
# HTTP Read Surface
# ============================================================================

@dataclass(frozen=True)
class ServerConfig:
    # 127.0.0.1 keeps the status surface local unless the operator opts in
    api_host: str = "127.0.0.1"
    api_port: int = 3000
    # Upper bound for GET /logs?limit=
    max_log_limit: int = 1000


# ============================================================================
# Process Driver
# ============================================================================

@dataclass(frozen=True)
class RetryConfig:
    # Attempts per step, including the first one
    max_attempts: int = 3
    # Backoff: base_delay * multiplier ** (attempt - 1), capped at max_delay
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0


@dataclass(frozen=True)
class DriverConfig:
    base_dir: Path = field(default_factory=lambda: Path.home() / ".orbit-raas")
    node_image: str = "availj/avail-nitro-node:v2.2.1-upstream-v3.2.1"
    orbit_sdk_repo: str = "https://github.com/availproject/arbitrum-orbit-sdk.git"
    orbit_sdk_branch: str = "avail-develop-upstream-v0.20.1"
    setup_script_repo: str = "https://github.com/availproject/orbit-setup-script.git"
    compose_command: Tuple[str, ...] = ("docker", "compose")

    # Wall-clock limit for one external command (contract deployment is slow)
    command_timeout_seconds: float = 900.0
    # Health polling after containers start
    health_timeout_seconds: float = 180.0
    health_poll_interval: float = 2.0

    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def deployments_path(self) -> Path:
        return self.base_dir / "deployments"

    def instance_dir(self, instance_id: str) -> Path:
        return self.deployments_path / instance_id


# ============================================================================
# Logging
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = False
    file_name: str = "orbit-raas.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Public rollup parameters
# ============================================================================
# Everything here ends up in InstanceRecord.chain_config and is safe to show
# on the HTTP surface.

@dataclass(frozen=True)
class RollupConfig:
    instance_id: str
    name: str
    chain_id: int
    avail_app_id: str
    parent_chain_rpc: str
    fallback_s3_enable: bool = False
    local_rpc_endpoint: str = "http://localhost:8449"
    explorer_url: str = "http://localhost:4000"

    def as_arguments(self) -> dict:
        """Public arguments for the bring-up Deploy request."""
        return {
            "name": self.name,
            "chain_id": self.chain_id,
            "avail_app_id": self.avail_app_id,
            "parent_chain_rpc": self.parent_chain_rpc,
            "fallback_s3_enable": self.fallback_s3_enable,
            "local_rpc_endpoint": self.local_rpc_endpoint,
            "explorer_url": self.explorer_url,
        }

    @classmethod
    def from_env(cls) -> "RollupConfig":
        avail_app_id = os.getenv("AVAIL_APP_ID")
        if not avail_app_id:
            raise ConfigError("AVAIL_APP_ID not set", missing="AVAIL_APP_ID")
        parent_chain_rpc = os.getenv("PARENT_CHAIN_RPC")
        if not parent_chain_rpc:
            raise ConfigError("PARENT_CHAIN_RPC not set", missing="PARENT_CHAIN_RPC")

        raw_chain_id = os.getenv("ROLLUP_CHAIN_ID", "412346")
        try:
            chain_id = int(raw_chain_id)
        except ValueError:
            logger.warning(f"[Config] ROLLUP_CHAIN_ID={raw_chain_id!r} is not an integer, using 412346")
            chain_id = 412346

        return cls(
            instance_id=os.getenv("RAAS_INSTANCE_ID", "orbit-rollup"),
            name=os.getenv("ROLLUP_NAME", "Avail Orbit Rollup"),
            chain_id=chain_id,
            avail_app_id=avail_app_id,
            parent_chain_rpc=parent_chain_rpc,
            fallback_s3_enable=_env_bool("FALLBACKS3_ENABLE"),
            local_rpc_endpoint=os.getenv("ROLLUP_LOCAL_RPC", "http://localhost:8449"),
            explorer_url=os.getenv("ROLLUP_EXPLORER_URL", "http://localhost:4000"),
        )


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass(frozen=True)
class RaasConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    driver: DriverConfig = field(default_factory=DriverConfig)
    log: LogConfig = field(default_factory=LogConfig)
    # Capacity of each InstanceRecord.log_tail
    log_tail_capacity: int = 2000
    # Recent TransitionResults kept per instance by the dispatcher
    result_history: int = 50
    debug: bool = False

    @classmethod
    def from_env(cls) -> "RaasConfig":
        server = ServerConfig(
            api_host=os.getenv("RAAS_API_HOST", "127.0.0.1"),
            api_port=int(os.getenv("RAAS_API_PORT", "3000")),
            max_log_limit=int(os.getenv("RAAS_MAX_LOG_LIMIT", "1000")),
        )

        retry = RetryConfig(
            max_attempts=int(os.getenv("RAAS_STEP_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("RAAS_STEP_BACKOFF_BASE", "1.0")),
            multiplier=float(os.getenv("RAAS_STEP_BACKOFF_MULTIPLIER", "2.0")),
            max_delay=float(os.getenv("RAAS_STEP_BACKOFF_MAX", "30.0")),
        )

        compose = os.getenv("RAAS_COMPOSE_COMMAND", "docker compose")
        driver = DriverConfig(
            base_dir=Path(os.getenv("RAAS_DATA_DIR", str(Path.home() / ".orbit-raas"))),
            node_image=os.getenv("RAAS_NODE_IMAGE", DriverConfig.node_image),
            compose_command=tuple(compose.split()),
            command_timeout_seconds=float(os.getenv("RAAS_COMMAND_TIMEOUT", "900")),
            health_timeout_seconds=float(os.getenv("RAAS_HEALTH_TIMEOUT", "180")),
            health_poll_interval=float(os.getenv("RAAS_HEALTH_POLL_INTERVAL", "2")),
            retry=retry,
        )

        log = LogConfig(
            level=os.getenv("RAAS_LOG_LEVEL", "INFO"),
            file_enabled=_env_bool("RAAS_LOG_FILE"),
        )

        return cls(
            server=server,
            driver=driver,
            log=log,
            log_tail_capacity=int(os.getenv("RAAS_LOG_TAIL_CAPACITY", "2000")),
            debug=_env_bool("RAAS_DEBUG"),
        )


# ============================================================================
# Global Configuration Accessors
# ============================================================================
# Only the CLI and the service root use these. Core objects receive their
# config through constructor arguments.

_config: Optional[RaasConfig] = None


def get_config() -> RaasConfig:
    global _config
    if _config is None:
        _config = RaasConfig.from_env()
    return _config


def set_config(config: RaasConfig) -> None:
    """Replace the global configuration (mainly used for testing)."""
    global _config
    _config = config


# ============================================================================
# Logging Setup
# ============================================================================

# Shapes of credential material that may surface in log lines or tool output:
# KEY=value assignments with a secret-looking name, bare 32-byte hex keys,
# substrate secret URIs ("//Alice") and BIP-39 style word runs.
_SECRET_ASSIGNMENT = re.compile(
    r"(?i)\b([A-Z0-9_]*(?:PRIVATE_?KEY|SECRET|SEED|MNEMONIC|PASSWORD|PASSPHRASE)[A-Z0-9_]*)(\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|\S+)"
)
_KEY_PATTERN = re.compile(r"\b(0x)?[0-9a-fA-F]{64}\b")
_SUBSTRATE_URI = re.compile(r"(?<![:/\w])//[A-Za-z0-9][^\s\"']*")
_MNEMONIC_RUN = re.compile(r"\b(?:[a-z]{3,8}\s+){11,23}[a-z]{3,8}\b")

REDACTED = "[REDACTED]"


def redact_secrets(text: str) -> str:
    """Mask anything shaped like a credential in ``text``."""
    text = _SECRET_ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
    text = _KEY_PATTERN.sub(REDACTED, text)
    text = _SUBSTRATE_URI.sub(REDACTED, text)
    return _MNEMONIC_RUN.sub(REDACTED, text)


class SecretRedactionFilter(logging.Filter):
    """Masks credential-shaped values in log records before any handler writes them."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(config: Optional[RaasConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Sets up console and (optionally) file logging with rotation.
    Call this once at application startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.driver.base_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.driver.base_dir / cfg.log.file_name,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    redaction = SecretRedactionFilter()
    for handler in handlers:
        handler.addFilter(redaction)

    logging.basicConfig(
        level=getattr(logging, cfg.log.level.upper(), logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
