"""Credential Vault: holds operator secrets and hands out opaque signing capabilities."""
#
# PURPOSE:
# Private keys (deployer, batch poster, validator) and the Avail account seed
# are loaded once at startup and live only inside this module. Higher layers
# receive SigningCapability handles, never the raw values.
#
# TRUST BOUNDARY:
# - Vault.get() requires the VaultGrant minted by issue_grant(). The service
#   root hands that grant to the Process Driver and nobody else.
# - The Job Dispatcher never imports this module; public job arguments can
#   therefore never reach a capability.
# - Capabilities refuse to be pickled and render redacted in repr/str.
#

from __future__ import annotations

import hashlib
import logging
import os
from enum import Enum
from typing import Dict, Iterable, Mapping, MutableMapping, Optional, Set, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from raas.errors import CredentialMissing, VaultAccessDenied

logger = logging.getLogger(__name__)


class CredentialRole(str, Enum):
    DEPLOYER = "deployer"
    BATCH_POSTER = "batch_poster"
    VALIDATOR = "validator"
    AVAIL_SEED = "avail_seed"
    FALLBACK_S3_ACCESS_KEY = "fallback_s3_access_key"
    FALLBACK_S3_SECRET_KEY = "fallback_s3_secret_key"


# Roles backed by an EVM private key (address derivation and signing apply)
EVM_KEY_ROLES = frozenset({
    CredentialRole.DEPLOYER,
    CredentialRole.BATCH_POSTER,
    CredentialRole.VALIDATOR,
})

# Roles the service cannot run without
REQUIRED_ROLES = (
    CredentialRole.DEPLOYER,
    CredentialRole.BATCH_POSTER,
    CredentialRole.VALIDATOR,
    CredentialRole.AVAIL_SEED,
)

ENV_VARS: Dict[CredentialRole, str] = {
    CredentialRole.DEPLOYER: "DEPLOYER_PRIVATE_KEY",
    CredentialRole.BATCH_POSTER: "BATCH_POSTER_PRIVATE_KEY",
    CredentialRole.VALIDATOR: "VALIDATOR_PRIVATE_KEY",
    CredentialRole.AVAIL_SEED: "AVAIL_ADDR_SEED",
    CredentialRole.FALLBACK_S3_ACCESS_KEY: "FALLBACKS3_ACCESS_KEY",
    CredentialRole.FALLBACK_S3_SECRET_KEY: "FALLBACKS3_SECRET_KEY",
}


class SigningCapability:
    """
    Opaque handle that authorizes an operation with one credential.

    The underlying value is only ever released into a subprocess environment
    owned by the caller (inject) or used in-process to sign (sign_message).
    """

    __slots__ = ("_role", "__secret")

    def __init__(self, role: CredentialRole, secret: str):
        self._role = role
        self.__secret = secret

    @property
    def role(self) -> CredentialRole:
        return self._role

    @property
    def fingerprint(self) -> str:
        """Short, stable, non-reversible identifier safe for logs."""
        return hashlib.sha256(self.__secret.encode("utf-8")).hexdigest()[:12]

    @property
    def address(self) -> str:
        """Checksummed EVM address for key roles."""
        if self._role not in EVM_KEY_ROLES:
            raise TypeError(f"Role '{self._role.value}' is not an EVM key")
        return Account.from_key(self.__secret).address

    def sign_message(self, message: bytes) -> str:
        """EIP-191 personal_sign over ``message``; returns the hex signature."""
        if self._role not in EVM_KEY_ROLES:
            raise TypeError(f"Role '{self._role.value}' cannot sign messages")
        signed = Account.sign_message(encode_defunct(primitive=message), private_key=self.__secret)
        return signed.signature.hex()

    def inject(self, env: MutableMapping[str, str], var_name: str) -> None:
        """Place the credential into a subprocess environment mapping."""
        env[var_name] = self.__secret

    def redact(self, text: str) -> str:
        """Mask every verbatim occurrence of the credential in ``text``."""
        secret = self.__secret
        if secret[:2].lower() == "0x":
            secret = secret[2:]
        return text.replace(secret, "[REDACTED]")

    def __repr__(self) -> str:
        return f"SigningCapability(role={self._role.value}, fingerprint={self.fingerprint})"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("SigningCapability cannot be serialized")

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


class VaultGrant:
    """Token proving the holder was wired in as the Vault's trusted consumer."""

    __slots__ = ("holder",)

    def __init__(self, holder: str):
        self.holder = holder

    def __repr__(self) -> str:
        return f"VaultGrant(holder={self.holder})"


class Vault:
    """
    In-memory credential store keyed by role.

    Args:
        credentials: role (or role name) -> secret value. Empty values are
            treated as not configured.
    """

    def __init__(self, credentials: Mapping[Union[CredentialRole, str], Optional[str]]):
        self._capabilities: Dict[CredentialRole, SigningCapability] = {}
        for role, secret in credentials.items():
            role = CredentialRole(role)
            if secret:
                self._capabilities[role] = SigningCapability(role, secret.strip())
        self._grant: Optional[VaultGrant] = None
        logger.info(
            f"[Vault] Loaded credentials for roles: "
            f"{', '.join(sorted(r.value for r in self._capabilities)) or '(none)'}"
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Vault":
        """Populate the vault once from the process environment."""
        source = os.environ if environ is None else environ
        return cls({role: source.get(var) for role, var in ENV_VARS.items()})

    def issue_grant(self, holder: str = "process-driver") -> VaultGrant:
        """Mint the single grant allowed to call get(). A second call is refused."""
        if self._grant is not None:
            raise VaultAccessDenied("Vault grant already issued")
        self._grant = VaultGrant(holder)
        return self._grant

    def get(self, role: Union[CredentialRole, str], grant: VaultGrant) -> SigningCapability:
        if self._grant is None or grant is not self._grant:
            raise VaultAccessDenied()
        role = CredentialRole(role)
        capability = self._capabilities.get(role)
        if capability is None:
            raise CredentialMissing(role.value)
        return capability

    def has(self, role: Union[CredentialRole, str]) -> bool:
        return CredentialRole(role) in self._capabilities

    def configured_roles(self) -> Set[CredentialRole]:
        return set(self._capabilities)

    def require(self, roles: Iterable[Union[CredentialRole, str]] = REQUIRED_ROLES) -> None:
        """Fail fast at startup when a required role is missing."""
        for role in roles:
            if not self.has(role):
                raise CredentialMissing(CredentialRole(role).value)

    def __repr__(self) -> str:
        return f"Vault(roles={sorted(r.value for r in self._capabilities)})"

    def __reduce__(self):
        raise TypeError("Vault cannot be serialized")
