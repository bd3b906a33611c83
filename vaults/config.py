"""Settings loader for the vault relayer and task CLI."""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .permissions import SigningDomain


def _validate_address(value: Optional[str], name: str) -> Optional[str]:
    if value is None:
        return value
    candidate = value.strip()
    if not candidate:
        return None
    if not candidate.startswith("0x") or len(candidate) != 42:
        raise ValueError(f"{name} must be a 42-character hex string")
    try:
        int(candidate[2:], 16)
    except ValueError as exc:
        raise ValueError(f"{name} must be a valid hex string") from exc
    return candidate


class VaultSettings(BaseSettings):
    eth_rpc_url: str = Field(default="http://localhost:8545")
    chain_id: int = Field(default=31337)

    vault_address: Optional[str] = Field(default=None)
    domain_name: str = Field(default="LockableVault", min_length=1)
    domain_version: str = Field(default="1", min_length=1)

    private_key: Optional[str] = Field(default=None)
    keystore_path: Optional[Path] = Field(default=None)
    keystore_password: Optional[str] = Field(default=None)

    signer_endpoint: Optional[str] = Field(default=None)
    signer_timeout_seconds: float = Field(default=5.0, gt=0)
    signer_expected_address: Optional[str] = Field(default=None)

    dry_run: bool = Field(default=True)

    state_path: Path = Field(default=Path("/app/data/vault_state.json"))
    journal_path: Optional[Path] = Field(default=Path("/app/data/audit/vault-events.log"))

    # Comma-separated token contracts whose transfers into the vault are credited.
    deposit_tokens: str = Field(default="")
    deposit_start_block: int = Field(default=0, ge=0)
    deposit_poll_seconds: float = Field(default=15.0, gt=0)
    deposit_confirmations: int = Field(default=0, ge=0)

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8082)
    api_root_path: str = Field(default="")
    api_admin_token: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="VAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("vault_address")
    @classmethod
    def validate_vault_address(cls, value: Optional[str]) -> Optional[str]:
        return _validate_address(value, "VAULT_VAULT_ADDRESS")

    @field_validator("signer_expected_address")
    @classmethod
    def validate_signer_expected_address(cls, value: Optional[str]) -> Optional[str]:
        return _validate_address(value, "VAULT_SIGNER_EXPECTED_ADDRESS")

    @field_validator("deposit_tokens")
    @classmethod
    def validate_deposit_tokens(cls, value: str) -> str:
        tokens = [item.strip() for item in (value or "").split(",") if item.strip()]
        for token in tokens:
            _validate_address(token, "VAULT_DEPOSIT_TOKENS entry")
        return ",".join(tokens)

    @field_validator("chain_id", "api_port")
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("signer_endpoint")
    @classmethod
    def validate_signer_endpoint(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("tcp", "vsock") or parsed.hostname is None or parsed.port is None:
            raise ValueError("VAULT_SIGNER_ENDPOINT must look like tcp://host:port or vsock://cid:port")
        return value.strip()

    @model_validator(mode="after")
    def validate_key_sources(self) -> "VaultSettings":
        if self.private_key and self.signer_endpoint:
            raise ValueError("Set either VAULT_PRIVATE_KEY or VAULT_SIGNER_ENDPOINT, not both")
        if self.keystore_path and not self.keystore_password:
            raise ValueError("VAULT_KEYSTORE_PASSWORD must be set with VAULT_KEYSTORE_PATH")
        return self

    @property
    def signing_domain(self) -> SigningDomain:
        return SigningDomain(name=self.domain_name, version=self.domain_version)

    @property
    def deposit_token_list(self) -> List[str]:
        return [token for token in self.deposit_tokens.split(",") if token]


settings = VaultSettings()
