"""
Pydantic models for the delegated-key runtime.

Configuration is passed explicitly into every component; nothing in the
package reads ambient globals.
"""

from __future__ import annotations

import os
from enum import IntEnum
from pathlib import Path
from typing import Any

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, Field, field_validator, model_validator

from dblog_delegation.contracts import OPERATION_SIGNATURES
from dblog_delegation.secret import SecretKey

# Deployment constant; users may raise the default multiplier but never
# lower the minimum.
MIN_GAS_FEE_MULTIPLIER = 10

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SESSION_KEY_DURATION = 7 * 24 * 60 * 60


# ============================================================
#  Configuration
# ============================================================


class FundingPolicy(BaseModel):
    """Multipliers applied to ``gas_price * estimated_gas_units``."""

    min_multiplier: int = MIN_GAS_FEE_MULTIPLIER
    default_multiplier: int = 30

    @model_validator(mode="after")
    def _clamp_default(self) -> "FundingPolicy":
        if self.min_multiplier < 1:
            raise ValueError("min_multiplier must be at least 1")
        if self.default_multiplier < self.min_multiplier:
            self.default_multiplier = self.min_multiplier
        return self


class DelegationConfig(BaseModel):
    """Everything the runtime needs to talk to the chain and storage network."""

    rpc_url: str = "http://localhost:8545"
    chain_id: int = 31337
    session_key_manager_address: str = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
    target_contract_address: str = "0xCf7Ed3AccA5a467e9e704C703E8D87F634fB0Fc9"

    allowed_operations: list[str] = Field(
        default_factory=lambda: [
            "evaluate",
            "likeComment",
            "follow",
            "publish",
            "collect",
            "editArticle",
        ]
    )
    spending_limit: int = 10 * 10**18
    key_duration_seconds: int = SESSION_KEY_DURATION

    funding: FundingPolicy = Field(default_factory=FundingPolicy)
    estimated_gas_units: int = 200_000
    transfer_gas_units: int = 21_000

    signature_deadline_seconds: int = 300
    confirmation_timeout_seconds: float = 120.0
    confirmation_poll_interval_seconds: float = 1.0
    wallet_timeout_seconds: float | None = 300.0
    http_timeout_seconds: float = 30.0

    storage_upload_url: str = "https://devnet.irys.xyz"
    storage_gateways: list[str] = Field(
        default_factory=lambda: [
            "https://gateway.irys.xyz",
            "https://arweave.net",
            "https://arweave.dev",
        ]
    )
    storage_free_upload_limit: int = 102_400
    storage_approval_amount: int = 10**18

    app_name: str = "DBlog"
    app_version: str = "1.0.0"
    key_store_path: Path = Field(default_factory=lambda: Path.home() / ".dblog" / "storage.json")

    @field_validator("session_key_manager_address", "target_contract_address")
    @classmethod
    def _checksum(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError(f"not an address: {value!r}")
        return to_checksum_address(value)

    @field_validator("allowed_operations")
    @classmethod
    def _known_operations(cls, value: list[str]) -> list[str]:
        unknown = [op for op in value if op not in OPERATION_SIGNATURES]
        if unknown:
            raise ValueError(f"unknown operations: {', '.join(unknown)}")
        return value

    @field_validator("storage_gateways")
    @classmethod
    def _strip_gateways(cls, value: list[str]) -> list[str]:
        gateways = [g.strip().rstrip("/") for g in value if g.strip()]
        if not gateways:
            raise ValueError("at least one storage gateway is required")
        return gateways

    @classmethod
    def from_env(cls, prefix: str = "DBLOG_", **overrides: Any) -> "DelegationConfig":
        """Build a config from ``<prefix>*`` environment variables.

        Unset variables fall back to the local development defaults.
        Keyword ``overrides`` win over both.
        """
        env = os.environ
        values: dict[str, Any] = {}
        simple = {
            "RPC_URL": "rpc_url",
            "CHAIN_ID": "chain_id",
            "SESSION_KEY_MANAGER_ADDRESS": "session_key_manager_address",
            "BLOG_HUB_CONTRACT_ADDRESS": "target_contract_address",
            "STORAGE_UPLOAD_URL": "storage_upload_url",
            "APP_NAME": "app_name",
            "APP_VERSION": "app_version",
            "KEY_STORE_PATH": "key_store_path",
        }
        for name, field in simple.items():
            if env.get(prefix + name):
                values[field] = env[prefix + name]

        if env.get(prefix + "ARWEAVE_GATEWAYS"):
            values["storage_gateways"] = env[prefix + "ARWEAVE_GATEWAYS"].split(",")

        funding: dict[str, Any] = {}
        if env.get(prefix + "MIN_GAS_FEE_MULTIPLIER"):
            funding["min_multiplier"] = int(env[prefix + "MIN_GAS_FEE_MULTIPLIER"])
        if env.get(prefix + "DEFAULT_GAS_FEE_MULTIPLIER"):
            funding["default_multiplier"] = int(env[prefix + "DEFAULT_GAS_FEE_MULTIPLIER"])
        if funding:
            values["funding"] = FundingPolicy(**funding)

        values.update(overrides)
        return cls(**values)


# ============================================================
#  Delegated key
# ============================================================


class DelegatedKey(BaseModel):
    """The one locally persisted delegated key.

    ``secret`` is an opaque :class:`SecretKey`; it is excluded from ``repr``
    and never serialised by pydantic.
    """

    address: str
    secret: SecretKey = Field(repr=False, exclude=True)
    owner: str
    valid_until: int

    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    @field_validator("address", "owner")
    @classmethod
    def _checksum(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError(f"not an address: {value!r}")
        return to_checksum_address(value)

    def belongs_to(self, wallet: str | None) -> bool:
        return bool(wallet) and self.owner.lower() == str(wallet).lower()


class CapabilityGrant(BaseModel):
    """On-chain session-key record as returned by ``getSessionKeyData``."""

    key: str
    valid_after: int
    valid_until: int
    allowed_target: str
    allowed_selectors: frozenset[str] = frozenset()
    spending_limit: int = 0
    spent_amount: int = 0
    nonce: int = 0

    @property
    def is_registered(self) -> bool:
        return self.key.lower() != ZERO_ADDRESS

    def allows(self, selector: str) -> bool:
        return selector.lower() in {s.lower() for s in self.allowed_selectors}


# ============================================================
#  Chain
# ============================================================


class Receipt(BaseModel):
    """Mined transaction receipt (the subset this package needs)."""

    tx_hash: str = Field(alias="transactionHash")
    status: int = 1
    block_number: int | None = Field(None, alias="blockNumber")
    gas_used: int | None = Field(None, alias="gasUsed")

    model_config = {"populate_by_name": True}

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class BalanceEstimate(BaseModel):
    """Funding thresholds derived from a single gas-price observation."""

    gas_price: int
    minimum: int
    target: int


# ============================================================
#  Storage
# ============================================================


class FolderFile(BaseModel):
    """One file of a content folder."""

    name: str
    data: bytes
    content_type: str
    tags: list[tuple[str, str]] = Field(default_factory=list)


class FolderUpload(BaseModel):
    """Identifiers produced by a folder upload."""

    manifest_id: str
    file_ids: dict[str, str] = Field(default_factory=dict)


# ============================================================
#  Publishing
# ============================================================


class Originality(IntEnum):
    ORIGINAL = 0
    SEMI_ORIGINAL = 1
    REPRINT = 2


class CoverAsset(BaseModel):
    """Cover image bytes and their MIME type."""

    data: bytes
    content_type: str = "image/jpeg"


class PublishRequest(BaseModel):
    """An article to upload and register on-chain."""

    title: str
    summary: str = ""
    body: str
    tags: list[str] = Field(default_factory=list)
    cover: CoverAsset | None = None
    category_id: int = 0
    royalty_bps: int = 0
    original_author: str = ""
    true_author: str | None = None
    collect_price: int = 0
    max_collect_supply: int = 0
    originality: Originality = Originality.ORIGINAL


class PublishResult(BaseModel):
    """Result of a successful publish."""

    content_id: str
    tx_hash: str
    index_id: str | None = None
    cover_id: str | None = None
