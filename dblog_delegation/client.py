"""
DBlog delegated-key runtime: Python client.

Wires the key store, validity oracle, registrar, funding controller,
resolver, session actions and publish orchestrator around the user's
primary wallet.

Usage::

    from dblog_delegation import DelegationConfig, DelegationRuntime, PublishRequest

    config = DelegationConfig.from_env()
    async with DelegationRuntime(config, wallet_url="http://127.0.0.1:1248") as runtime:
        result = await runtime.publish(
            PublishRequest(title="Hello", body="# First post", tags=["intro"])
        )
        print(result.content_id, result.tx_hash)
"""

from __future__ import annotations

import logging
import time

from dblog_delegation.actions import SessionActions
from dblog_delegation.balance import BalanceEstimator
from dblog_delegation.chain import ChainReader
from dblog_delegation.errors import FundingError
from dblog_delegation.funding import FundingController
from dblog_delegation.keystore import KeyStore
from dblog_delegation.oracle import ValidityOracle
from dblog_delegation.publish import PublishOrchestrator
from dblog_delegation.registrar import CapabilityRegistrar
from dblog_delegation.resolver import CapabilityResolver
from dblog_delegation.signer import DelegatedSigner
from dblog_delegation.storage import ContentStorage, GatewayStorage
from dblog_delegation.types import (
    DelegatedKey,
    DelegationConfig,
    Originality,
    PublishRequest,
    PublishResult,
)
from dblog_delegation.wallet import RpcWallet, WalletProvider

logger = logging.getLogger(__name__)


class DelegationRuntime:
    """Delegated-key lifecycle and gasless publishing for one device."""

    def __init__(
        self,
        config: DelegationConfig,
        wallet: WalletProvider | None = None,
        *,
        wallet_url: str | None = None,
        chain: ChainReader | None = None,
        storage: ContentStorage | None = None,
        key_store: KeyStore | None = None,
    ) -> None:
        self.config = config
        self.chain = chain or ChainReader(
            config.rpc_url,
            timeout=config.http_timeout_seconds,
            poll_interval=config.confirmation_poll_interval_seconds,
            confirmation_timeout=config.confirmation_timeout_seconds,
        )
        if wallet is None:
            if wallet_url is None:
                raise ValueError("either wallet or wallet_url is required")
            wallet = RpcWallet(wallet_url, self.chain)
        self.wallet = wallet
        self.storage = storage or GatewayStorage(config)
        self.key_store = key_store or KeyStore(config.key_store_path)

        # Components
        self.estimator = BalanceEstimator(config, self.chain)
        self.signer = DelegatedSigner(config, self.chain)
        self.oracle = ValidityOracle(config, self.chain, self.wallet)
        self.registrar = CapabilityRegistrar(
            config, self.chain, self.wallet, self.key_store, storage=self.storage
        )
        self.funding = FundingController(
            config, self.chain, self.wallet, self.estimator, self.signer
        )
        self.resolver = CapabilityResolver(
            config, self.wallet, self.key_store, self.oracle, self.registrar, self.funding
        )
        self.actions = SessionActions(
            config, self.resolver, self.oracle, self.funding, self.signer
        )
        self.publisher = PublishOrchestrator(config, self.actions, self.signer, self.storage)

    async def __aenter__(self) -> "DelegationRuntime":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # ---- Delegated key ----

    @property
    def stored_key(self) -> DelegatedKey | None:
        """The locally stored key, without any validity check."""
        return self.key_store.load()

    async def ensure_ready(self, required_operation: str | None = None) -> DelegatedKey | None:
        return await self.resolver.ensure_ready(required_operation)

    async def is_key_valid_for_current_wallet(self) -> bool:
        key = self.key_store.load()
        return key is not None and await self.oracle.is_owned_by_current_wallet(key)

    def is_gasless_available(self) -> bool:
        """Whether a locally unexpired key is stored (no chain read)."""
        key = self.key_store.load()
        return key is not None and not self.oracle.is_locally_expired(key, time.time())

    async def withdraw(self) -> str:
        """Send the stored key's balance, minus the transfer fee, to its owner."""
        key = self.key_store.load()
        if key is None:
            raise FundingError("No delegated key stored")
        return await self.funding.withdraw_all(key)

    async def revoke(self, withdraw: bool = True) -> str | None:
        """Revoke the stored key on-chain and forget it locally.

        With ``withdraw`` the remaining balance is sent back to the owner
        first; a balance too small to cover the fee is left behind.
        """
        key = self.key_store.load()
        if key is None:
            return None
        if withdraw:
            try:
                await self.funding.withdraw_all(key)
            except FundingError as e:
                logger.info("Skipping withdrawal before revoke: %s", e)
        return await self.registrar.revoke(key)

    def clear_local_key(self) -> None:
        """Forget the stored key without revoking it (wallet switch, cleanup)."""
        self.key_store.clear()

    # ---- Publishing ----

    async def publish(self, request: PublishRequest) -> PublishResult:
        return await self.publisher.publish(request)

    # ---- Session actions ----

    async def evaluate(
        self,
        article_id: int,
        score: int,
        comment: str = "",
        referrer: str | None = None,
        parent_comment_id: int = 0,
        tip: int = 0,
    ) -> str:
        return await self.actions.evaluate(
            article_id, score, comment, referrer, parent_comment_id, tip
        )

    async def follow(self, target: str, is_follow: bool = True) -> str:
        return await self.actions.follow(target, is_follow)

    async def collect(self, article_id: int, amount: int, referrer: str | None = None) -> str:
        return await self.actions.collect(article_id, amount, referrer)

    async def like_comment(
        self,
        article_id: int,
        comment_id: int,
        commenter: str,
        amount: int,
        referrer: str | None = None,
    ) -> str:
        return await self.actions.like_comment(article_id, comment_id, commenter, amount, referrer)

    async def edit_article(
        self,
        article_id: int,
        title: str,
        original_author: str = "",
        category_id: int = 0,
        originality: Originality = Originality.ORIGINAL,
    ) -> str:
        return await self.actions.edit_article(
            article_id, title, original_author, category_id, originality
        )

    # ---- Lifecycle ----

    async def aclose(self) -> None:
        for resource in (self.storage, self.wallet, self.chain):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        logger.debug("Delegation runtime closed")
