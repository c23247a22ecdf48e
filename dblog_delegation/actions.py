"""
Signed ``<operation>WithSessionKey`` calls on BlogHub.

Every operation follows the same path: resolve a key allowed to perform it,
make sure it can pay for gas plus any attached value, sign the inner call and
submit it. A failure caused by the key's capability grant forces a new key
and retries the call exactly once.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from eth_utils import is_address, to_checksum_address

from dblog_delegation.contracts import (
    operation_call,
    operation_selector,
    with_session_key_call,
)
from dblog_delegation.errors import (
    AuthorizationError,
    DelegationError,
    ValidationError,
    is_capability_error,
)
from dblog_delegation.funding import FundingController
from dblog_delegation.oracle import ValidityOracle
from dblog_delegation.resolver import CapabilityResolver
from dblog_delegation.signer import DelegatedSigner
from dblog_delegation.types import ZERO_ADDRESS, DelegatedKey, DelegationConfig, Originality

logger = logging.getLogger(__name__)

MAX_SCORE = 2
MAX_EDIT_TITLE_BYTES = 128
MAX_EDIT_ORIGINAL_AUTHOR_BYTES = 64


def _referrer(referrer: str | None) -> str:
    if referrer is None:
        return ZERO_ADDRESS
    if not is_address(referrer):
        raise ValidationError("Referrer must be a valid address")
    return to_checksum_address(referrer)


def _non_negative(value: int, name: str) -> int:
    if value < 0:
        raise ValidationError(f"{name} must be non-negative")
    return int(value)


def _non_zero_address(value: str, name: str) -> str:
    if not is_address(value) or value.lower() == ZERO_ADDRESS:
        raise ValidationError(f"{name} must be a valid non-zero address")
    return to_checksum_address(value)


class SessionActions:
    """Gasless BlogHub operations signed by the delegated key."""

    def __init__(
        self,
        config: DelegationConfig,
        resolver: CapabilityResolver,
        oracle: ValidityOracle,
        funding: FundingController,
        signer: DelegatedSigner,
    ) -> None:
        self._config = config
        self._resolver = resolver
        self._oracle = oracle
        self._funding = funding
        self._signer = signer

    async def prepare(self, operation: str, value: int = 0) -> DelegatedKey:
        """A key allowed to perform ``operation`` and funded for ``value``.

        Raises:
            AuthorizationError: No wallet is connected.
            UserRejectionError: The user declined registration or funding.
            FundingError: The funding transfer failed.
        """
        key = await self._resolver.resolve(operation)
        if key is None:
            raise AuthorizationError("No delegated key available")
        await self._funding.require_funded(key.address, extra=value)
        return key

    async def call(
        self,
        operation: str,
        args: Sequence[Any],
        value: int = 0,
        key: DelegatedKey | None = None,
    ) -> str:
        """Submit ``operation`` with ``args``; return the confirmed tx hash.

        ``key`` skips :meth:`prepare` when the caller already holds a ready
        key (publish resolves one before uploading).
        """
        if key is None:
            key = await self.prepare(operation, value)
        try:
            return await self._send(key, operation, args, value)
        except DelegationError as e:
            if not is_capability_error(e):
                raise
            logger.warning(
                "%s rejected for delegated key %s (%s); recreating key",
                operation, key.address, e,
            )
            key = await self._resolver.force_recreate(key)
            await self._funding.require_funded(key.address, extra=value)
            return await self._send(key, operation, args, value)

    async def _send(
        self,
        key: DelegatedKey,
        operation: str,
        args: Sequence[Any],
        value: int,
    ) -> str:
        grant = await self._oracle.assert_active(key, operation, value)
        call_data = operation_call(operation, args)
        deadline = self._signer.deadline()
        signature = self._signer.sign_operation(
            key, operation_selector(operation), call_data, value, grant.nonce, deadline
        )
        data = with_session_key_call(operation, key.owner, key.address, args, deadline, signature)
        receipt = await self._signer.send_and_wait(
            key, self._config.target_contract_address, value=value, data=data
        )
        logger.info("%s sent by delegated key %s. Tx: %s", operation, key.address, receipt.tx_hash)
        return receipt.tx_hash

    # ---- Operations ----

    async def evaluate(
        self,
        article_id: int,
        score: int,
        comment: str = "",
        referrer: str | None = None,
        parent_comment_id: int = 0,
        tip: int = 0,
    ) -> str:
        """Score an article (0-2), optionally commenting and tipping."""
        if not 0 <= score <= MAX_SCORE:
            raise ValidationError(f"Score must be between 0 and {MAX_SCORE}")
        args = [
            _non_negative(article_id, "Article id"),
            int(score),
            comment,
            _referrer(referrer),
            _non_negative(parent_comment_id, "Parent comment id"),
        ]
        return await self.call("evaluate", args, value=_non_negative(tip, "Tip"))

    async def follow(self, target: str, is_follow: bool = True) -> str:
        args = [_non_zero_address(target, "Follow target"), bool(is_follow)]
        return await self.call("follow", args)

    async def collect(self, article_id: int, amount: int, referrer: str | None = None) -> str:
        """Collect an article, paying ``amount`` wei."""
        args = [_non_negative(article_id, "Article id"), _referrer(referrer)]
        return await self.call("collect", args, value=_non_negative(amount, "Collect amount"))

    async def like_comment(
        self,
        article_id: int,
        comment_id: int,
        commenter: str,
        amount: int,
        referrer: str | None = None,
    ) -> str:
        if amount <= 0:
            raise ValidationError("Like amount must be positive")
        args = [
            _non_negative(article_id, "Article id"),
            _non_negative(comment_id, "Comment id"),
            _non_zero_address(commenter, "Commenter"),
            _referrer(referrer),
        ]
        return await self.call("likeComment", args, value=int(amount))

    async def edit_article(
        self,
        article_id: int,
        title: str,
        original_author: str = "",
        category_id: int = 0,
        originality: Originality = Originality.ORIGINAL,
    ) -> str:
        if article_id <= 0:
            raise ValidationError("Valid article id is required")
        if len(original_author.encode("utf-8")) > MAX_EDIT_ORIGINAL_AUTHOR_BYTES:
            raise ValidationError(
                f"Original author name is too long (max {MAX_EDIT_ORIGINAL_AUTHOR_BYTES} bytes)"
            )
        if len(title.encode("utf-8")) > MAX_EDIT_TITLE_BYTES:
            raise ValidationError(f"Title is too long (max {MAX_EDIT_TITLE_BYTES} bytes)")
        if category_id < 0:
            raise ValidationError("Valid category is required")
        if int(originality) not in {o.value for o in Originality}:
            raise ValidationError("Originality must be 0, 1 or 2")
        args = [int(article_id), original_author, title, int(category_id), int(originality)]
        return await self.call("editArticle", args)
