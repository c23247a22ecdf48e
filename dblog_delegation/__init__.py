"""
DBlog delegated-key runtime for Python.

Lets a user authorise a short-lived delegated key that acts on their behalf
against the BlogHub contract, within an allow-listed set of operations, a
spending cap and a validity window, so routine actions (publishing,
reacting, following) do not each need a wallet prompt.

Example::

    from dblog_delegation import DelegationConfig, DelegationRuntime, PublishRequest

    runtime = DelegationRuntime(
        DelegationConfig.from_env(),
        wallet_url="http://127.0.0.1:1248",
    )

    # At most one prompt to register the key and one to fund it
    key = await runtime.ensure_ready("publish")

    result = await runtime.publish(
        PublishRequest(title="What I learned today", body="Interesting findings about...")
    )
    print(result.content_id, result.tx_hash)

    # Other BlogHub actions go through the same delegated key
    await runtime.evaluate(article_id=1, score=2, comment="Great read")

    await runtime.aclose()
"""

from dblog_delegation.client import DelegationRuntime
from dblog_delegation.errors import (
    AuthorizationError,
    DelegationError,
    FundingError,
    KeyGenerationError,
    KeyRecoveryError,
    NetworkError,
    OwnershipError,
    TransactionRevertedError,
    UserRejectionError,
    ValidationError,
    WalletTimeoutError,
)
from dblog_delegation.resolver import Action, KeyState
from dblog_delegation.secret import SecretKey
from dblog_delegation.types import (
    BalanceEstimate,
    CapabilityGrant,
    CoverAsset,
    DelegatedKey,
    DelegationConfig,
    FundingPolicy,
    Originality,
    PublishRequest,
    PublishResult,
    Receipt,
)

__all__ = [
    "DelegationRuntime",
    "DelegationConfig",
    "FundingPolicy",
    "DelegatedKey",
    "SecretKey",
    "CapabilityGrant",
    "BalanceEstimate",
    "Receipt",
    "CoverAsset",
    "Originality",
    "PublishRequest",
    "PublishResult",
    "KeyState",
    "Action",
    "DelegationError",
    "ValidationError",
    "AuthorizationError",
    "OwnershipError",
    "KeyRecoveryError",
    "UserRejectionError",
    "WalletTimeoutError",
    "FundingError",
    "NetworkError",
    "TransactionRevertedError",
    "KeyGenerationError",
]

__version__ = "0.1.0"
