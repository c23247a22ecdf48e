"""
Call encoding for the SessionKeyManager and BlogHub contracts.

Pure functions only: no network access. Selectors are derived from the
canonical signatures so the allow-list registered on-chain and the selector
used when signing can never drift apart.
"""

from __future__ import annotations

from typing import Any, Sequence

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

# Operations a delegated key may be allowed to perform on BlogHub.
OPERATION_SIGNATURES: dict[str, str] = {
    "publish": "publish(string,uint64,uint96,string,string,address,uint256,uint256,uint8)",
    "evaluate": "evaluate(uint256,uint8,string,address,uint256)",
    "follow": "follow(address,bool)",
    "likeComment": "likeComment(uint256,uint256,address,address)",
    "collect": "collect(uint256,address)",
    "editArticle": "editArticle(uint256,string,string,uint64,uint8)",
}

# SessionKeyManager
REGISTER_SESSION_KEY = "registerSessionKey(address,uint48,uint48,address,bytes4[],uint256)"
REVOKE_SESSION_KEY = "revokeSessionKey(address)"
GET_SESSION_KEY_DATA = "getSessionKeyData(address,address)"
SESSION_KEY_DATA_OUTPUT = "(address,uint48,uint48,address,bytes4[],uint256,uint256,uint256)"

# BlogHub
PUBLISH_PARAMS = "(string,uint64,uint96,string,string,address,uint256,uint256,uint8)"
PUBLISH_WITH_SESSION_KEY = f"publishWithSessionKey(address,address,{PUBLISH_PARAMS},uint256,bytes)"

SESSION_OPERATION_TYPES: dict[str, list[dict[str, str]]] = {
    "SessionOperation": [
        {"name": "owner", "type": "address"},
        {"name": "sessionKey", "type": "address"},
        {"name": "target", "type": "address"},
        {"name": "selector", "type": "bytes4"},
        {"name": "callData", "type": "bytes"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ]
}


def selector(signature: str) -> str:
    """``0x``-prefixed 4-byte selector of a function signature."""
    return "0x" + function_signature_to_4byte_selector(signature).hex()


def operation_selector(operation: str) -> str:
    return selector(_operation_signature(operation))


def argument_types(signature: str) -> list[str]:
    """Split the top-level argument list of ``name(a,(b,c),d)``."""
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    types: list[str] = []
    depth = 0
    current = ""
    for ch in inner:
        if ch == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    if current:
        types.append(current)
    return types


def encode_call(signature: str, args: Sequence[Any]) -> str:
    """ABI-encode a call to ``signature`` as ``0x`` hex calldata."""
    body = encode(argument_types(signature), list(args))
    return selector(signature) + body.hex()


def decode_result(output_types: Sequence[str], data: str | bytes) -> tuple[Any, ...]:
    raw = bytes.fromhex(data[2:] if data.startswith("0x") else data) if isinstance(data, str) else data
    return decode(list(output_types), raw)


def selector_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


# ---- SessionKeyManager -------------------------------------------------


def register_session_key_call(
    key_address: str,
    valid_after: int,
    valid_until: int,
    target: str,
    selectors: Sequence[str],
    spending_limit: int,
) -> str:
    return encode_call(
        REGISTER_SESSION_KEY,
        [
            to_checksum_address(key_address),
            valid_after,
            valid_until,
            to_checksum_address(target),
            [selector_bytes(s) for s in selectors],
            spending_limit,
        ],
    )


def revoke_session_key_call(key_address: str) -> str:
    return encode_call(REVOKE_SESSION_KEY, [to_checksum_address(key_address)])


def session_key_data(record: Sequence[Any]) -> dict[str, Any]:
    """Decoded ``getSessionKeyData`` record as a plain dict."""
    key, valid_after, valid_until, target, selectors, limit, spent, nonce = record
    return {
        "key": to_checksum_address(key),
        "valid_after": int(valid_after),
        "valid_until": int(valid_until),
        "allowed_target": to_checksum_address(target),
        "allowed_selectors": frozenset("0x" + bytes(s).hex() for s in selectors),
        "spending_limit": int(limit),
        "spent_amount": int(spent),
        "nonce": int(nonce),
    }


# ---- BlogHub -----------------------------------------------------------


def publish_params(
    content_id: str,
    category_id: int,
    royalty_bps: int,
    original_author: str,
    title: str,
    true_author: str,
    collect_price: int,
    max_collect_supply: int,
    originality: int,
) -> tuple[Any, ...]:
    """Argument tuple shared by ``publish`` and ``publishWithSessionKey``.

    The two encodings must match exactly or the signature will not verify.
    """
    return (
        content_id,
        int(category_id),
        int(royalty_bps),
        original_author,
        title,
        to_checksum_address(true_author),
        int(collect_price),
        int(max_collect_supply),
        int(originality),
    )


# ---- Session-key entry points ------------------------------------------


def _operation_signature(operation: str) -> str:
    try:
        return OPERATION_SIGNATURES[operation]
    except KeyError:
        raise ValueError(f"Unknown operation: {operation}") from None


def with_session_key_signature(operation: str) -> str:
    """``<operation>WithSessionKey(owner, key, ...args, deadline, signature)``.

    ``publish`` is the exception: its arguments travel as one tuple.
    """
    if operation == "publish":
        return PUBLISH_WITH_SESSION_KEY
    signature = _operation_signature(operation)
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return f"{operation}WithSessionKey(address,address,{inner},uint256,bytes)"


def operation_call(operation: str, args: Sequence[Any]) -> str:
    """Calldata of the plain operation; this is what the delegated key signs."""
    return encode_call(_operation_signature(operation), list(args))


def with_session_key_call(
    operation: str,
    owner: str,
    key_address: str,
    args: Sequence[Any],
    deadline: int,
    signature: bytes,
) -> str:
    inner = [tuple(args)] if operation == "publish" else list(args)
    return encode_call(
        with_session_key_signature(operation),
        [
            to_checksum_address(owner),
            to_checksum_address(key_address),
            *inner,
            deadline,
            signature,
        ],
    )
