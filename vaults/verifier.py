"""Signer recovery for encoded permissions."""
from __future__ import annotations

import logging
from typing import Tuple

from eth_account import Account

from .errors import MalformedSignature, SignatureInvalid
from .permissions import (
    DEFAULT_DOMAIN,
    SignedPermission,
    SigningDomain,
    encode_permission,
    normalize_address,
    signable_from_encoded,
)

logger = logging.getLogger(__name__)

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2
SIGNATURE_LENGTH = 65


def split_signature(signature: bytes) -> Tuple[int, int, int]:
    """Return ``(v, r, s)`` for a 65-byte ``r || s || v`` signature.

    Only canonical signatures pass: ``v`` in {27, 28} (0/1 are normalised),
    ``0 < r < n`` and ``0 < s <= n/2``. The high-s twin of a valid signature is
    rejected so one authorization has exactly one valid encoding.
    """
    if not isinstance(signature, (bytes, bytearray)) or len(signature) != SIGNATURE_LENGTH:
        raise MalformedSignature(f"Signature must be {SIGNATURE_LENGTH} bytes")
    raw = bytes(signature)
    r = int.from_bytes(raw[0:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v in (0, 1):
        v += 27
    if v not in (27, 28):
        raise MalformedSignature(f"Invalid recovery id {raw[64]}")
    if not 0 < r < SECP256K1_N or not 0 < s < SECP256K1_N:
        raise MalformedSignature("Signature r/s out of range")
    if s > SECP256K1_HALF_N:
        raise MalformedSignature("Non-canonical signature (high s)")
    return v, r, s


def recover(encoded: bytes, signature: bytes) -> str:
    v, r, s = split_signature(signature)
    signable = signable_from_encoded(encoded)
    try:
        recovered = Account.recover_message(signable, vrs=(v, r, s))
    except Exception as exc:
        raise SignatureInvalid("Unable to recover signer from signature") from exc
    return normalize_address(recovered)


def verify(encoded: bytes, signature: bytes, claimed_signer: str) -> bool:
    return recover(encoded, signature) == normalize_address(claimed_signer)


def verify_permission(
    signed: SignedPermission,
    *,
    vault: str,
    chain_id: int,
    domain: SigningDomain = DEFAULT_DOMAIN,
) -> str:
    """Check ``signed`` against the given vault domain; return the authorizer.

    The encoding is rebuilt from the verifying vault's own address and chain id,
    never from the fields carried in the permission.
    """
    permission = signed.permission.with_domain(vault, chain_id)
    encoded = encode_permission(permission, domain)
    if not verify(encoded, signed.signature, permission.authorizer):
        logger.warning(
            "Rejected %s permission: signature does not recover to authorizer %s",
            permission.action.value,
            permission.authorizer,
        )
        raise SignatureInvalid(
            f"Signature does not match authorizer {permission.authorizer}"
        )
    return permission.authorizer
