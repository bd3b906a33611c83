"""Permission structs and their canonical EIP-712 encoding.

A permission is bound to one vault deployment on one chain through the
EIP-712 domain (``chainId`` + ``verifyingContract``). Every action has its own
struct type, so the type hash differs per action and a ``Lock`` permission can
never be re-read as an ``Unlock`` one.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from eth_abi import encode as abi_encode
from eth_account.messages import SignableMessage
from eth_utils import keccak, to_checksum_address

MAX_UINT256 = (1 << 256) - 1

DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
DOMAIN_TYPEHASH = keccak(text=DOMAIN_TYPE)


class Action(str, Enum):
    LOCK = "Lock"
    UNLOCK = "Unlock"
    LOCK_ERC721 = "LockERC721"
    UNLOCK_ERC721 = "UnlockERC721"

    @property
    def is_erc721(self) -> bool:
        return self in (Action.LOCK_ERC721, Action.UNLOCK_ERC721)

    @property
    def value_field(self) -> str:
        return "tokenId" if self.is_erc721 else "amount"

    @property
    def struct_type(self) -> str:
        return (
            f"{self.value}(address authorizer,address depositor,address token,"
            f"uint256 {self.value_field},uint256 nonce)"
        )

    @property
    def typehash(self) -> bytes:
        return keccak(text=self.struct_type)


@dataclass(frozen=True)
class SigningDomain:
    name: str = "LockableVault"
    version: str = "1"


DEFAULT_DOMAIN = SigningDomain()


def _uint256(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} must be an integer")
    if value < 0 or value > MAX_UINT256:
        raise ValueError(f"{field} must fit in uint256")
    return value


def normalize_address(value: str) -> str:
    candidate = (value or "").strip()
    if not candidate.startswith("0x") or len(candidate) != 42:
        raise ValueError(f"Invalid address {value!r}")
    return to_checksum_address(candidate)


@dataclass(frozen=True)
class Permission:
    action: Action
    vault: str
    authorizer: str
    token: str
    nonce: int
    chain_id: int
    amount: Optional[int] = None
    token_id: Optional[int] = None
    depositor: Optional[str] = None

    def __post_init__(self) -> None:
        action = Action(self.action)
        object.__setattr__(self, "action", action)
        object.__setattr__(self, "vault", normalize_address(self.vault))
        object.__setattr__(self, "authorizer", normalize_address(self.authorizer))
        object.__setattr__(self, "token", normalize_address(self.token))
        depositor = self.depositor if self.depositor is not None else self.authorizer
        object.__setattr__(self, "depositor", normalize_address(depositor))
        _uint256(self.nonce, "nonce")
        _uint256(self.chain_id, "chain_id")

        if action.is_erc721:
            if self.amount is not None:
                raise ValueError(f"{action.value} permissions carry token_id, not amount")
            if self.token_id is None:
                raise ValueError(f"{action.value} permissions require token_id")
            _uint256(self.token_id, "token_id")
        else:
            if self.token_id is not None:
                raise ValueError(f"{action.value} permissions carry amount, not token_id")
            if self.amount is None:
                raise ValueError(f"{action.value} permissions require amount")
            if _uint256(self.amount, "amount") == 0:
                raise ValueError("amount must be > 0")

    @property
    def value(self) -> int:
        """The amount for fungible actions, the token id for NFT actions."""
        return self.token_id if self.action.is_erc721 else self.amount  # type: ignore[return-value]

    @property
    def is_delegated(self) -> bool:
        return self.depositor != self.authorizer

    def with_domain(self, vault: str, chain_id: int) -> "Permission":
        return replace(self, vault=vault, chain_id=chain_id)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "action": self.action.value,
            "vault": self.vault,
            "authorizer": self.authorizer,
            "depositor": self.depositor,
            "token": self.token,
            "nonce": self.nonce,
            "chain_id": self.chain_id,
        }
        if self.action.is_erc721:
            payload["token_id"] = self.token_id
        else:
            payload["amount"] = self.amount
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Permission":
        amount = payload.get("amount")
        token_id = payload.get("token_id")
        return cls(
            action=Action(payload["action"]),
            vault=str(payload["vault"]),
            authorizer=str(payload["authorizer"]),
            depositor=payload.get("depositor"),
            token=str(payload["token"]),
            nonce=int(payload["nonce"]),
            chain_id=int(payload["chain_id"]),
            amount=int(amount) if amount is not None else None,
            token_id=int(token_id) if token_id is not None else None,
        )


@dataclass(frozen=True)
class SignedPermission:
    permission: Permission
    signature: bytes

    @property
    def signature_hex(self) -> str:
        return "0x" + bytes(self.signature).hex()

    def to_dict(self) -> Dict[str, Any]:
        return {"permission": self.permission.to_dict(), "signature": self.signature_hex}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SignedPermission":
        return cls(
            permission=Permission.from_dict(payload["permission"]),
            signature=parse_hex_bytes(str(payload["signature"])),
        )


def parse_hex_bytes(value: str) -> bytes:
    candidate = value.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    try:
        return bytes.fromhex(candidate)
    except ValueError as exc:
        raise ValueError("value must be hex encoded") from exc


def domain_separator(vault: str, chain_id: int, domain: SigningDomain = DEFAULT_DOMAIN) -> bytes:
    encoded = abi_encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            DOMAIN_TYPEHASH,
            keccak(text=domain.name),
            keccak(text=domain.version),
            _uint256(chain_id, "chain_id"),
            normalize_address(vault),
        ],
    )
    return keccak(encoded)


def struct_hash(permission: Permission) -> bytes:
    encoded = abi_encode(
        ["bytes32", "address", "address", "address", "uint256", "uint256"],
        [
            permission.action.typehash,
            permission.authorizer,
            permission.depositor,
            permission.token,
            permission.value,
            permission.nonce,
        ],
    )
    return keccak(encoded)


def signable_message(permission: Permission, domain: SigningDomain = DEFAULT_DOMAIN) -> SignableMessage:
    return SignableMessage(
        version=b"\x01",
        header=domain_separator(permission.vault, permission.chain_id, domain),
        body=struct_hash(permission),
    )


def encode_permission(permission: Permission, domain: SigningDomain = DEFAULT_DOMAIN) -> bytes:
    """Canonical 66-byte encoding: ``0x1901 || domainSeparator || structHash``."""
    signable = signable_message(permission, domain)
    return b"\x19" + bytes(signable.version) + bytes(signable.header) + bytes(signable.body)


def permission_digest(permission: Permission, domain: SigningDomain = DEFAULT_DOMAIN) -> bytes:
    return keccak(encode_permission(permission, domain))


def signable_from_encoded(encoded: bytes) -> SignableMessage:
    if len(encoded) != 66 or encoded[:2] != b"\x19\x01":
        raise ValueError("encoded permission must be 0x1901 || domainSeparator || structHash")
    return SignableMessage(version=encoded[1:2], header=encoded[2:34], body=encoded[34:66])


def typed_data(permission: Permission, domain: SigningDomain = DEFAULT_DOMAIN) -> Dict[str, Any]:
    """``eth_signTypedData_v4`` payload for wallets that sign typed data."""
    action = permission.action
    return {
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            action.value: [
                {"name": "authorizer", "type": "address"},
                {"name": "depositor", "type": "address"},
                {"name": "token", "type": "address"},
                {"name": action.value_field, "type": "uint256"},
                {"name": "nonce", "type": "uint256"},
            ],
        },
        "primaryType": action.value,
        "domain": {
            "name": domain.name,
            "version": domain.version,
            "chainId": permission.chain_id,
            "verifyingContract": permission.vault,
        },
        "message": {
            "authorizer": permission.authorizer,
            "depositor": permission.depositor,
            "token": permission.token,
            action.value_field: permission.value,
            "nonce": permission.nonce,
        },
    }
