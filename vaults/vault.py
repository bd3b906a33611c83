"""Vault state machine: permission-gated lock/unlock plus the rage-quit escape hatch."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from eth_abi import encode as abi_encode
from eth_utils import keccak

from .errors import (
    ActionMismatch,
    InsufficientBalance,
    ParameterMismatch,
    TokenAlreadyHeld,
    UnauthorizedDelegate,
    VaultError,
)
from .nonces import NonceRegistry
from .permissions import (
    DEFAULT_DOMAIN,
    MAX_UINT256,
    Action,
    Permission,
    SignedPermission,
    SigningDomain,
    normalize_address,
    permission_digest,
)
from .store import VaultStore
from .verifier import verify_permission

logger = logging.getLogger(__name__)

RAGE_QUIT = "RageQuit"
DEPOSIT = "Deposit"
DEPOSIT_ERC721 = "DepositERC721"
GRANT_DELEGATE = "GrantDelegate"


@dataclass(frozen=True)
class Transfer:
    """Tokens released by the vault to ``recipient``."""

    token: str
    recipient: str
    amount: Optional[int] = None
    token_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"token": self.token, "recipient": self.recipient}
        if self.amount is not None:
            payload["amount"] = str(self.amount)
        if self.token_id is not None:
            payload["token_id"] = str(self.token_id)
        return payload


@dataclass(frozen=True)
class VaultReceipt:
    tx_hash: str
    sequence: int
    action: str
    depositor: str
    token: str
    authorizer: Optional[str] = None
    amount: Optional[int] = None
    token_id: Optional[int] = None
    nonce: Optional[int] = None
    transfers: Tuple[Transfer, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "sequence": self.sequence,
            "action": self.action,
            "depositor": self.depositor,
            "authorizer": self.authorizer,
            "token": self.token,
            "amount": str(self.amount) if self.amount is not None else None,
            "token_id": str(self.token_id) if self.token_id is not None else None,
            "nonce": self.nonce,
            "transfers": [transfer.to_dict() for transfer in self.transfers],
        }


class DelegationLedger:
    """Lookup table ``(depositor, token) -> delegate``."""

    def __init__(self, store: VaultStore) -> None:
        self.store = store

    def delegate_of(self, depositor: str, token: str) -> Optional[str]:
        return self.store.get_delegate(normalize_address(depositor), normalize_address(token))

    def grant(self, depositor: str, token: str, delegate: str) -> None:
        depositor = normalize_address(depositor)
        token = normalize_address(token)
        delegate = normalize_address(delegate)
        if delegate == depositor:
            raise UnauthorizedDelegate("Depositor cannot delegate to itself")
        with self.store.transaction():
            current = self.store.get_delegate(depositor, token)
            if current is not None:
                raise UnauthorizedDelegate(
                    f"Delegate {current} already registered for {depositor} on {token}; rage-quit first"
                )
            self.store.set_delegate(depositor, token, delegate)

    def require_authority(self, depositor: str, token: str, authorizer: str) -> None:
        """While a delegate is registered, only the delegate may authorize."""
        delegate = self.store.get_delegate(depositor, token)
        if delegate is not None:
            if authorizer != delegate:
                raise UnauthorizedDelegate(
                    f"{authorizer} is not the registered delegate for {depositor} on {token}"
                )
            return
        if authorizer != depositor:
            raise UnauthorizedDelegate(
                f"{authorizer} holds no delegation from {depositor} on {token}"
            )

    def require_registered(self, depositor: str, token: str, delegate: str) -> None:
        registered = self.store.get_delegate(depositor, token)
        if registered is None or registered != delegate:
            raise UnauthorizedDelegate(
                f"{delegate} is not the registered delegate for {depositor} on {token}"
            )

    def clear(self, depositor: str, token: str) -> None:
        self.store.set_delegate(depositor, token, None)


class Vault:
    """Custodial vault bound to one address and chain.

    Permission entry points check, in order: action, call parameters,
    signature (against this vault's own domain), delegation authority, nonce,
    then balances. The first failing check aborts the call and leaves all
    state untouched.
    """

    def __init__(
        self,
        address: str,
        chain_id: int,
        store: Optional[VaultStore] = None,
        domain: SigningDomain = DEFAULT_DOMAIN,
    ) -> None:
        self.address = normalize_address(address)
        self.chain_id = int(chain_id)
        self.domain = domain
        self.store = store if store is not None else VaultStore()
        self.nonces = NonceRegistry(self.store)
        self.delegations = DelegationLedger(self.store)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def get_nonce(self, authorizer: str) -> int:
        return self.nonces.current_nonce(authorizer)

    def balance_of(self, owner: str, token: str) -> int:
        return self.store.get_balance(normalize_address(owner), normalize_address(token))

    def deposited_of(self, owner: str, token: str) -> int:
        return self.store.get_deposit(normalize_address(owner), normalize_address(token))

    def locked_token_ids(self, owner: str, token: str) -> List[int]:
        return self.store.locked_token_ids(normalize_address(owner), normalize_address(token))

    def deposited_token_ids(self, owner: str, token: str) -> List[int]:
        return self.store.deposited_token_ids(normalize_address(owner), normalize_address(token))

    def owner_of(self, token: str, token_id: int) -> Optional[str]:
        token = normalize_address(token)
        return self.store.locked_owner(token, token_id) or self.store.deposited_owner(token, token_id)

    def delegate_of(self, depositor: str, token: str) -> Optional[str]:
        return self.delegations.delegate_of(depositor, token)

    def holdings(self, owner: str, token: str) -> Dict[str, Any]:
        return {
            "owner": normalize_address(owner),
            "token": normalize_address(token),
            "locked_balance": self.balance_of(owner, token),
            "deposited_balance": self.deposited_of(owner, token),
            "locked_token_ids": self.locked_token_ids(owner, token),
            "deposited_token_ids": self.deposited_token_ids(owner, token),
            "delegate": self.delegate_of(owner, token),
        }

    # ------------------------------------------------------------------
    # Observed deposits and delegation grants
    # ------------------------------------------------------------------
    def record_deposit(self, owner: str, token: str, amount: int) -> VaultReceipt:
        """Credit an externally observed token transfer into the vault."""
        owner = normalize_address(owner)
        token = normalize_address(token)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("deposit amount must be a positive integer")
        with self._operation(DEPOSIT):
            current = self.store.get_deposit(owner, token)
            self.store.set_deposit(owner, token, current + amount)
            return self._finish(DEPOSIT, depositor=owner, token=token, amount=amount)

    def record_erc721_deposit(self, owner: str, token: str, token_id: int) -> VaultReceipt:
        owner = normalize_address(owner)
        token = normalize_address(token)
        if isinstance(token_id, bool) or not isinstance(token_id, int) or not 0 <= token_id <= MAX_UINT256:
            raise ValueError("token_id must be an integer that fits in uint256")
        with self._operation(DEPOSIT_ERC721):
            holder = self.store.locked_owner(token, token_id) or self.store.deposited_owner(token, token_id)
            if holder is not None:
                raise TokenAlreadyHeld(f"Token {token} #{token_id} is already held for {holder}")
            self.store.set_deposited_owner(token, token_id, owner)
            return self._finish(DEPOSIT_ERC721, depositor=owner, token=token, token_id=token_id)

    def grant_delegate(self, depositor: str, token: str, delegate: str) -> VaultReceipt:
        """Called directly by ``depositor``; hands lock/unlock authority to ``delegate``."""
        with self._operation(GRANT_DELEGATE):
            self.delegations.grant(depositor, token, delegate)
            return self._finish(
                GRANT_DELEGATE,
                depositor=normalize_address(depositor),
                token=normalize_address(token),
                authorizer=normalize_address(delegate),
            )

    # ------------------------------------------------------------------
    # Permission entry points
    # ------------------------------------------------------------------
    def lock(self, token: str, amount: int, permission: SignedPermission) -> VaultReceipt:
        with self._operation(Action.LOCK.value):
            p = self._authorize(Action.LOCK, token, amount, permission)
            deposited = self.store.get_deposit(p.depositor, p.token)
            if deposited < amount:
                raise InsufficientBalance(
                    f"Observed deposits of {p.token} for {p.depositor} are {deposited}, need {amount}"
                )
            self.store.set_deposit(p.depositor, p.token, deposited - amount)
            balance = self.store.get_balance(p.depositor, p.token)
            self.store.set_balance(p.depositor, p.token, balance + amount)
            return self._consume(p)

    def unlock(self, token: str, amount: int, permission: SignedPermission) -> VaultReceipt:
        with self._operation(Action.UNLOCK.value):
            p = self._authorize(Action.UNLOCK, token, amount, permission)
            balance = self.store.get_balance(p.depositor, p.token)
            if balance < amount:
                raise InsufficientBalance(
                    f"Locked balance of {p.token} for {p.depositor} is {balance}, need {amount}"
                )
            self.store.set_balance(p.depositor, p.token, balance - amount)
            transfer = Transfer(token=p.token, recipient=p.depositor, amount=amount)
            return self._consume(p, transfers=(transfer,))

    def lock_erc721(self, token: str, token_id: int, permission: SignedPermission) -> VaultReceipt:
        with self._operation(Action.LOCK_ERC721.value):
            p = self._authorize(Action.LOCK_ERC721, token, token_id, permission)
            if self.store.deposited_owner(p.token, token_id) != p.depositor:
                raise InsufficientBalance(
                    f"Token {p.token} #{token_id} has not been deposited by {p.depositor}"
                )
            self.store.set_deposited_owner(p.token, token_id, None)
            self.store.set_locked_owner(p.token, token_id, p.depositor)
            return self._consume(p)

    def unlock_erc721(self, token: str, token_id: int, permission: SignedPermission) -> VaultReceipt:
        with self._operation(Action.UNLOCK_ERC721.value):
            p = self._authorize(Action.UNLOCK_ERC721, token, token_id, permission)
            if self.store.locked_owner(p.token, token_id) != p.depositor:
                raise InsufficientBalance(
                    f"Token {p.token} #{token_id} is not locked for {p.depositor}"
                )
            self.store.set_locked_owner(p.token, token_id, None)
            transfer = Transfer(token=p.token, recipient=p.depositor, token_id=token_id)
            return self._consume(p, transfers=(transfer,))

    # ------------------------------------------------------------------
    # Rage-quit
    # ------------------------------------------------------------------
    def rage_quit(self, depositor: str, delegate: str, token: str) -> VaultReceipt:
        """Release everything ``depositor`` holds of ``token`` and drop ``delegate``.

        Called directly by the depositor. No signature or nonce is involved and
        the delegate's cooperation is never required.
        """
        depositor = normalize_address(depositor)
        delegate = normalize_address(delegate)
        token = normalize_address(token)
        with self._operation(RAGE_QUIT):
            self.delegations.require_registered(depositor, token, delegate)

            released = self.store.get_balance(depositor, token) + self.store.get_deposit(depositor, token)
            self.store.set_balance(depositor, token, 0)
            self.store.set_deposit(depositor, token, 0)
            transfers: List[Transfer] = []
            if released:
                transfers.append(Transfer(token=token, recipient=depositor, amount=released))

            for token_id in self.store.locked_token_ids(depositor, token):
                self.store.set_locked_owner(token, token_id, None)
                transfers.append(Transfer(token=token, recipient=depositor, token_id=token_id))
            for token_id in self.store.deposited_token_ids(depositor, token):
                self.store.set_deposited_owner(token, token_id, None)
                transfers.append(Transfer(token=token, recipient=depositor, token_id=token_id))

            self.delegations.clear(depositor, token)
            return self._finish(
                RAGE_QUIT,
                depositor=depositor,
                token=token,
                authorizer=delegate,
                amount=released,
                transfers=tuple(transfers),
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        try:
            with self.store.transaction():
                yield
        except VaultError as exc:
            logger.warning("Rejected %s on vault %s: %s", name, self.address, exc)
            raise

    def _authorize(
        self,
        expected: Action,
        token: str,
        value: int,
        signed: SignedPermission,
    ) -> Permission:
        permission = signed.permission
        if permission.action is not expected:
            raise ActionMismatch(
                f"{permission.action.value} permission submitted to {expected.value}"
            )
        if permission.token != normalize_address(token):
            raise ParameterMismatch(
                f"Permission covers token {permission.token}, call targets {token}"
            )
        if permission.value != value:
            raise ParameterMismatch(
                f"Permission covers {expected.value_field} {permission.value}, call passed {value}"
            )

        verify_permission(signed, vault=self.address, chain_id=self.chain_id, domain=self.domain)
        bound = permission.with_domain(self.address, self.chain_id)
        self.delegations.require_authority(bound.depositor, bound.token, bound.authorizer)
        self.nonces.check(bound.authorizer, bound.nonce)
        return bound

    def _consume(self, permission: Permission, transfers: Tuple[Transfer, ...] = ()) -> VaultReceipt:
        self.nonces.consume(permission.authorizer, permission.nonce)
        return self._finish(
            permission.action.value,
            depositor=permission.depositor,
            token=permission.token,
            authorizer=permission.authorizer,
            amount=permission.amount,
            token_id=permission.token_id,
            nonce=permission.nonce,
            transfers=transfers,
            payload_hash=permission_digest(permission, self.domain),
        )

    def _finish(
        self,
        action: str,
        *,
        depositor: str,
        token: str,
        authorizer: Optional[str] = None,
        amount: Optional[int] = None,
        token_id: Optional[int] = None,
        nonce: Optional[int] = None,
        transfers: Tuple[Transfer, ...] = (),
        payload_hash: bytes = b"\x00" * 32,
    ) -> VaultReceipt:
        sequence = self.store.next_sequence()
        tx_hash = keccak(
            abi_encode(
                ["address", "uint256", "string", "bytes32"],
                [self.address, sequence, action, payload_hash],
            )
        )
        receipt = VaultReceipt(
            tx_hash="0x" + tx_hash.hex(),
            sequence=sequence,
            action=action,
            depositor=depositor,
            token=token,
            authorizer=authorizer,
            amount=amount,
            token_id=token_id,
            nonce=nonce,
            transfers=transfers,
        )
        journal = receipt.to_dict()
        journal.pop("action")
        self.store.journal(action, vault=self.address, **journal)
        logger.info(
            "Applied %s on vault %s: depositor=%s token=%s amount=%s token_id=%s nonce=%s seq=%s",
            action,
            self.address,
            depositor,
            token,
            amount,
            token_id,
            nonce,
            sequence,
        )
        return receipt
