"""Off-chain permission issuance: read the nonce, build, sign, hand over."""
from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol, Union

from .permissions import (
    DEFAULT_DOMAIN,
    Action,
    Permission,
    SignedPermission,
    SigningDomain,
    normalize_address,
    signable_message,
)
from .signer import Signer

logger = logging.getLogger(__name__)


class NonceSource(Protocol):
    def get_nonce(self, authorizer: str) -> int: ...


def _sign(permission: Permission, signer: Signer, domain: SigningDomain) -> SignedPermission:
    if normalize_address(signer.address) != permission.authorizer:
        raise ValueError(
            f"Signer {signer.address} cannot sign for authorizer {permission.authorizer}"
        )
    signature = signer.sign_permission(signable_message(permission, domain))
    return SignedPermission(permission=permission, signature=bytes(signature))


def sign_permission(
    action: Union[Action, str],
    vault: str,
    signer: Signer,
    authorizer: str,
    token: str,
    amount: int,
    nonce: int,
    chain_id: int,
    depositor: Optional[str] = None,
    domain: SigningDomain = DEFAULT_DOMAIN,
) -> SignedPermission:
    """Sign a fungible ``Lock``/``Unlock`` permission."""
    action = Action(action)
    if action.is_erc721:
        raise ValueError(f"{action.value} is an ERC-721 action; use sign_permission_erc721")
    permission = Permission(
        action=action,
        vault=vault,
        authorizer=authorizer,
        depositor=depositor,
        token=token,
        amount=amount,
        nonce=nonce,
        chain_id=chain_id,
    )
    return _sign(permission, signer, domain)


def sign_permission_erc721(
    action: Union[Action, str],
    vault: str,
    signer: Signer,
    authorizer: str,
    token: str,
    token_id: int,
    nonce: int,
    chain_id: int,
    depositor: Optional[str] = None,
    domain: SigningDomain = DEFAULT_DOMAIN,
) -> SignedPermission:
    """Sign a ``LockERC721``/``UnlockERC721`` permission."""
    action = Action(action)
    if not action.is_erc721:
        raise ValueError(f"{action.value} is a fungible action; use sign_permission")
    permission = Permission(
        action=action,
        vault=vault,
        authorizer=authorizer,
        depositor=depositor,
        token=token,
        token_id=token_id,
        nonce=nonce,
        chain_id=chain_id,
    )
    return _sign(permission, signer, domain)


class PermissionIssuer:
    """Issues permissions for one signer against one vault.

    The nonce is read and the permission signed under a lock, and the issuer
    remembers the highest nonce it has handed out, so two permissions never
    share a nonce even if neither has been submitted yet. Such back-to-back
    permissions must be submitted in issue order.
    """

    def __init__(
        self,
        signer: Signer,
        nonce_source: NonceSource,
        vault: str,
        chain_id: int,
        domain: SigningDomain = DEFAULT_DOMAIN,
    ) -> None:
        self.signer = signer
        self.nonce_source = nonce_source
        self.vault = normalize_address(vault)
        self.chain_id = int(chain_id)
        self.domain = domain
        self._lock = threading.Lock()
        self._next_nonce = 0

    @property
    def authorizer(self) -> str:
        return normalize_address(self.signer.address)

    def issue(
        self,
        action: Union[Action, str],
        token: str,
        value: int,
        depositor: Optional[str] = None,
    ) -> SignedPermission:
        """Sign ``action`` for ``value`` (an amount, or a token id for NFT actions)."""
        action = Action(action)
        builder = sign_permission_erc721 if action.is_erc721 else sign_permission
        with self._lock:
            authorizer = self.authorizer
            current = int(self.nonce_source.get_nonce(authorizer))
            nonce = max(current, self._next_nonce)
            signed = builder(
                action,
                self.vault,
                self.signer,
                authorizer,
                token,
                value,
                nonce,
                self.chain_id,
                depositor=depositor,
                domain=self.domain,
            )
            self._next_nonce = nonce + 1
        logger.info(
            "Issued %s permission vault=%s authorizer=%s depositor=%s token=%s value=%s nonce=%s",
            action.value,
            self.vault,
            authorizer,
            signed.permission.depositor,
            signed.permission.token,
            value,
            nonce,
        )
        return signed
