"""web3.py client for a deployed lockable vault contract."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from eth_abi import encode as abi_encode
from eth_account import Account
from web3 import Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

from .issuer import PermissionIssuer
from .permissions import DEFAULT_DOMAIN, SignedPermission, SigningDomain
from .signer import LocalSigner, Signer

logger = logging.getLogger(__name__)


def _entry(name: str, inputs: list[tuple[str, str]], *, view: bool = False) -> dict[str, Any]:
    return {
        "inputs": [{"internalType": kind, "name": arg, "type": kind} for arg, kind in inputs],
        "name": name,
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}] if view else [],
        "stateMutability": "view" if view else "nonpayable",
        "type": "function",
    }


VAULT_ABI: list[dict[str, Any]] = [
    _entry("lock", [("token", "address"), ("amount", "uint256"), ("permission", "bytes")]),
    _entry("unlock", [("token", "address"), ("amount", "uint256"), ("permission", "bytes")]),
    _entry("lockERC721", [("token", "address"), ("tokenId", "uint256"), ("permission", "bytes")]),
    _entry("unlockERC721", [("token", "address"), ("tokenId", "uint256"), ("permission", "bytes")]),
    _entry("rageQuit", [("delegate", "address"), ("token", "address")]),
    _entry("getNonce", [("authorizer", "address")], view=True),
]


def encode_permission_argument(signed: SignedPermission) -> bytes:
    """ABI-encode the ``permission`` argument: ``(authorizer, depositor, nonce, signature)``.

    Token, amount/tokenId, action, vault and chain id are taken by the contract
    from the call itself, so they are not repeated here.
    """
    permission = signed.permission
    return abi_encode(
        ["address", "address", "uint256", "bytes"],
        [permission.authorizer, permission.depositor, permission.nonce, bytes(signed.signature)],
    )


class VaultClient:
    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        vault_address: str,
        private_key: Optional[str] = None,
        keystore_path: Optional[Path] = None,
        keystore_password: Optional[str] = None,
        signer: Optional[Signer] = None,
        dry_run: bool = True,
        domain: SigningDomain = DEFAULT_DOMAIN,
        web3: Optional[Web3] = None,
    ) -> None:
        if web3 is None:
            web3 = Web3(Web3.HTTPProvider(rpc_url))
            # Rollups with Clique-style extraData need the POA middleware.
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.web3 = web3
        self.chain_id = chain_id
        self.vault_address = Web3.to_checksum_address(vault_address)
        self.dry_run = dry_run
        self.domain = domain
        self._signer: Optional[Signer] = signer

        if signer is None:
            if private_key:
                self._signer = LocalSigner(Account.from_key(private_key))
            elif keystore_path and keystore_password:
                with Path(keystore_path).expanduser().open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
                decrypted = Account.decrypt(data, keystore_password)
                self._signer = LocalSigner(Account.from_key(decrypted))
            else:
                logger.info("Vault client running without signing key (dry-run=%s)", dry_run)

    @property
    def sender(self) -> Optional[str]:
        if self._signer is None:
            return None
        return self._signer.address

    @property
    def signer(self) -> Optional[Signer]:
        return self._signer

    def _vault(self):
        return self.web3.eth.contract(address=self.vault_address, abi=VAULT_ABI)

    def issuer(self) -> PermissionIssuer:
        if self._signer is None:
            raise RuntimeError("Cannot issue permissions without a configured signer")
        return PermissionIssuer(self._signer, self, self.vault_address, self.chain_id, self.domain)

    def get_nonce(self, authorizer: str) -> int:
        return int(self._vault().functions.getNonce(Web3.to_checksum_address(authorizer)).call())

    def lock(self, token: str, amount: int, permission: SignedPermission) -> Optional[str]:
        return self._submit("lock", token, amount, permission)

    def unlock(self, token: str, amount: int, permission: SignedPermission) -> Optional[str]:
        return self._submit("unlock", token, amount, permission)

    def lock_erc721(self, token: str, token_id: int, permission: SignedPermission) -> Optional[str]:
        return self._submit("lockERC721", token, token_id, permission)

    def unlock_erc721(self, token: str, token_id: int, permission: SignedPermission) -> Optional[str]:
        return self._submit("unlockERC721", token, token_id, permission)

    def rage_quit(self, delegate: str, token: str) -> Optional[str]:
        data = self._vault().encode_abi(
            "rageQuit",
            args=[Web3.to_checksum_address(delegate), Web3.to_checksum_address(token)],
        )
        logger.info("Rage-quitting token %s delegated to %s on vault %s", token, delegate, self.vault_address)
        return self.send_transaction(data=data)

    def _submit(self, function_name: str, token: str, value: int, permission: SignedPermission) -> Optional[str]:
        data = self._vault().encode_abi(
            function_name,
            args=[Web3.to_checksum_address(token), int(value), encode_permission_argument(permission)],
        )
        logger.info(
            "Submitting %s token=%s value=%s authorizer=%s nonce=%s",
            function_name,
            token,
            value,
            permission.permission.authorizer,
            permission.permission.nonce,
        )
        return self.send_transaction(data=data)

    def send_transaction(self, *, data: str) -> Optional[str]:
        if not self._signer or self.dry_run:
            logger.info(
                "Dry-run transaction: would call vault %s (sender=%s data=%s)",
                self.vault_address,
                self.sender,
                data,
            )
            return None

        sender = self.sender
        if not sender:
            raise RuntimeError("Vault client missing sender address")

        gas_price = self.web3.eth.gas_price
        nonce = self.web3.eth.get_transaction_count(sender, block_identifier="pending")
        try:
            gas_limit = int(
                self.web3.eth.estimate_gas({"from": sender, "to": self.vault_address, "data": data})
            )
        except Exception as exc:  # pragma: no cover - estimation failures fall back to a fixed limit
            logger.warning("Gas estimation failed, using fallback limit: %s", exc)
            gas_limit = 250_000

        tx: dict[str, Any] = {
            "chainId": self.chain_id,
            "nonce": nonce,
            "to": self.vault_address,
            "value": 0,
            "gas": gas_limit,
            "data": data,
        }
        try:
            max_priority_fee = self.web3.eth.max_priority_fee
        except Exception as exc:
            logger.warning("Node did not report a priority fee, using legacy gas price: %s", exc)
            max_priority_fee = None
        if isinstance(max_priority_fee, int):
            tx.update(
                {
                    "maxPriorityFeePerGas": max_priority_fee,
                    "maxFeePerGas": max(gas_price, max_priority_fee) * 2,
                }
            )
        else:
            tx["gasPrice"] = gas_price * 2

        raw_tx = self._signer.sign_transaction(tx)
        tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Submitted tx %s to vault %s", tx_hex, self.vault_address)
        return tx_hex

    def wait_for_receipt(self, tx_hash: str, timeout: int = 300) -> Any:
        receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        status = getattr(receipt, "status", None)
        if status is None and isinstance(receipt, dict):
            status = receipt.get("status")
        if status != 1:
            raise RuntimeError(f"Vault transaction {tx_hash} reverted")
        return receipt
