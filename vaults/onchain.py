"""Read-only chain helpers: observe token transfers into the vault as deposits."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from eth_utils import keccak, to_checksum_address
from web3 import Web3

from .errors import TokenAlreadyHeld
from .vault import Vault, VaultReceipt

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()


@dataclass(frozen=True)
class DepositEvent:
    token: str
    sender: str
    block_number: int
    tx_hash: str
    amount: Optional[int] = None
    token_id: Optional[int] = None


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def _address_topic(address: str) -> str:
    return "0x" + "00" * 12 + to_checksum_address(address)[2:].lower()


def fetch_deposit_events(
    web3: Web3,
    token: str,
    vault_address: str,
    from_block: int,
    to_block: int,
) -> List[DepositEvent]:
    """Return ``Transfer`` events of ``token`` whose recipient is the vault.

    ERC-20 and ERC-721 share the event signature; ERC-721 indexes the token id
    as a fourth topic while ERC-20 carries the amount in the data field.
    """
    token_cs = to_checksum_address(token)
    logs = web3.eth.get_logs(
        {
            "address": token_cs,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [TRANSFER_TOPIC, None, _address_topic(vault_address)],
        }
    )
    events: List[DepositEvent] = []
    for log in logs:
        topics = [_as_bytes(topic) for topic in log["topics"]]
        if not topics or topics[0] != _as_bytes(TRANSFER_TOPIC):
            continue
        sender = to_checksum_address("0x" + topics[1][-20:].hex())
        tx_hash = "0x" + _as_bytes(log["transactionHash"]).hex()
        block_number = int(log["blockNumber"])
        if len(topics) == 4:
            events.append(
                DepositEvent(
                    token=token_cs,
                    sender=sender,
                    block_number=block_number,
                    tx_hash=tx_hash,
                    token_id=int.from_bytes(topics[3], "big"),
                )
            )
        elif len(topics) == 3:
            events.append(
                DepositEvent(
                    token=token_cs,
                    sender=sender,
                    block_number=block_number,
                    tx_hash=tx_hash,
                    amount=int.from_bytes(_as_bytes(log["data"]), "big"),
                )
            )
        else:
            logger.debug("Skipping non-standard Transfer log in tx %s", tx_hash)
    return events


def sync_deposits(
    vault: Vault,
    web3: Web3,
    tokens: Iterable[str],
    from_block: int,
    to_block: Optional[int] = None,
    cursor: Optional[str] = None,
) -> Tuple[List[VaultReceipt], int]:
    """Credit transfers into the vault between ``from_block`` and ``to_block``.

    Logs are fetched before the store is touched; the credits (and the
    ``cursor`` block, when named) then commit in one short transaction, so
    vault reads and permission calls never wait on the node.

    Returns the receipts and the last block scanned; the caller resumes from
    ``last_block + 1`` so each event is credited once.
    """
    last_block = int(to_block if to_block is not None else web3.eth.block_number)
    receipts: List[VaultReceipt] = []
    if last_block < from_block:
        return receipts, from_block - 1

    events: List[DepositEvent] = []
    for token in tokens:
        events.extend(fetch_deposit_events(web3, token, vault.address, from_block, last_block))

    with vault.store.transaction():
        if cursor is not None:
            stored = vault.store.get_cursor(cursor)
            if stored is not None and stored >= from_block:
                logger.warning(
                    "Cursor %s already at block %s; skipping blocks %s-%s",
                    cursor,
                    stored,
                    from_block,
                    last_block,
                )
                return receipts, stored
        for event in events:
            if event.token_id is not None:
                try:
                    receipts.append(vault.record_erc721_deposit(event.sender, event.token, event.token_id))
                except TokenAlreadyHeld as exc:
                    logger.error("Ignoring duplicate NFT deposit in %s: %s", event.tx_hash, exc)
                continue
            if not event.amount:
                continue
            receipts.append(vault.record_deposit(event.sender, event.token, event.amount))
        if cursor is not None:
            vault.store.set_cursor(cursor, last_block)

    logger.info(
        "Synced %s deposits for vault %s (blocks %s-%s)",
        len(receipts),
        vault.address,
        from_block,
        last_block,
    )
    return receipts, last_block


class DepositWatcher:
    """Polls ``Transfer`` logs into the vault and remembers where it stopped.

    Logs are fetched without holding the store lock; the credits and the block
    cursor then commit in one store transaction, so a restart resumes after
    the last committed block and never credits an event twice.
    """

    def __init__(
        self,
        vault: Vault,
        web3: Web3,
        tokens: Iterable[str],
        start_block: int = 0,
        interval_seconds: float = 15.0,
        confirmations: int = 0,
    ) -> None:
        self.vault = vault
        self.web3 = web3
        self.tokens = [to_checksum_address(token) for token in tokens]
        self.start_block = int(start_block)
        self.interval_seconds = float(interval_seconds)
        self.confirmations = int(confirmations)

    @property
    def cursor_name(self) -> str:
        return f"deposits:{self.vault.address}"

    def next_block(self) -> int:
        stored = self.vault.store.get_cursor(self.cursor_name)
        return stored + 1 if stored is not None else self.start_block

    def poll_once(self) -> List[VaultReceipt]:
        from_block = self.next_block()
        head = int(self.web3.eth.block_number) - self.confirmations
        if head < from_block:
            logger.debug("No new confirmed blocks (next=%s head=%s)", from_block, head)
            return []
        receipts, _ = sync_deposits(
            self.vault, self.web3, self.tokens, from_block, head, cursor=self.cursor_name
        )
        return receipts

    def run_forever(self) -> None:
        """Blocking loop that polls for deposits every configured interval."""
        logger.info(
            "Watching deposits of %s into vault %s every %s seconds",
            ", ".join(self.tokens),
            self.vault.address,
            self.interval_seconds,
        )
        try:
            while True:
                start = time.time()
                try:
                    self.poll_once()
                except Exception as exc:  # pragma: no cover - keep polling after RPC failures
                    logger.exception("Deposit sync failed: %s", exc)
                elapsed = time.time() - start
                time.sleep(max(self.interval_seconds - elapsed, 0))
        except KeyboardInterrupt:
            logger.info("Deposit watcher stopped via keyboard interrupt")
