"""JSON-backed state store for vault balances, NFT custody, nonces and delegations."""
from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

SECTIONS = ("balances", "deposits", "locked_nfts", "deposited_nfts", "nonces", "delegates", "cursors")


def account_key(owner: str, token: str) -> str:
    return f"{owner}:{token}"


def nft_key(token: str, token_id: int) -> str:
    return f"{token}:{token_id}"


def _empty_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {section: {} for section in SECTIONS}
    state["sequence"] = 0
    return state


class StoreError(RuntimeError):
    pass


class VaultStore:
    """Holds all mutable vault state.

    Writes are only accepted inside :meth:`transaction`. A transaction either
    commits every change (state file rewritten, journal appended) or, when the
    body raises, restores the snapshot taken when it started.
    """

    def __init__(self, path: Optional[Path] = None, journal_path: Optional[Path] = None) -> None:
        self.path = path
        self.journal_path = journal_path
        self._lock = threading.RLock()
        self._state: Dict[str, Any] = _empty_state()
        self._depth = 0
        self._pending_journal: List[Dict[str, Any]] = []
        self._load()

    def _load(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise StoreError(f"State file {self.path} is not a JSON object")
        state = _empty_state()
        for section in SECTIONS:
            values = raw.get(section) or {}
            if isinstance(values, dict):
                state[section] = dict(values)
        state["sequence"] = int(raw.get("sequence", 0))
        self._state = state

    def _persist(self) -> None:
        if self.path is None:
            return
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)
        tmp_path.replace(self.path)

    def _write_journal(self, entries: List[Dict[str, Any]]) -> None:
        if not self.journal_path or not entries:
            return
        try:
            self.journal_path.parent.mkdir(parents=True, exist_ok=True)
            with self.journal_path.open("a", encoding="utf-8") as handle:
                for entry in entries:
                    json.dump(entry, handle, separators=(",", ":"))
                    handle.write("\n")
        except OSError:
            # Journal is best-effort; the state file is the source of truth.
            return

    @contextmanager
    def transaction(self) -> Iterator["VaultStore"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy(self._state)
            self._pending_journal = []
            self._depth = 1
            try:
                yield self
                self._persist()
            except BaseException:
                self._state = snapshot
                self._pending_journal = []
                raise
            finally:
                self._depth = 0
            entries, self._pending_journal = self._pending_journal, []
            self._write_journal(entries)

    def _require_transaction(self) -> None:
        if not self._depth:
            raise StoreError("Vault state can only be mutated inside a transaction")

    def journal(self, event: str, **fields: Any) -> None:
        self._require_transaction()
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
        }
        entry.update({key: value for key, value in fields.items() if value is not None})
        self._pending_journal.append(entry)

    # ------------------------------------------------------------------
    # Fungible accounts
    # ------------------------------------------------------------------
    def get_balance(self, owner: str, token: str) -> int:
        with self._lock:
            return int(self._state["balances"].get(account_key(owner, token), "0"))

    def set_balance(self, owner: str, token: str, amount: int) -> None:
        self._set_amount("balances", owner, token, amount)

    def get_deposit(self, owner: str, token: str) -> int:
        with self._lock:
            return int(self._state["deposits"].get(account_key(owner, token), "0"))

    def set_deposit(self, owner: str, token: str, amount: int) -> None:
        self._set_amount("deposits", owner, token, amount)

    def _set_amount(self, section: str, owner: str, token: str, amount: int) -> None:
        self._require_transaction()
        if amount < 0:
            raise StoreError(f"{section} cannot go negative")
        key = account_key(owner, token)
        if amount == 0:
            self._state[section].pop(key, None)
        else:
            self._state[section][key] = str(amount)

    # ------------------------------------------------------------------
    # Non-fungible custody
    # ------------------------------------------------------------------
    def locked_owner(self, token: str, token_id: int) -> Optional[str]:
        with self._lock:
            return self._state["locked_nfts"].get(nft_key(token, token_id))

    def deposited_owner(self, token: str, token_id: int) -> Optional[str]:
        with self._lock:
            return self._state["deposited_nfts"].get(nft_key(token, token_id))

    def set_locked_owner(self, token: str, token_id: int, owner: Optional[str]) -> None:
        self._set_nft_owner("locked_nfts", token, token_id, owner)

    def set_deposited_owner(self, token: str, token_id: int, owner: Optional[str]) -> None:
        self._set_nft_owner("deposited_nfts", token, token_id, owner)

    def _set_nft_owner(self, section: str, token: str, token_id: int, owner: Optional[str]) -> None:
        self._require_transaction()
        key = nft_key(token, token_id)
        if owner is None:
            self._state[section].pop(key, None)
        else:
            self._state[section][key] = owner

    def locked_token_ids(self, owner: str, token: str) -> List[int]:
        return self._token_ids("locked_nfts", owner, token)

    def deposited_token_ids(self, owner: str, token: str) -> List[int]:
        return self._token_ids("deposited_nfts", owner, token)

    def _token_ids(self, section: str, owner: str, token: str) -> List[int]:
        prefix = f"{token}:"
        with self._lock:
            ids = [
                int(key[len(prefix):])
                for key, holder in self._state[section].items()
                if key.startswith(prefix) and holder == owner
            ]
        return sorted(ids)

    # ------------------------------------------------------------------
    # Nonces, delegations, ordering
    # ------------------------------------------------------------------
    def get_nonce(self, authorizer: str) -> int:
        with self._lock:
            return int(self._state["nonces"].get(authorizer, 0))

    def set_nonce(self, authorizer: str, value: int) -> None:
        self._require_transaction()
        self._state["nonces"][authorizer] = int(value)

    def get_delegate(self, depositor: str, token: str) -> Optional[str]:
        with self._lock:
            return self._state["delegates"].get(account_key(depositor, token))

    def set_delegate(self, depositor: str, token: str, delegate: Optional[str]) -> None:
        self._require_transaction()
        key = account_key(depositor, token)
        if delegate is None:
            self._state["delegates"].pop(key, None)
        else:
            self._state["delegates"][key] = delegate

    def get_cursor(self, name: str) -> Optional[int]:
        """Last block scanned by the named chain observer, if any."""
        with self._lock:
            value = self._state["cursors"].get(name)
        return int(value) if value is not None else None

    def set_cursor(self, name: str, block: int) -> None:
        self._require_transaction()
        self._state["cursors"][name] = int(block)

    def next_sequence(self) -> int:
        self._require_transaction()
        self._state["sequence"] = int(self._state["sequence"]) + 1
        return self._state["sequence"]

    @property
    def sequence(self) -> int:
        with self._lock:
            return int(self._state["sequence"])

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._state)
