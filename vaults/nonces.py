"""Per-authorizer sequential nonces."""
from __future__ import annotations

from .errors import NonceMismatch
from .permissions import normalize_address
from .store import VaultStore


class NonceRegistry:
    """Strictly ordered nonces: only the current value is accepted, then +1."""

    def __init__(self, store: VaultStore) -> None:
        self.store = store

    def current_nonce(self, authorizer: str) -> int:
        return self.store.get_nonce(normalize_address(authorizer))

    def check(self, authorizer: str, nonce: int) -> None:
        expected = self.current_nonce(authorizer)
        if nonce != expected:
            raise NonceMismatch(normalize_address(authorizer), expected, nonce)

    def consume(self, authorizer: str, nonce: int) -> int:
        """Advance the counter past ``nonce``; returns the new current value.

        Must run inside the store transaction that applies the authorized
        state change.
        """
        with self.store.transaction():
            self.check(authorizer, nonce)
            advanced = nonce + 1
            self.store.set_nonce(normalize_address(authorizer), advanced)
            return advanced
