"""Error taxonomy for vault permission handling."""
from __future__ import annotations

from typing import Optional


class VaultError(Exception):
    """Raised when a vault operation cannot be applied.

    Every failure aborts the whole call; nothing is partially applied and the
    core never retries.
    """

    code = "vault_error"
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class SignatureInvalid(VaultError):
    code = "signature_invalid"
    status_code = 403


class MalformedSignature(SignatureInvalid):
    """Signature bytes that can never verify (length, recovery id, high-s)."""

    code = "signature_malformed"
    status_code = 400


class NonceMismatch(VaultError):
    code = "nonce_mismatch"
    status_code = 409

    def __init__(self, authorizer: str, expected: int, submitted: int) -> None:
        super().__init__(
            f"Nonce mismatch for {authorizer}: expected {expected}, got {submitted}"
        )
        self.authorizer = authorizer
        self.expected = expected
        self.submitted = submitted


class InsufficientBalance(VaultError):
    code = "insufficient_balance"
    status_code = 409


class UnauthorizedDelegate(VaultError):
    code = "unauthorized_delegate"
    status_code = 403


class ActionMismatch(VaultError):
    code = "action_mismatch"
    status_code = 400


class ParameterMismatch(VaultError):
    code = "parameter_mismatch"
    status_code = 400


class TokenAlreadyHeld(VaultError):
    code = "token_already_held"
    status_code = 409
