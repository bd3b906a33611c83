"""Signing abstractions for permission keys (local key or a remote signer)."""
from __future__ import annotations

import json
import socket
import struct
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

from eth_account import Account
from eth_account.messages import SignableMessage
from eth_account.signers.local import LocalAccount


class SignerError(RuntimeError):
    pass


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign_transaction(self, tx: dict[str, Any]) -> bytes: ...

    def sign_permission(self, signable: SignableMessage) -> bytes: ...


@dataclass(frozen=True)
class LocalSigner:
    account: LocalAccount

    @classmethod
    def from_key(cls, private_key: str) -> "LocalSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self.account.address

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        signed = Account.sign_transaction(tx, self.account.key)
        raw = getattr(signed, "rawTransaction", None) or getattr(signed, "raw_transaction", None)
        if raw is None:
            raise SignerError("Signed transaction missing raw bytes")
        return bytes(raw)

    def sign_permission(self, signable: SignableMessage) -> bytes:
        signed = self.account.sign_message(signable)
        return bytes(signed.signature)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        part = sock.recv(remaining)
        if not part:
            raise SignerError("Remote signer closed connection unexpectedly")
        chunks.append(part)
        remaining -= len(part)
    return b"".join(chunks)


def _send_framed_json(sock: socket.socket, payload: dict[str, Any]) -> dict[str, Any]:
    encoded = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    sock.sendall(struct.pack("!I", len(encoded)))
    sock.sendall(encoded)

    header = _recv_exact(sock, 4)
    (length,) = struct.unpack("!I", header)
    response_raw = _recv_exact(sock, length)
    try:
        response = json.loads(response_raw.decode("utf-8"))
    except ValueError as exc:
        raise SignerError("Remote signer returned invalid JSON") from exc
    if not isinstance(response, dict):
        raise SignerError("Remote signer returned invalid response")
    return response


def _decode_hex_result(result: dict[str, Any], key: str) -> bytes:
    value = str(result.get(key) or "").strip()
    if not value.startswith("0x") or len(value) < 4:
        raise SignerError(f"Remote signer returned invalid {key}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError as exc:
        raise SignerError(f"Remote signer returned non-hex {key}") from exc


@dataclass
class RemoteSocketSigner:
    """Talks to a signer process over tcp:// or vsock:// with length-prefixed JSON."""

    endpoint: str
    timeout_seconds: float = 5.0
    expected_address: Optional[str] = None
    _address: Optional[str] = None

    def _connect(self) -> socket.socket:
        parsed = urlparse(self.endpoint)
        if parsed.hostname is None or parsed.port is None:
            raise SignerError("Remote signer endpoint missing host/port")
        if parsed.scheme == "tcp":
            return socket.create_connection(
                (parsed.hostname, parsed.port),
                timeout=self.timeout_seconds,
            )
        if parsed.scheme == "vsock":
            if not hasattr(socket, "AF_VSOCK"):
                raise SignerError("AF_VSOCK not supported in this environment")
            try:
                sock = socket.socket(socket.AF_VSOCK, socket.SOCK_STREAM)
            except PermissionError as exc:
                raise SignerError("AF_VSOCK is not permitted in this environment") from exc
            sock.settimeout(self.timeout_seconds)
            try:
                cid = int(parsed.hostname)
            except ValueError as exc:  # pragma: no cover
                raise SignerError("Remote signer vsock:// CID must be an integer") from exc
            sock.connect((cid, parsed.port))
            return sock
        raise SignerError("Remote signer endpoint must use tcp:// or vsock://")

    def _rpc(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        request = {"method": method, "params": params or {}}
        try:
            with self._connect() as sock:
                response = _send_framed_json(sock, request)
        except OSError as exc:
            raise SignerError(f"Remote signer unreachable at {self.endpoint}: {exc}") from exc
        if "error" in response:
            error = response.get("error")
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise SignerError(message or "Remote signer error")
        result = response.get("result")
        if not isinstance(result, dict):
            raise SignerError("Remote signer returned invalid result")
        return result

    @property
    def address(self) -> str:
        if self._address is None:
            result = self._rpc("address")
            address = str(result.get("address") or "").strip()
            if not address:
                raise SignerError("Remote signer missing address")
            expected = (self.expected_address or "").strip()
            if expected and address.lower() != expected.lower():
                raise SignerError(
                    f"Remote signer address mismatch: got {address}, expected {expected}"
                )
            self._address = address
        return self._address

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        result = self._rpc("sign_transaction", {"tx": tx})
        return _decode_hex_result(result, "raw_tx")

    def sign_permission(self, signable: SignableMessage) -> bytes:
        if bytes(signable.version) != b"\x01":
            raise SignerError("Remote signer only signs EIP-712 (version 0x01) payloads")
        result = self._rpc(
            "sign_permission",
            {
                "domain_separator": "0x" + bytes(signable.header).hex(),
                "struct_hash": "0x" + bytes(signable.body).hex(),
            },
        )
        return _decode_hex_result(result, "signature")
