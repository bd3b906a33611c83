#!/usr/bin/env python3
"""Key-holding signer process for ``RemoteSocketSigner`` (tcp:// or vsock://)."""
from __future__ import annotations

import argparse
import json
import os
import socket
import struct
from typing import Any
from urllib.parse import urlparse

from eth_account import Account
from eth_account.messages import SignableMessage


def recv_exact(sock: socket.socket, size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        part = sock.recv(remaining)
        if not part:
            raise ConnectionError("peer closed")
        chunks.append(part)
        remaining -= len(part)
    return b"".join(chunks)


def read_message(sock: socket.socket) -> dict[str, Any]:
    header = recv_exact(sock, 4)
    (length,) = struct.unpack("!I", header)
    raw = recv_exact(sock, length)
    payload = json.loads(raw.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    return payload


def send_message(sock: socket.socket, payload: dict[str, Any]) -> None:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    sock.sendall(struct.pack("!I", len(raw)))
    sock.sendall(raw)


def error(message: str) -> dict[str, Any]:
    return {"error": {"message": message}}


def load_private_key() -> str:
    key = os.environ.get("SIGNER_PRIVATE_KEY", "").strip()
    if not key:
        raise RuntimeError("SIGNER_PRIVATE_KEY must be set (0x-prefixed hex)")
    return key


def _bytes32(params: dict[str, Any], name: str) -> bytes:
    raw = str(params.get(name) or "").strip()
    if not raw.startswith("0x"):
        raise ValueError(f"{name} must be 0x-prefixed hex")
    value = bytes.fromhex(raw[2:])
    if len(value) != 32:
        raise ValueError(f"{name} must be 32 bytes")
    return value


def handle_request(request: dict[str, Any], *, account) -> dict[str, Any]:
    method = request.get("method")
    params = request.get("params") if isinstance(request.get("params"), dict) else {}
    if method == "address":
        return {"result": {"address": account.address}}

    if method == "sign_permission":
        try:
            domain_separator = _bytes32(params, "domain_separator")
            struct_hash = _bytes32(params, "struct_hash")
        except ValueError as exc:
            return error(str(exc))
        signable = SignableMessage(version=b"\x01", header=domain_separator, body=struct_hash)
        signed = account.sign_message(signable)
        return {"result": {"signature": "0x" + bytes(signed.signature).hex()}}

    if method == "sign_transaction":
        tx = params.get("tx")
        if not isinstance(tx, dict):
            return error("tx must be an object")
        try:
            signed = Account.sign_transaction(tx, account.key)
        except Exception as exc:
            return error(f"failed to sign tx: {exc}")
        raw = getattr(signed, "rawTransaction", None) or getattr(signed, "raw_transaction", None)
        if raw is None:
            return error("signed tx missing raw bytes")
        return {"result": {"raw_tx": "0x" + bytes(raw).hex()}}

    return error("unknown method")


def bind_listener(endpoint: str) -> socket.socket:
    parsed = urlparse(endpoint)
    if parsed.hostname is None or parsed.port is None:
        raise RuntimeError("listen endpoint must include host/cid and port")

    if parsed.scheme == "tcp":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((parsed.hostname, parsed.port))
        sock.listen(128)
        return sock

    if parsed.scheme == "vsock":
        if not hasattr(socket, "AF_VSOCK"):
            raise RuntimeError("AF_VSOCK unsupported in this environment")
        cid_any = getattr(socket, "VMADDR_CID_ANY", 0)
        sock = socket.socket(socket.AF_VSOCK, socket.SOCK_STREAM)
        sock.bind((cid_any, parsed.port))
        sock.listen(128)
        return sock

    raise RuntimeError("listen scheme must be tcp:// or vsock://")


def serve(server: socket.socket, account) -> None:
    """Answer one request per connection until the listener is shut down."""
    while True:
        try:
            conn, _ = server.accept()
        except OSError:
            return
        with conn:
            try:
                request = read_message(conn)
                response = handle_request(request, account=account)
            except Exception as exc:
                response = error(str(exc))
            try:
                send_message(conn, response)
            except OSError as exc:
                print(f"[permission-signer] client went away before reply: {exc}")


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument(
        "--listen",
        default="tcp://127.0.0.1:5000",
        help="tcp://host:port or vsock://cid:port (vsock binds on CID_ANY)",
    )
    args = ap.parse_args()

    account = Account.from_key(load_private_key())
    server = bind_listener(args.listen)
    print(f"[permission-signer] listening on {args.listen} address={account.address}")
    serve(server, account)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
