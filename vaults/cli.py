"""Task CLI: sign permissions and submit them to a deployed vault."""
from __future__ import annotations

import argparse
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence

from .client import VaultClient
from .config import VaultSettings, settings
from .main import configure_logging
from .permissions import Action
from .signer import RemoteSocketSigner, Signer

logger = logging.getLogger(__name__)


def parse_units(value: str, decimals: int) -> int:
    """Scale a human amount (``"1.5"``) to base units, rejecting sub-unit dust."""
    try:
        scaled = Decimal(value) * (Decimal(10) ** decimals)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount {value!r}") from exc
    if scaled != scaled.to_integral_value() or scaled <= 0:
        raise ValueError(f"Amount {value!r} is not a positive multiple of 10^-{decimals}")
    return int(scaled)


def build_signer(config: VaultSettings) -> Optional[Signer]:
    if config.signer_endpoint:
        return RemoteSocketSigner(
            endpoint=config.signer_endpoint,
            timeout_seconds=config.signer_timeout_seconds,
            expected_address=config.signer_expected_address,
        )
    return None


def build_client(args: argparse.Namespace, config: VaultSettings) -> VaultClient:
    vault_address = args.vault or config.vault_address
    if not vault_address:
        raise SystemExit("--vault or VAULT_VAULT_ADDRESS is required")
    return VaultClient(
        rpc_url=args.rpc_url or config.eth_rpc_url,
        chain_id=args.chain_id or config.chain_id,
        vault_address=vault_address,
        private_key=config.private_key,
        keystore_path=config.keystore_path,
        keystore_password=config.keystore_password,
        signer=build_signer(config),
        dry_run=not args.broadcast,
        domain=config.signing_domain,
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Lockable vault permission tasks")
    ap.add_argument("--vault", default=None, help="Vault address (default: VAULT_VAULT_ADDRESS)")
    ap.add_argument("--rpc-url", default=None, help="JSON-RPC endpoint (default: VAULT_ETH_RPC_URL)")
    ap.add_argument("--chain-id", type=int, default=None, help="Chain id (default: VAULT_CHAIN_ID)")
    ap.add_argument("--broadcast", action="store_true", help="Send transactions instead of a dry-run")
    ap.add_argument("--wait", action="store_true", help="Wait for the transaction receipt")
    sub = ap.add_subparsers(dest="task", required=True)

    for name, help_text in (("lock", "Lock tokens in the vault"), ("unlock", "Unlock tokens from the vault")):
        task = sub.add_parser(name, help=help_text)
        task.add_argument("--token", required=True, help="Token address")
        task.add_argument("--amount", required=True, help="Amount, scaled by --decimals")
        task.add_argument("--decimals", type=int, default=0, help="Token decimals used to scale --amount")
        task.add_argument("--depositor", default=None, help="Account acted on when signing as its delegate")

    for name, help_text in (
        ("lock-erc721", "Lock an NFT in the vault"),
        ("unlock-erc721", "Unlock an NFT from the vault"),
    ):
        task = sub.add_parser(name, help=help_text)
        task.add_argument("--token", required=True, help="NFT contract address")
        task.add_argument("--token-id", type=int, required=True, help="Token id")
        task.add_argument("--depositor", default=None, help="Account acted on when signing as its delegate")

    rage = sub.add_parser("rage-quit", help="Recover delegated holdings without the delegate")
    rage.add_argument("--delegate", required=True, help="Registered delegate address")
    rage.add_argument("--token", required=True, help="Token address")

    nonce = sub.add_parser("nonce", help="Print the current permission nonce")
    nonce.add_argument("--authorizer", default=None, help="Authorizer address (default: signer)")

    sign = sub.add_parser("sign", help="Sign a permission and print it without submitting")
    sign.add_argument("action", choices=[action.value for action in Action])
    sign.add_argument("--token", required=True, help="Token address")
    sign.add_argument("--value", required=True, help="Amount (fungible) or token id (NFT)")
    sign.add_argument("--decimals", type=int, default=0, help="Token decimals used to scale --value")
    sign.add_argument("--depositor", default=None, help="Account acted on when signing as its delegate")
    return ap


def _finish(client: VaultClient, tx_hash: Optional[str], wait: bool) -> None:
    if tx_hash is None:
        print("dry-run: transaction not sent")
        return
    print(f"  in {tx_hash}")
    if wait:
        receipt = client.wait_for_receipt(tx_hash)
        print(f"  mined in block {getattr(receipt, 'blockNumber', None)}")


def run(args: argparse.Namespace, config: VaultSettings) -> int:
    client = build_client(args, config)
    logger.info("Vault %s on chain %s (signer=%s)", client.vault_address, client.chain_id, client.sender)

    if args.task == "nonce":
        authorizer = args.authorizer or client.sender
        if not authorizer:
            raise SystemExit("--authorizer is required without a configured signer")
        print(client.get_nonce(authorizer))
        return 0

    if args.task == "rage-quit":
        _finish(client, client.rage_quit(args.delegate, args.token), args.wait)
        return 0

    issuer = client.issuer()
    if args.task == "sign":
        action = Action(args.action)
        value = int(args.value) if action.is_erc721 else parse_units(args.value, args.decimals)
        signed = issuer.issue(action, args.token, value, depositor=args.depositor)
        print(json.dumps(signed.to_dict(), indent=2))
        return 0

    if args.task in ("lock", "unlock"):
        amount = parse_units(args.amount, args.decimals)
        action = Action.LOCK if args.task == "lock" else Action.UNLOCK
        signed = issuer.issue(action, args.token, amount, depositor=args.depositor)
        submit = client.lock if action is Action.LOCK else client.unlock
        print(f"{action.value} {amount} {signed.permission.token} with permission {signed.signature_hex}")
        _finish(client, submit(args.token, amount, signed), args.wait)
        return 0

    action = Action.LOCK_ERC721 if args.task == "lock-erc721" else Action.UNLOCK_ERC721
    signed = issuer.issue(action, args.token, args.token_id, depositor=args.depositor)
    submit = client.lock_erc721 if action is Action.LOCK_ERC721 else client.unlock_erc721
    print(f"{action.value} #{args.token_id} with permission {signed.signature_hex}")
    _finish(client, submit(args.token, args.token_id, signed), args.wait)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return run(args, settings)
    except ValueError as exc:
        parser.error(str(exc))
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
