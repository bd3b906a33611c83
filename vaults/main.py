"""Service entrypoint for the vault relayer."""
from __future__ import annotations

import logging
import sys
import threading
from typing import Optional

from web3 import Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

from .api import create_app, run_api
from .config import VaultSettings, settings
from .onchain import DepositWatcher
from .store import VaultStore
from .vault import Vault


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_vault(config: VaultSettings) -> Vault:
    if not config.vault_address:
        raise SystemExit("VAULT_VAULT_ADDRESS must be set to run the relayer")
    store = VaultStore(config.state_path, journal_path=config.journal_path)
    return Vault(
        config.vault_address,
        config.chain_id,
        store=store,
        domain=config.signing_domain,
    )


def build_watcher(
    vault: Vault, config: VaultSettings, web3: Optional[Web3] = None
) -> Optional[DepositWatcher]:
    tokens = config.deposit_token_list
    if not tokens:
        return None
    if web3 is None:
        web3 = Web3(Web3.HTTPProvider(config.eth_rpc_url))
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return DepositWatcher(
        vault,
        web3,
        tokens,
        start_block=config.deposit_start_block,
        interval_seconds=config.deposit_poll_seconds,
        confirmations=config.deposit_confirmations,
    )


def main() -> None:
    configure_logging()
    logger = logging.getLogger(__name__)

    vault = build_vault(settings)
    logger.info(
        "Starting vault relayer vault=%s chain_id=%s state=%s sequence=%s",
        vault.address,
        vault.chain_id,
        settings.state_path,
        vault.store.sequence,
    )
    if not settings.api_admin_token:
        logger.warning("VAULT_API_ADMIN_TOKEN not set; the deposit feed endpoint is disabled")

    app = create_app(vault, settings)
    watcher = build_watcher(vault, settings)
    if watcher is None:
        logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
        run_api(app, settings)
        return

    api_thread = threading.Thread(
        target=run_api,
        name="vault-api",
        args=(app, settings),
        daemon=True,
    )
    api_thread.start()
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
    watcher.run_forever()


if __name__ == "__main__":
    main()
