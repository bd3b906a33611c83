from types import SimpleNamespace

import httpx
import pytest
from eth_account import Account

from vaults.api import create_app
from vaults.issuer import sign_permission, sign_permission_erc721
from vaults.permissions import Action
from vaults.signer import LocalSigner
from vaults.store import VaultStore
from vaults.vault import Vault

OWNER = Account.from_key("0x" + "11" * 32)
VAULT = "0x" + "aa" * 20
OTHER_VAULT = "0x" + "bb" * 20
TOKEN = "0x" + "cc" * 20
NFT = "0x" + "ee" * 20
CHAIN_ID = 31337
ADMIN_TOKEN = "admin-secret"


@pytest.fixture()
def anyio_backend():
    return "asyncio"


def build_app(tmp_path, **overrides):
    store = VaultStore(tmp_path / "vault_state.json", journal_path=tmp_path / "audit" / "events.log")
    vault = Vault(VAULT, CHAIN_ID, store=store)
    defaults = dict(api_admin_token=ADMIN_TOKEN)
    defaults.update(overrides)
    return create_app(vault, SimpleNamespace(**defaults)), vault


def fungible_body(action, amount, nonce, vault=VAULT):
    signed = sign_permission(action, vault, LocalSigner(OWNER), OWNER.address, TOKEN, amount, nonce, CHAIN_ID)
    body = signed.to_dict()
    return {"token": TOKEN, "amount": amount, **body}


def nft_body(action, token_id, nonce):
    signed = sign_permission_erc721(
        action, VAULT, LocalSigner(OWNER), OWNER.address, NFT, token_id, nonce, CHAIN_ID
    )
    return {"token": NFT, "token_id": token_id, **signed.to_dict()}


@pytest.mark.anyio("asyncio")
async def test_relay_lock_and_unlock(tmp_path):
    app, vault = build_app(tmp_path)
    vault.record_deposit(OWNER.address, TOKEN, 100)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        locked = await client.post("/api/permissions/lock", json=fungible_body(Action.LOCK, 60, 0))
        unlocked = await client.post("/api/permissions/unlock", json=fungible_body(Action.UNLOCK, 20, 1))
        nonce = await client.get(f"/api/nonces/{OWNER.address}")
        holdings = await client.get(f"/api/holdings/{OWNER.address}/{TOKEN}")

    assert locked.status_code == 200
    assert locked.json()["action"] == "Lock"
    assert locked.json()["amount"] == "60"
    assert unlocked.status_code == 200
    assert unlocked.json()["transfers"] == [
        {"token": vault.holdings(OWNER.address, TOKEN)["token"], "recipient": OWNER.address, "amount": "20", "token_id": None}
    ]
    assert nonce.json() == {"authorizer": OWNER.address, "nonce": 2}
    body = holdings.json()
    assert body["locked_balance"] == "40"
    assert body["deposited_balance"] == "40"
    assert body["delegate"] is None


@pytest.mark.anyio("asyncio")
async def test_replayed_permission_conflicts(tmp_path):
    app, vault = build_app(tmp_path)
    vault.record_deposit(OWNER.address, TOKEN, 100)
    payload = fungible_body(Action.LOCK, 10, 0)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        first = await client.post("/api/permissions/lock", json=payload)
        second = await client.post("/api/permissions/lock", json=payload)

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"] == "nonce_mismatch"
    assert vault.get_nonce(OWNER.address) == 1


@pytest.mark.anyio("asyncio")
async def test_error_responses_carry_codes(tmp_path):
    app, vault = build_app(tmp_path)
    vault.record_deposit(OWNER.address, TOKEN, 100)
    wrong_vault = fungible_body(Action.LOCK, 10, 0, vault=OTHER_VAULT)
    wrong_action = fungible_body(Action.LOCK, 10, 0)
    malformed = dict(fungible_body(Action.LOCK, 10, 0), signature="0x1234")
    too_much = fungible_body(Action.UNLOCK, 10, 0)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        forged = await client.post("/api/permissions/lock", json=wrong_vault)
        mismatched = await client.post("/api/permissions/unlock", json=wrong_action)
        short = await client.post("/api/permissions/lock", json=malformed)
        overdrawn = await client.post("/api/permissions/unlock", json=too_much)
        bad_address = await client.get("/api/nonces/0x1234")

    assert forged.status_code == 403
    assert forged.json()["error"] == "signature_invalid"
    assert mismatched.status_code == 400
    assert mismatched.json()["error"] == "action_mismatch"
    assert short.status_code == 400
    assert short.json()["error"] == "signature_malformed"
    assert overdrawn.status_code == 409
    assert overdrawn.json()["error"] == "insufficient_balance"
    assert bad_address.status_code == 400
    assert vault.get_nonce(OWNER.address) == 0


@pytest.mark.anyio("asyncio")
async def test_nft_relay(tmp_path):
    app, vault = build_app(tmp_path)
    vault.record_erc721_deposit(OWNER.address, NFT, 7)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        locked = await client.post("/api/permissions/lock-erc721", json=nft_body(Action.LOCK_ERC721, 7, 0))
        holdings = await client.get(f"/api/holdings/{OWNER.address}/{NFT}")
        unlocked = await client.post("/api/permissions/unlock-erc721", json=nft_body(Action.UNLOCK_ERC721, 7, 1))

    assert locked.status_code == 200
    assert locked.json()["token_id"] == "7"
    assert holdings.json()["locked_token_ids"] == ["7"]
    assert unlocked.status_code == 200
    assert unlocked.json()["transfers"][0]["token_id"] == "7"
    assert vault.owner_of(NFT, 7) is None


@pytest.mark.anyio("asyncio")
async def test_deposit_feed_requires_admin_token(tmp_path):
    app, vault = build_app(tmp_path)
    payload = {"owner": OWNER.address, "token": TOKEN, "amount": 25}

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        anonymous = await client.post("/api/deposits", json=payload)
        wrong = await client.post("/api/deposits", json=payload, headers={"X-Admin-Token": "nope"})
        accepted = await client.post("/api/deposits", json=payload, headers={"X-Admin-Token": ADMIN_TOKEN})
        nft = await client.post(
            "/api/deposits",
            json={"owner": OWNER.address, "token": NFT, "token_id": 3},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )
        duplicate = await client.post(
            "/api/deposits",
            json={"owner": OWNER.address, "token": NFT, "token_id": 3},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )
        ambiguous = await client.post(
            "/api/deposits",
            json={"owner": OWNER.address, "token": NFT, "token_id": 4, "amount": 1},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )

    assert anonymous.status_code == 401
    assert wrong.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["action"] == "Deposit"
    assert nft.status_code == 200
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "token_already_held"
    assert ambiguous.status_code == 422
    assert vault.deposited_of(OWNER.address, TOKEN) == 25
    assert vault.deposited_token_ids(OWNER.address, NFT) == [3]


@pytest.mark.anyio("asyncio")
async def test_deposit_feed_disabled_without_token(tmp_path):
    app, vault = build_app(tmp_path, api_admin_token=None)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/api/deposits",
            json={"owner": OWNER.address, "token": TOKEN, "amount": 1},
            headers={"X-Admin-Token": ""},
        )
        info = await client.get("/api/vault")

    assert response.status_code == 401
    assert vault.deposited_of(OWNER.address, TOKEN) == 0
    assert info.json()["vault"] == vault.address
    assert info.json()["chain_id"] == CHAIN_ID
    assert info.json()["domain"] == {"name": "LockableVault", "version": "1"}


@pytest.mark.anyio("asyncio")
async def test_deposit_feed_rejects_out_of_range_token_id(tmp_path):
    app, vault = build_app(tmp_path)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        oversized = await client.post(
            "/api/deposits",
            json={"owner": OWNER.address, "token": NFT, "token_id": 1 << 256},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )
        largest = await client.post(
            "/api/deposits",
            json={"owner": OWNER.address, "token": NFT, "token_id": (1 << 256) - 1},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )

    assert oversized.status_code == 400
    assert "uint256" in oversized.json()["detail"]
    assert largest.status_code == 200
    assert vault.deposited_token_ids(OWNER.address, NFT) == [(1 << 256) - 1]
