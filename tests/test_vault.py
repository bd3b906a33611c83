import threading

import pytest
from eth_account import Account

from vaults.errors import (
    ActionMismatch,
    InsufficientBalance,
    MalformedSignature,
    NonceMismatch,
    ParameterMismatch,
    SignatureInvalid,
    TokenAlreadyHeld,
    VaultError,
)
from vaults.issuer import sign_permission, sign_permission_erc721
from vaults.permissions import Action, SignedPermission
from vaults.signer import LocalSigner
from vaults.store import VaultStore
from vaults.vault import Transfer, Vault

OWNER = Account.from_key("0x" + "11" * 32)
STRANGER = Account.from_key("0x" + "33" * 32)
VAULT_A = "0x" + "aa" * 20
VAULT_B = "0x" + "bb" * 20
TOKEN = "0x" + "cc" * 20
OTHER_TOKEN = "0x" + "ce" * 20
NFT = "0x" + "ee" * 20
CHAIN_ID = 31337


def _vault(address=VAULT_A, store=None):
    return Vault(address, CHAIN_ID, store=store)


def _sign(action, value, nonce, account=OWNER, vault=VAULT_A, token=TOKEN, depositor=None):
    action = Action(action)
    builder = sign_permission_erc721 if action.is_erc721 else sign_permission
    return builder(
        action,
        vault,
        LocalSigner(account),
        account.address,
        token,
        value,
        nonce,
        CHAIN_ID,
        depositor=depositor,
    )


def test_lock_then_unlock_round_trip():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 100)

    receipt = vault.lock(TOKEN, 100, _sign(Action.LOCK, 100, 0))
    assert receipt.action == "Lock"
    assert receipt.nonce == 0
    assert vault.balance_of(OWNER.address, TOKEN) == 100
    assert vault.deposited_of(OWNER.address, TOKEN) == 0
    assert vault.get_nonce(OWNER.address) == 1

    receipt = vault.unlock(TOKEN, 100, _sign(Action.UNLOCK, 100, 1))
    assert receipt.transfers == (Transfer(token=receipt.token, recipient=OWNER.address, amount=100),)
    assert vault.balance_of(OWNER.address, TOKEN) == 0
    assert vault.get_nonce(OWNER.address) == 2


def test_unlock_at_current_nonce_then_replay_fails():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 100)
    for nonce in range(5):
        vault.lock(TOKEN, 20, _sign(Action.LOCK, 20, nonce))
    assert vault.balance_of(OWNER.address, TOKEN) == 100
    assert vault.get_nonce(OWNER.address) == 5

    permission = _sign(Action.UNLOCK, 100, 5)
    vault.unlock(TOKEN, 100, permission)
    assert vault.balance_of(OWNER.address, TOKEN) == 0
    assert vault.get_nonce(OWNER.address) == 6

    with pytest.raises(NonceMismatch):
        vault.unlock(TOKEN, 100, permission)
    assert vault.get_nonce(OWNER.address) == 6


def test_future_nonce_is_rejected_without_side_effects():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 50)
    with pytest.raises(NonceMismatch):
        vault.lock(TOKEN, 50, _sign(Action.LOCK, 50, 1))
    assert vault.get_nonce(OWNER.address) == 0
    assert vault.deposited_of(OWNER.address, TOKEN) == 50


def test_permission_for_other_vault_is_rejected():
    vault_a = _vault(VAULT_A)
    vault_b = _vault(VAULT_B)
    vault_b.record_deposit(OWNER.address, TOKEN, 10)

    permission = _sign(Action.LOCK, 10, 0, vault=VAULT_A)
    with pytest.raises(SignatureInvalid):
        vault_b.lock(TOKEN, 10, permission)
    assert vault_b.get_nonce(OWNER.address) == 0
    assert vault_a.get_nonce(OWNER.address) == 0


def test_signature_from_wrong_key_is_rejected():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 10)
    forged = _sign(Action.LOCK, 10, 0, account=STRANGER)
    # Claim the owner as authorizer while keeping the stranger's signature.
    claimed = SignedPermission(
        permission=_sign(Action.LOCK, 10, 0).permission,
        signature=forged.signature,
    )
    with pytest.raises(SignatureInvalid):
        vault.lock(TOKEN, 10, claimed)
    assert vault.get_nonce(OWNER.address) == 0


def test_truncated_signature_is_malformed():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 10)
    signed = _sign(Action.LOCK, 10, 0)
    truncated = SignedPermission(permission=signed.permission, signature=signed.signature[:64])
    with pytest.raises(MalformedSignature):
        vault.lock(TOKEN, 10, truncated)


def test_lock_permission_cannot_unlock():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 100)
    vault.lock(TOKEN, 100, _sign(Action.LOCK, 100, 0))
    with pytest.raises(ActionMismatch):
        vault.unlock(TOKEN, 100, _sign(Action.LOCK, 100, 1))
    assert vault.balance_of(OWNER.address, TOKEN) == 100
    assert vault.get_nonce(OWNER.address) == 1


@pytest.mark.parametrize(
    "token,amount",
    [(TOKEN, 99), (OTHER_TOKEN, 100)],
)
def test_call_parameters_must_match_permission(token, amount):
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 100)
    vault.record_deposit(OWNER.address, OTHER_TOKEN, 100)
    with pytest.raises(ParameterMismatch):
        vault.lock(token, amount, _sign(Action.LOCK, 100, 0))
    assert vault.get_nonce(OWNER.address) == 0


def test_unlock_beyond_balance_leaves_nonce_unchanged():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 30)
    vault.lock(TOKEN, 30, _sign(Action.LOCK, 30, 0))
    with pytest.raises(InsufficientBalance):
        vault.unlock(TOKEN, 31, _sign(Action.UNLOCK, 31, 1))
    assert vault.balance_of(OWNER.address, TOKEN) == 30
    assert vault.get_nonce(OWNER.address) == 1


def test_lock_requires_observed_deposit():
    vault = _vault()
    with pytest.raises(InsufficientBalance):
        vault.lock(TOKEN, 1, _sign(Action.LOCK, 1, 0))
    assert vault.get_nonce(OWNER.address) == 0


def test_record_deposit_rejects_non_positive_amounts():
    vault = _vault()
    with pytest.raises(ValueError):
        vault.record_deposit(OWNER.address, TOKEN, 0)
    assert vault.store.sequence == 0


def test_erc721_lock_and_unlock():
    vault = _vault()
    vault.record_erc721_deposit(OWNER.address, NFT, 7)
    assert vault.deposited_token_ids(OWNER.address, NFT) == [7]

    vault.lock_erc721(NFT, 7, _sign(Action.LOCK_ERC721, 7, 0, token=NFT))
    assert vault.locked_token_ids(OWNER.address, NFT) == [7]
    assert vault.deposited_token_ids(OWNER.address, NFT) == []
    assert vault.owner_of(NFT, 7) == OWNER.address

    receipt = vault.unlock_erc721(NFT, 7, _sign(Action.UNLOCK_ERC721, 7, 1, token=NFT))
    assert receipt.transfers[0].token_id == 7
    assert receipt.transfers[0].recipient == OWNER.address
    assert vault.locked_token_ids(OWNER.address, NFT) == []
    assert vault.owner_of(NFT, 7) is None
    assert vault.get_nonce(OWNER.address) == 2


def test_erc721_action_mismatch_leaves_state_unchanged():
    vault = _vault()
    vault.record_erc721_deposit(OWNER.address, NFT, 7)
    with pytest.raises(ActionMismatch):
        vault.unlock_erc721(NFT, 7, _sign(Action.LOCK_ERC721, 7, 0, token=NFT))
    assert vault.deposited_token_ids(OWNER.address, NFT) == [7]
    assert vault.get_nonce(OWNER.address) == 0


def test_erc721_lock_of_unheld_token_fails():
    vault = _vault()
    with pytest.raises(InsufficientBalance):
        vault.lock_erc721(NFT, 9, _sign(Action.LOCK_ERC721, 9, 0, token=NFT))


def test_erc721_double_deposit_is_refused():
    vault = _vault()
    vault.record_erc721_deposit(OWNER.address, NFT, 7)
    with pytest.raises(TokenAlreadyHeld):
        vault.record_erc721_deposit(STRANGER.address, NFT, 7)
    assert vault.owner_of(NFT, 7) == OWNER.address


@pytest.mark.parametrize("token_id", [-1, "7", True, 1 << 256])
def test_erc721_deposit_rejects_invalid_token_ids(token_id):
    vault = _vault()
    with pytest.raises(ValueError):
        vault.record_erc721_deposit(OWNER.address, NFT, token_id)
    assert vault.store.sequence == 0
    assert vault.deposited_token_ids(OWNER.address, NFT) == []


def test_fungible_and_nft_nonces_share_one_counter():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 5)
    vault.record_erc721_deposit(OWNER.address, NFT, 1)
    vault.lock(TOKEN, 5, _sign(Action.LOCK, 5, 0))
    vault.lock_erc721(NFT, 1, _sign(Action.LOCK_ERC721, 1, 1, token=NFT))
    assert vault.get_nonce(OWNER.address) == 2


def test_receipts_are_sequenced_and_journaled(tmp_path):
    journal_path = tmp_path / "events.log"
    vault = _vault(store=VaultStore(tmp_path / "state.json", journal_path))
    first = vault.record_deposit(OWNER.address, TOKEN, 10)
    second = vault.lock(TOKEN, 10, _sign(Action.LOCK, 10, 0))
    assert (first.sequence, second.sequence) == (1, 2)
    assert first.tx_hash != second.tx_hash
    events = journal_path.read_text().splitlines()
    assert len(events) == 2
    assert '"event":"Lock"' in events[1]

    reopened = _vault(store=VaultStore(tmp_path / "state.json"))
    assert reopened.balance_of(OWNER.address, TOKEN) == 10
    assert reopened.get_nonce(OWNER.address) == 1


def test_concurrent_submissions_of_one_permission_apply_once():
    vault = _vault()
    vault.record_deposit(OWNER.address, TOKEN, 100)
    vault.lock(TOKEN, 100, _sign(Action.LOCK, 100, 0))
    permission = _sign(Action.UNLOCK, 10, 1)

    outcomes = []
    barrier = threading.Barrier(4)

    def submit():
        barrier.wait()
        try:
            vault.unlock(TOKEN, 10, permission)
            outcomes.append("ok")
        except VaultError as exc:
            outcomes.append(type(exc).__name__)

    threads = [threading.Thread(target=submit) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("NonceMismatch") == 3
    assert vault.balance_of(OWNER.address, TOKEN) == 90
    assert vault.get_nonce(OWNER.address) == 2
