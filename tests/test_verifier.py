import pytest
from eth_account import Account

from vaults.errors import MalformedSignature, SignatureInvalid
from vaults.issuer import sign_permission
from vaults.permissions import Action, encode_permission
from vaults.signer import LocalSigner
from vaults.verifier import SECP256K1_N, recover, split_signature, verify, verify_permission

OWNER = Account.from_key("0x" + "11" * 32)
OTHER = Account.from_key("0x" + "22" * 32)
VAULT_A = "0x" + "aa" * 20
VAULT_B = "0x" + "bb" * 20
TOKEN = "0x" + "cc" * 20
CHAIN_ID = 31337


def _signed(account=OWNER, vault=VAULT_A, amount=100, nonce=0):
    return sign_permission(
        Action.LOCK,
        vault,
        LocalSigner(account),
        account.address,
        TOKEN,
        amount,
        nonce,
        CHAIN_ID,
    )


def _high_s_twin(signature: bytes) -> bytes:
    r = signature[:32]
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    flipped_v = 28 if v == 27 else 27
    return r + (SECP256K1_N - s).to_bytes(32, "big") + bytes([flipped_v])


def test_recover_returns_the_signer():
    signed = _signed()
    encoded = encode_permission(signed.permission)
    assert recover(encoded, signed.signature) == OWNER.address
    assert verify(encoded, signed.signature, OWNER.address) is True
    assert verify(encoded, signed.signature, OTHER.address) is False


def test_signature_for_other_permission_does_not_verify():
    signed = _signed(amount=100)
    other = encode_permission(_signed(amount=101).permission)
    assert verify(other, signed.signature, OWNER.address) is False


@pytest.mark.parametrize("length", [0, 64, 66])
def test_wrong_length_is_malformed(length):
    with pytest.raises(MalformedSignature):
        split_signature(b"\x01" * length)


def test_invalid_recovery_id_is_malformed():
    signature = _signed().signature
    with pytest.raises(MalformedSignature):
        split_signature(signature[:64] + bytes([29]))


def test_zero_one_recovery_ids_are_normalised():
    signature = _signed().signature
    v, _, _ = split_signature(signature)
    raw_v = signature[:64] + bytes([v - 27])
    assert split_signature(raw_v)[0] == v
    encoded = encode_permission(_signed().permission)
    assert recover(encoded, raw_v) == OWNER.address


def test_high_s_twin_is_rejected():
    signed = _signed()
    _, _, s = split_signature(signed.signature)
    assert s <= SECP256K1_N // 2
    twin = _high_s_twin(signed.signature)
    with pytest.raises(MalformedSignature):
        verify(encode_permission(signed.permission), twin, OWNER.address)


def test_zero_r_is_malformed():
    signature = _signed().signature
    with pytest.raises(MalformedSignature):
        split_signature(b"\x00" * 32 + signature[32:])


def test_verify_permission_uses_verifying_vault_domain():
    signed = _signed(vault=VAULT_A)
    assert verify_permission(signed, vault=VAULT_A, chain_id=CHAIN_ID) == OWNER.address
    with pytest.raises(SignatureInvalid):
        verify_permission(signed, vault=VAULT_B, chain_id=CHAIN_ID)
    with pytest.raises(SignatureInvalid):
        verify_permission(signed, vault=VAULT_A, chain_id=1)


def test_malformed_signature_is_a_signature_failure():
    assert issubclass(MalformedSignature, SignatureInvalid)
    assert MalformedSignature.status_code == 400
    assert SignatureInvalid.status_code == 403
