import time

import pytest

from lnmint.core.base import MintKeyset, Proof, Unit
from lnmint.core.errors import (
    InvalidBlindedMessageError,
    KeysetExpiredError,
    KeysetNotFoundError,
)
from lnmint.core.settings import settings
from lnmint.mint.ledger import Ledger
from tests.helpers import assert_err, create_outputs, mint_proofs

SEED = "TEST_PRIVATE_KEY"


@pytest.mark.asyncio
async def test_keysets(ledger: Ledger):
    assert len(ledger.keysets) == 2
    keyset = ledger.get_active_keyset(Unit.sat)
    assert keyset.id == "009a1f293253e41e"
    assert keyset.derivation_path == "m/0'/0'/0'"
    assert ledger.get_active_keyset(Unit.usd).derivation_path == "m/0'/2'/0'"


@pytest.mark.asyncio
async def test_get_keyset_keys(ledger: Ledger):
    keys = ledger.get_keyset_keys("009a1f293253e41e")
    assert keys.unit == "sat"
    assert len(keys.keys) == settings.max_order
    assert (
        keys.keys[1]
        == "02194603ffa36356f4a56b7df9371fc3192472351453ec7398b8da8117e7c3e104"
    )


@pytest.mark.asyncio
async def test_get_keyset_keys_unknown(ledger: Ledger):
    with pytest.raises(KeysetNotFoundError):
        ledger.get_keyset_keys("00ffffffffffffff")


@pytest.mark.asyncio
async def test_derive_keyset_is_deterministic(ledger: Ledger):
    keyset1 = ledger.derive_keyset(Unit.sat, 0)
    keyset2 = MintKeyset(seed=SEED, derivation_path="m/0'/0'/0'")
    assert keyset1.id == keyset2.id == "009a1f293253e41e"
    assert keyset1.public_keys_hex == keyset2.public_keys_hex
    # deriving does not store or activate anything
    assert not keyset1.active
    assert len(ledger.keysets) == 2


@pytest.mark.asyncio
async def test_rotate_next_keyset(ledger: Ledger):
    old_keyset = ledger.get_active_keyset(Unit.sat)
    new_keyset = await ledger.rotate_next_keyset(Unit.sat)
    assert new_keyset.derivation_path == "m/0'/0'/1'"
    assert new_keyset.id != old_keyset.id
    assert new_keyset.active
    assert not old_keyset.active
    assert old_keyset.valid_to
    assert ledger.get_active_keyset(Unit.sat).id == new_keyset.id
    # the keyset of the other unit is not touched
    assert ledger.get_active_keyset(Unit.usd).active

    keysets = {k.id: k for k in ledger.get_keysets()}
    assert not keysets[old_keyset.id].active
    assert keysets[new_keyset.id].active
    assert [k.id for k in ledger.get_keys()].count(new_keyset.id) == 1


@pytest.mark.asyncio
async def test_rotate_next_keyset_failed_store_keeps_active_keyset(
    ledger: Ledger, monkeypatch
):
    old_keyset = ledger.get_active_keyset(Unit.sat)

    async def store_keyset_fails(*args, **kwargs):
        raise Exception("database is locked")

    monkeypatch.setattr(ledger.crud, "store_keyset", store_keyset_fails)
    await assert_err(ledger.rotate_next_keyset(Unit.sat), "database is locked")

    assert len(ledger.keysets) == 2
    assert ledger.get_active_keyset(Unit.sat).id == old_keyset.id
    assert old_keyset.active
    assert old_keyset.valid_to is None

    # the deactivation was rolled back in the database too
    monkeypatch.undo()
    ledger2 = Ledger(
        db=ledger.db,
        seed=SEED,
        backends=ledger.backends,
        crud=ledger.crud,
    )
    await ledger2.init_keysets()
    assert ledger2.get_active_keyset(Unit.sat).id == old_keyset.id


@pytest.mark.asyncio
async def test_rotate_next_keyset_with_max_order(ledger: Ledger):
    new_keyset = await ledger.rotate_next_keyset(Unit.sat, max_order=5)
    assert list(new_keyset.public_keys.keys()) == [1, 2, 4, 8, 16]


@pytest.mark.asyncio
async def test_keysets_persist_across_restart(ledger: Ledger):
    new_keyset = await ledger.rotate_next_keyset(Unit.sat)

    ledger2 = Ledger(
        db=ledger.db,
        seed=SEED,
        backends=ledger.backends,
        crud=ledger.crud,
    )
    await ledger2.init_keysets()
    assert set(ledger2.keysets.keys()) == set(ledger.keysets.keys())
    assert ledger2.get_active_keyset(Unit.sat).id == new_keyset.id
    assert not ledger2.keysets["009a1f293253e41e"].active


@pytest.mark.asyncio
async def test_init_keysets_with_other_seed_fails(ledger: Ledger):
    ledger2 = Ledger(
        db=ledger.db,
        seed="ANOTHER_PRIVATE_KEY",
        backends=ledger.backends,
        crud=ledger.crud,
    )
    await assert_err(ledger2.init_keysets(), "keyset id mismatch")


@pytest.mark.asyncio
async def test_proofs_of_inactive_keyset_can_be_swapped(ledger: Ledger):
    proofs = await mint_proofs(ledger, 8)
    new_keyset = await ledger.rotate_next_keyset(Unit.sat)
    outputs, _, _ = create_outputs(new_keyset.id, [8])
    promises = await ledger.swap(proofs=proofs, outputs=outputs)
    assert promises[0].id == new_keyset.id


@pytest.mark.asyncio
async def test_outputs_of_inactive_keyset_are_rejected(ledger: Ledger):
    proofs = await mint_proofs(ledger, 8)
    old_keyset = ledger.get_active_keyset(Unit.sat)
    await ledger.rotate_next_keyset(Unit.sat)
    outputs, _, _ = create_outputs(old_keyset.id, [8])
    await assert_err(
        ledger.swap(proofs=proofs, outputs=outputs), "keyset is not active"
    )


@pytest.mark.asyncio
async def test_proofs_of_expired_keyset_are_rejected(ledger: Ledger):
    proofs = await mint_proofs(ledger, 8)
    old_keyset = ledger.get_active_keyset(Unit.sat)
    new_keyset = await ledger.rotate_next_keyset(Unit.sat)

    settings.mint_inactive_keyset_retention_days = 1
    old_keyset.valid_to = int(time.time()) - 2 * 24 * 3600
    outputs, _, _ = create_outputs(new_keyset.id, [8])
    await assert_err(
        ledger.swap(proofs=proofs, outputs=outputs), KeysetExpiredError()
    )

    # without a retention period inactive keysets are accepted forever
    settings.mint_inactive_keyset_retention_days = None
    await ledger.swap(proofs=proofs, outputs=outputs)


@pytest.mark.asyncio
async def test_no_active_keyset_for_unit(ledger: Ledger):
    with pytest.raises(KeysetNotFoundError):
        ledger.get_active_keyset(Unit.eur)


@pytest.mark.asyncio
async def test_sign_invalid_blinded_message(ledger: Ledger):
    keyset = ledger.get_active_keyset(Unit.sat)
    with pytest.raises(InvalidBlindedMessageError):
        ledger.sign_blinded_message(keyset.id, 8, "00" * 33)


@pytest.mark.asyncio
async def test_verify_proof_unknown_keyset(ledger: Ledger):
    proofs = await mint_proofs(ledger, 8)
    proof = Proof(
        id="00ffffffffffffff",
        amount=8,
        secret=proofs[0].secret,
        C=proofs[0].C,
    )
    with pytest.raises(KeysetNotFoundError):
        ledger.verify_proof(proof)


@pytest.mark.asyncio
async def test_verify_proof_wrong_amount(ledger: Ledger):
    proofs = await mint_proofs(ledger, 8)
    proof = proofs[0].model_copy(update={"amount": 4})
    assert not ledger.verify_proof(proof)
