import random
import string
from typing import List, Tuple, Union

from lnmint.core.base import BlindedMessage, BlindedSignature, Proof, Unit
from lnmint.core.crypto.b_dhke import step1_alice, step3_alice
from lnmint.core.crypto.secp import PrivateKey, PublicKey
from lnmint.core.errors import CashuError
from lnmint.core.models import PostMintQuoteRequest
from lnmint.core.split import amount_split
from lnmint.mint.ledger import Ledger


async def assert_err(f, msg: Union[str, CashuError]):
    """Compute f() and expect an error message 'msg'."""
    try:
        await f
    except Exception as exc:
        error_message: str = str(exc.args[0])
        if isinstance(msg, CashuError):
            if msg.detail not in error_message:
                raise Exception(
                    f"CashuError. Expected error: {msg.detail}, got: {error_message}"
                )
            return
        if msg not in error_message:
            raise Exception(f"Expected error: {msg}, got: {error_message}")
        return
    raise Exception(f"Expected error: {msg}, got no error")


def get_random_string(N: int = 10):
    return "".join(
        random.SystemRandom().choice(string.ascii_uppercase + string.digits)
        for _ in range(N)
    )


def create_outputs(
    keyset_id: str, amounts: List[int]
) -> Tuple[List[BlindedMessage], List[str], List[PrivateKey]]:
    """Blinds a fresh random secret for each amount, as a wallet would."""
    outputs: List[BlindedMessage] = []
    secrets: List[str] = []
    rs: List[PrivateKey] = []
    for amount in amounts:
        secret = get_random_string(32)
        B_, r = step1_alice(secret)
        outputs.append(
            BlindedMessage(amount=amount, id=keyset_id, B_=B_.serialize().hex())
        )
        secrets.append(secret)
        rs.append(r)
    return outputs, secrets, rs


def construct_proofs(
    ledger: Ledger,
    promises: List[BlindedSignature],
    secrets: List[str],
    rs: List[PrivateKey],
) -> List[Proof]:
    """Unblinds the signatures of the mint into proofs."""
    proofs: List[Proof] = []
    for promise, secret, r in zip(promises, secrets, rs):
        K = ledger.keysets[promise.id].public_keys[promise.amount]
        C_ = PublicKey(bytes.fromhex(promise.C_))
        C = step3_alice(C_, r, K)
        proofs.append(
            Proof(
                id=promise.id,
                amount=promise.amount,
                secret=secret,
                C=C.serialize().hex(),
            )
        )
    return proofs


async def mint_proofs(ledger: Ledger, amount: int, unit: Unit = Unit.sat) -> List[Proof]:
    """Pays a mint quote with the fake backend and returns the minted proofs."""
    quote = await ledger.mint_quote(PostMintQuoteRequest(unit=unit.name, amount=amount))
    # the fake backend settles every invoice it is asked about
    await ledger.get_mint_quote(quote.quote)
    keyset = ledger.get_active_keyset(unit)
    outputs, secrets, rs = create_outputs(keyset.id, amount_split(amount))
    promises = await ledger.mint(outputs=outputs, quote_id=quote.quote)
    return construct_proofs(ledger, promises, secrets, rs)
