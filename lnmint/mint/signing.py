from typing import List, Optional

from loguru import logger

from ..core.base import DLEQ, BlindedMessage, BlindedSignature, Proof
from ..core.crypto import b_dhke
from ..core.crypto.secp import PublicKey
from ..core.db import Connection
from ..core.errors import (
    InvalidBlindedMessageError,
    OutputsAlreadySignedError,
    KeysetDenominationError,
    KeysetNotFoundError,
)
from .protocols import SupportsDb, SupportsKeysets


class LedgerSigning(SupportsKeysets, SupportsDb):
    """Blind signatures of the ledger. Private keys never leave this class."""

    # ------- BLIND SIGNATURES -------

    def sign_blinded_message(
        self, keyset_id: str, amount: int, B_: str
    ) -> BlindedSignature:
        """Signs a single blinded message `B_` with the key for `amount` of keyset `keyset_id`.

        The signature carries a DLEQ proof that it was made with the public key of this
        amount.

        Raises:
            KeysetNotFoundError: If the keyset is unknown.
            KeysetDenominationError: If the keyset has no key for `amount`.
            InvalidBlindedMessageError: If `B_` is not a valid point.
        """
        if keyset_id not in self.keysets:
            raise KeysetNotFoundError(keyset_id)
        keyset = self.keysets[keyset_id]
        if amount not in keyset.private_keys:
            raise KeysetDenominationError(amount)
        try:
            B_point = PublicKey(bytes.fromhex(B_), raw=True)
        except ValueError:
            raise InvalidBlindedMessageError()
        logger.trace(f"Generating promise with keyset {keyset_id}.")
        C_, e, s = b_dhke.step2_bob(B_point, keyset.private_keys[amount])
        return BlindedSignature(
            id=keyset_id,
            amount=amount,
            C_=C_.serialize().hex(),
            dleq=DLEQ(e=e.serialize(), s=s.serialize()),
        )

    def _sign_blinded_messages(
        self, outputs: List[BlindedMessage]
    ) -> List[BlindedSignature]:
        """Signs all outputs. Signing has no side effects, the signatures are only
        issued once they are stored with `_store_promises`.
        """
        return [self.sign_blinded_message(o.id, o.amount, o.B_) for o in outputs]

    async def _store_promises(
        self,
        outputs: List[BlindedMessage],
        promises: List[BlindedSignature],
        conn: Connection,
        mint_quote_id: Optional[str] = None,
        melt_quote_id: Optional[str] = None,
    ) -> None:
        """Stores the signatures of `outputs` in the transaction `conn`.

        Important: Once stored, a signature is considered issued since the user can
        always restore it later.

        Raises:
            OutputsAlreadySignedError: If an output is already known to the mint.
        """
        for output, promise in zip(outputs, promises):
            logger.trace(f"crud: storing promise for {promise.amount}")
            stored = await self.crud.store_promise(
                B_=output.B_,
                promise=promise,
                mint_quote_id=mint_quote_id,
                melt_quote_id=melt_quote_id,
                db=self.db,
                conn=conn,
            )
            if not stored:
                raise OutputsAlreadySignedError()

    def verify_proof(self, proof: Proof) -> bool:
        """Verifies that the proof was signed by this mint.

        Raises:
            KeysetNotFoundError: If the keyset of the proof was never derived by this mint.
            KeysetDenominationError: If the keyset has no key for the proof amount.
        """
        if proof.id not in self.keysets:
            raise KeysetNotFoundError(proof.id)
        keyset = self.keysets[proof.id]
        if proof.amount not in keyset.private_keys:
            raise KeysetDenominationError(proof.amount)
        logger.trace(f"Validating proof {proof.Y} with keyset {keyset.id}.")
        try:
            C = PublicKey(bytes.fromhex(proof.C), raw=True)
        except ValueError:
            logger.trace(f"Proof {proof.Y} has an invalid signature point.")
            return False
        valid = b_dhke.verify(keyset.private_keys[proof.amount], C, proof.secret)
        if not valid:
            logger.trace(f"Proof verification failed for {proof.Y}.")
        return valid
