from typing import List, Optional

from loguru import logger

from ...core.base import (
    BlindedMessage,
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintQuoteState,
    Proof,
    ProofSpentState,
)
from ...core.db import Connection, Database
from ...core.errors import (
    OutputsAlreadySignedError,
    ProofsPendingError,
    QuoteAlreadyIssuedError,
    QuoteNotFoundError,
    QuoteNotPaidError,
    QuotePendingError,
    TokenAlreadySpentError,
    TransactionError,
)
from ..crud import LedgerCrud
from .read import DbReadHelper


class DbWriteHelper:
    """All state changes of proofs and quotes go through here.

    Every change is a compare-and-set on the previous state. A failed compare raises,
    which rolls back the surrounding transaction.
    """

    db: Database
    crud: LedgerCrud
    db_read: DbReadHelper

    def __init__(
        self,
        db: Database,
        crud: LedgerCrud,
        db_read: DbReadHelper,
    ) -> None:
        self.db = db
        self.crud = crud
        self.db_read = db_read

    async def transition(
        self,
        proof: Proof,
        from_state: ProofSpentState,
        to_state: ProofSpentState,
        quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        """Moves a single proof from `from_state` to `to_state`.

        Returns:
            bool: False if the proof was not in `from_state`, nothing is changed then.
        """
        async with self.db.get_connection(conn, lock_table="proofs") as conn:
            ok = await self.crud.transition_proof_state(
                proof=proof,
                from_state=from_state,
                to_state=to_state,
                quote_id=quote_id,
                db=self.db,
                conn=conn,
            )
        logger.trace(
            f"transition {proof.Y} {from_state} -> {to_state}: {'ok' if ok else 'conflict'}"
        )
        return ok

    async def _transition_proofs(
        self,
        proofs: List[Proof],
        from_state: ProofSpentState,
        to_state: ProofSpentState,
        conn: Connection,
        quote_id: Optional[str] = None,
    ) -> None:
        """Moves all proofs from `from_state` to `to_state` inside the transaction `conn`.

        Raises:
            TokenAlreadySpentError: If a proof is already spent.
            ProofsPendingError: If a proof is pending.
            TransactionError: If a proof is in any other unexpected state.
        """
        for p in proofs:
            ok = await self.crud.transition_proof_state(
                proof=p,
                from_state=from_state,
                to_state=to_state,
                quote_id=quote_id,
                db=self.db,
                conn=conn,
            )
            if ok:
                continue
            states = await self.crud.get_proofs_states(
                Ys=[p.Y], db=self.db, conn=conn
            )
            current = states.get(p.Y)
            logger.trace(f"proof {p.Y} is {current}, expected {from_state}")
            if current == ProofSpentState.spent:
                raise TokenAlreadySpentError()
            if current == ProofSpentState.pending:
                raise ProofsPendingError()
            raise TransactionError(f"proof is {current}, expected {from_state}.")

    async def _set_mint_quote_paid(
        self, quote_id: str, conn: Optional[Connection] = None
    ) -> bool:
        """Marks an unpaid mint quote as paid.

        Returns:
            bool: False if the quote was not unpaid anymore.
        """
        async with self.db.get_connection(
            conn,
            lock_table="mint_quotes",
            lock_select_statement=f"quote='{quote_id}'",
        ) as conn:
            ok = await self.crud.update_mint_quote_state(
                quote_id=quote_id,
                from_state=MintQuoteState.unpaid,
                to_state=MintQuoteState.paid,
                db=self.db,
                conn=conn,
            )
        if ok:
            logger.trace(f"crud: set mint quote {quote_id} as PAID")
        return ok

    async def _set_mint_quote_issued(self, quote: MintQuote, conn: Connection) -> None:
        """Marks a paid mint quote as issued inside the transaction `conn`.

        Raises:
            QuoteAlreadyIssuedError: If the quote was issued before.
            QuoteNotPaidError: If the quote is not paid.
        """
        ok = await self.crud.update_mint_quote_state(
            quote_id=quote.quote,
            from_state=MintQuoteState.paid,
            to_state=MintQuoteState.issued,
            db=self.db,
            conn=conn,
        )
        if ok:
            logger.trace(f"crud: set mint quote {quote.quote} as ISSUED")
            return
        quote_db = await self.crud.get_mint_quote(
            quote_id=quote.quote, db=self.db, conn=conn
        )
        if not quote_db:
            raise QuoteNotFoundError(quote.quote)
        if quote_db.issued:
            raise QuoteAlreadyIssuedError()
        raise QuoteNotPaidError()

    async def _set_melt_quote_pending(
        self,
        quote: MeltQuote,
        proofs: List[Proof],
        outputs: Optional[List[BlindedMessage]] = None,
    ) -> MeltQuote:
        """Reserves the proofs and the melt quote for a payment.

        The proofs go from unspent to pending and the quote from unpaid to pending in a
        single transaction. Change outputs are stored without a signature so that they
        can't be used in another request while the payment is in flight.

        Raises:
            TokenAlreadySpentError: If a proof is already spent.
            ProofsPendingError: If a proof is pending.
            QuotePendingError: If the quote is already pending.
            OutputsAlreadySignedError: If a change output is already known.
        """
        quote_copy = quote.model_copy()
        async with self.db.get_connection(lock_table="proofs") as conn:
            await self._transition_proofs(
                proofs,
                ProofSpentState.unspent,
                ProofSpentState.pending,
                conn=conn,
                quote_id=quote.quote,
            )
            quote_copy.state = MeltQuoteState.pending
            ok = await self.crud.update_melt_quote(
                quote=quote_copy,
                from_state=MeltQuoteState.unpaid,
                db=self.db,
                conn=conn,
            )
            if not ok:
                quote_db = await self.crud.get_melt_quote(
                    quote_id=quote.quote, db=self.db, conn=conn
                )
                if quote_db and quote_db.paid:
                    raise TransactionError("melt quote already paid.")
                raise QuotePendingError()
            for output in outputs or []:
                stored = await self.crud.store_blinded_message(
                    output=output, melt_quote_id=quote.quote, db=self.db, conn=conn
                )
                if not stored:
                    raise OutputsAlreadySignedError()
        logger.trace(f"crud: set melt quote {quote.quote} as PENDING")
        return quote_copy

    async def _unset_melt_quote_pending(
        self, quote: MeltQuote, conn: Optional[Connection] = None
    ) -> MeltQuote:
        """Releases a failed payment: the quote is unpaid again and its proofs unspent.
        Unsigned change outputs of the quote are deleted.

        A quote that is not pending anymore was settled or released concurrently and is
        returned as it is.

        Raises:
            QuoteNotFoundError: If the quote does not exist.
        """
        async with self.db.get_connection(conn, lock_table="proofs") as conn:
            quote_db = await self.crud.get_melt_quote(
                quote_id=quote.quote, db=self.db, conn=conn
            )
            if not quote_db:
                raise QuoteNotFoundError(quote.quote)
            if not quote_db.pending:
                logger.debug(f"Melt quote {quote.quote} is already {quote_db.state}")
                return quote_db
            proofs = await self.crud.get_pending_proofs_for_quote(
                quote_id=quote.quote, db=self.db, conn=conn
            )
            await self._transition_proofs(
                proofs, ProofSpentState.pending, ProofSpentState.unspent, conn=conn
            )
            quote_db.state = MeltQuoteState.unpaid
            await self.crud.update_melt_quote(
                quote=quote_db,
                from_state=MeltQuoteState.pending,
                db=self.db,
                conn=conn,
            )
            await self.crud.delete_blinded_messages_melt_id(
                melt_id=quote.quote, db=self.db, conn=conn
            )
        logger.trace(f"crud: set melt quote {quote.quote} as UNPAID")
        return quote_db
