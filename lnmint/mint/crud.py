import json
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..core.base import (
    BlindedMessage,
    BlindedSignature,
    MeltQuote,
    MeltQuoteState,
    MintKeyset,
    MintQuote,
    MintQuoteState,
    Proof,
    ProofSpentState,
)
from ..core.db import (
    Connection,
    Database,
)


def _in_clause(prefix: str, values: List[str]):
    """Builds a `(:p_0, :p_1, ...)` clause and its bind parameters."""
    params = {f"{prefix}_{i}": v for i, v in enumerate(values)}
    clause = ", ".join([f":{k}" for k in params])
    return f"({clause})", params


class LedgerCrud(ABC):
    """
    Database interface for the mint.

    This class needs to be overloaded by any app that imports the mint and wants
    to use their own database.
    """

    @abstractmethod
    async def store_keyset(
        self,
        *,
        db: Database,
        keyset: MintKeyset,
        conn: Optional[Connection] = None,
    ) -> None: ...

    @abstractmethod
    async def get_keyset(
        self,
        *,
        db: Database,
        seed: str,
        id: Optional[str] = None,
        unit: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> List[MintKeyset]: ...

    @abstractmethod
    async def update_keyset(
        self,
        *,
        db: Database,
        keyset: MintKeyset,
        conn: Optional[Connection] = None,
    ) -> None: ...

    @abstractmethod
    async def get_balance(
        self,
        *,
        db: Database,
        keyset_id: str,
        conn: Optional[Connection] = None,
    ) -> int: ...

    @abstractmethod
    async def get_proofs_states(
        self,
        *,
        db: Database,
        Ys: List[str],
        conn: Optional[Connection] = None,
    ) -> Dict[str, ProofSpentState]: ...

    @abstractmethod
    async def transition_proof_state(
        self,
        *,
        db: Database,
        proof: Proof,
        from_state: ProofSpentState,
        to_state: ProofSpentState,
        quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool: ...

    @abstractmethod
    async def get_pending_proofs_for_quote(
        self,
        *,
        db: Database,
        quote_id: str,
        conn: Optional[Connection] = None,
    ) -> List[Proof]: ...

    @abstractmethod
    async def store_blinded_message(
        self,
        *,
        db: Database,
        output: BlindedMessage,
        mint_quote_id: Optional[str] = None,
        melt_quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool: ...

    @abstractmethod
    async def store_promise(
        self,
        *,
        db: Database,
        B_: str,
        promise: BlindedSignature,
        mint_quote_id: Optional[str] = None,
        melt_quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool: ...

    @abstractmethod
    async def get_promises(
        self,
        *,
        db: Database,
        b_s: List[str],
        conn: Optional[Connection] = None,
    ) -> Dict[str, BlindedSignature]: ...

    @abstractmethod
    async def get_known_outputs(
        self,
        *,
        db: Database,
        b_s: List[str],
        conn: Optional[Connection] = None,
    ) -> List[str]: ...

    @abstractmethod
    async def get_blinded_messages_melt_id(
        self,
        *,
        db: Database,
        melt_id: str,
        conn: Optional[Connection] = None,
    ) -> List[BlindedMessage]: ...

    @abstractmethod
    async def delete_blinded_messages_melt_id(
        self,
        *,
        db: Database,
        melt_id: str,
        conn: Optional[Connection] = None,
    ) -> None: ...

    @abstractmethod
    async def store_mint_quote(
        self,
        *,
        db: Database,
        quote: MintQuote,
        conn: Optional[Connection] = None,
    ) -> None: ...

    @abstractmethod
    async def get_mint_quote(
        self,
        *,
        db: Database,
        quote_id: Optional[str] = None,
        checking_id: Optional[str] = None,
        request: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[MintQuote]: ...

    @abstractmethod
    async def update_mint_quote_state(
        self,
        *,
        db: Database,
        quote_id: str,
        from_state: MintQuoteState,
        to_state: MintQuoteState,
        conn: Optional[Connection] = None,
    ) -> bool: ...

    @abstractmethod
    async def get_expired_mint_quotes(
        self,
        *,
        db: Database,
        now: int,
        conn: Optional[Connection] = None,
    ) -> List[MintQuote]: ...

    @abstractmethod
    async def delete_unpaid_mint_quote(
        self,
        *,
        db: Database,
        quote_id: str,
        conn: Optional[Connection] = None,
    ) -> bool: ...

    @abstractmethod
    async def store_melt_quote(
        self,
        *,
        db: Database,
        quote: MeltQuote,
        conn: Optional[Connection] = None,
    ) -> None: ...

    @abstractmethod
    async def get_melt_quote(
        self,
        *,
        db: Database,
        quote_id: Optional[str] = None,
        checking_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[MeltQuote]: ...

    @abstractmethod
    async def get_melt_quotes_by_state(
        self,
        *,
        db: Database,
        state: MeltQuoteState,
        conn: Optional[Connection] = None,
    ) -> List[MeltQuote]: ...

    @abstractmethod
    async def update_melt_quote(
        self,
        *,
        db: Database,
        quote: MeltQuote,
        from_state: MeltQuoteState,
        conn: Optional[Connection] = None,
    ) -> bool: ...


class LedgerCrudSqlite(LedgerCrud):
    """Implementation of LedgerCrud for sqlite and postgres.

    Every state update is a compare-and-set: it only applies if the row is still
    in the expected state and reports whether it did.
    """

    async def store_keyset(
        self,
        *,
        db: Database,
        keyset: MintKeyset,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('keysets')}
            (id, derivation_path, unit, active, amounts, valid_from, valid_to)
            VALUES (:id, :derivation_path, :unit, :active, :amounts, :valid_from, :valid_to)
            """,
            {
                "id": keyset.id,
                "derivation_path": keyset.derivation_path,
                "unit": keyset.unit.name,
                "active": keyset.active,
                "amounts": json.dumps(keyset.amounts),
                "valid_from": keyset.valid_from or db.timestamp_now,
                "valid_to": keyset.valid_to,
            },
        )

    async def get_keyset(
        self,
        *,
        db: Database,
        seed: str,
        id: Optional[str] = None,
        unit: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> List[MintKeyset]:
        clauses = []
        values: Dict[str, str] = {}
        if id:
            clauses.append("id = :id")
            values["id"] = id
        if unit:
            clauses.append("unit = :unit")
            values["unit"] = unit
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await (conn or db).fetchall(
            f"""
            SELECT * from {db.table_with_schema('keysets')}
            {where}
            ORDER BY valid_from
            """,
            values,
        )
        return [MintKeyset.from_row(row, seed=seed) for row in rows]

    async def update_keyset(
        self,
        *,
        db: Database,
        keyset: MintKeyset,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('keysets')}
            SET active = :active, valid_to = :valid_to
            WHERE id = :id
            """,
            {
                "id": keyset.id,
                "active": keyset.active,
                "valid_to": keyset.valid_to,
            },
        )

    async def get_balance(
        self,
        *,
        db: Database,
        keyset_id: str,
        conn: Optional[Connection] = None,
    ) -> int:
        issued = await (conn or db).fetchone(
            f"""
            SELECT balance FROM {db.table_with_schema('balance_issued')}
            WHERE keyset = :keyset
            """,
            {"keyset": keyset_id},
        )
        redeemed = await (conn or db).fetchone(
            f"""
            SELECT balance FROM {db.table_with_schema('balance_redeemed')}
            WHERE keyset = :keyset
            """,
            {"keyset": keyset_id},
        )
        issued_amount = int(issued["balance"]) if issued else 0
        redeemed_amount = int(redeemed["balance"]) if redeemed else 0
        return issued_amount - redeemed_amount

    async def get_proofs_states(
        self,
        *,
        db: Database,
        Ys: List[str],
        conn: Optional[Connection] = None,
    ) -> Dict[str, ProofSpentState]:
        if not Ys:
            return {}
        clause, values = _in_clause("y", Ys)
        rows = await (conn or db).fetchall(
            f"""
            SELECT y, state from {db.table_with_schema('proofs')}
            WHERE y IN {clause}
            """,
            values,
        )
        return {row["y"]: ProofSpentState(row["state"]) for row in rows}

    async def transition_proof_state(
        self,
        *,
        db: Database,
        proof: Proof,
        from_state: ProofSpentState,
        to_state: ProofSpentState,
        quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        values = {
            "y": proof.Y,
            "from_state": from_state.value,
            "to_state": to_state.value,
            "melt_quote": quote_id,
            "updated": db.timestamp_now,
        }
        if from_state == ProofSpentState.unspent:
            # an unseen proof is unspent: insert it, or take over a row that was
            # reverted to unspent before
            result = await (conn or db).execute(
                f"""
                INSERT INTO {db.table_with_schema('proofs')}
                (y, id, amount, secret, c, witness, state, melt_quote, created, updated)
                VALUES (:y, :id, :amount, :secret, :c, :witness, :to_state, :melt_quote, :updated, :updated)
                ON CONFLICT (y) DO UPDATE SET
                    state = :to_state, melt_quote = :melt_quote, updated = :updated
                WHERE {db.table_with_schema('proofs')}.state = :from_state
                """,
                {
                    **values,
                    "id": proof.id,
                    "amount": proof.amount,
                    "secret": proof.secret,
                    "c": proof.C,
                    "witness": proof.witness,
                },
            )
        else:
            result = await (conn or db).execute(
                f"""
                UPDATE {db.table_with_schema('proofs')}
                SET state = :to_state, melt_quote = :melt_quote, updated = :updated
                WHERE y = :y AND state = :from_state
                """,
                values,
            )
        return result.rowcount == 1

    async def get_pending_proofs_for_quote(
        self,
        *,
        db: Database,
        quote_id: str,
        conn: Optional[Connection] = None,
    ) -> List[Proof]:
        rows = await (conn or db).fetchall(
            f"""
            SELECT * from {db.table_with_schema('proofs')}
            WHERE melt_quote = :quote_id AND state = :state
            """,
            {"quote_id": quote_id, "state": ProofSpentState.pending.value},
        )
        return [Proof.from_row(r) for r in rows]

    async def store_blinded_message(
        self,
        *,
        db: Database,
        output: BlindedMessage,
        mint_quote_id: Optional[str] = None,
        melt_quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        result = await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('promises')}
            (b_, id, amount, mint_quote, melt_quote, created)
            VALUES (:b_, :id, :amount, :mint_quote, :melt_quote, :created)
            ON CONFLICT (b_) DO NOTHING
            """,
            {
                "b_": output.B_,
                "id": output.id,
                "amount": output.amount,
                "mint_quote": mint_quote_id,
                "melt_quote": melt_quote_id,
                "created": db.timestamp_now,
            },
        )
        return result.rowcount == 1

    async def store_promise(
        self,
        *,
        db: Database,
        B_: str,
        promise: BlindedSignature,
        mint_quote_id: Optional[str] = None,
        melt_quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        assert promise.dleq, "promise has no DLEQ proof"
        values = {
            "b_": B_,
            "id": promise.id,
            "amount": promise.amount,
            "c_": promise.C_,
            "dleq_e": promise.dleq.e,
            "dleq_s": promise.dleq.s,
            "mint_quote": mint_quote_id,
            "melt_quote": melt_quote_id,
            "now": db.timestamp_now,
        }
        # change outputs reserved by the same melt are signed in place, any other
        # known output is left untouched
        result = await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('promises')}
            (b_, id, amount, c_, dleq_e, dleq_s, mint_quote, melt_quote, created, signed_at)
            VALUES (:b_, :id, :amount, :c_, :dleq_e, :dleq_s, :mint_quote, :melt_quote, :now, :now)
            ON CONFLICT (b_) DO UPDATE SET
                id = :id, amount = :amount, c_ = :c_, dleq_e = :dleq_e,
                dleq_s = :dleq_s, signed_at = :now
            WHERE {db.table_with_schema('promises')}.c_ IS NULL
                AND {db.table_with_schema('promises')}.melt_quote = :melt_quote
            """,
            values,
        )
        return result.rowcount == 1

    async def get_promises(
        self,
        *,
        db: Database,
        b_s: List[str],
        conn: Optional[Connection] = None,
    ) -> Dict[str, BlindedSignature]:
        if not b_s:
            return {}
        clause, values = _in_clause("b", b_s)
        rows = await (conn or db).fetchall(
            f"""
            SELECT * from {db.table_with_schema('promises')}
            WHERE b_ IN {clause} AND c_ IS NOT NULL
            """,
            values,
        )
        return {row["b_"]: BlindedSignature.from_row(row) for row in rows}

    async def get_known_outputs(
        self,
        *,
        db: Database,
        b_s: List[str],
        conn: Optional[Connection] = None,
    ) -> List[str]:
        if not b_s:
            return []
        clause, values = _in_clause("b", b_s)
        rows = await (conn or db).fetchall(
            f"""
            SELECT b_ from {db.table_with_schema('promises')}
            WHERE b_ IN {clause}
            """,
            values,
        )
        return [row["b_"] for row in rows]

    async def get_blinded_messages_melt_id(
        self,
        *,
        db: Database,
        melt_id: str,
        conn: Optional[Connection] = None,
    ) -> List[BlindedMessage]:
        rows = await (conn or db).fetchall(
            f"""
            SELECT * from {db.table_with_schema('promises')}
            WHERE melt_quote = :melt_id AND c_ IS NULL
            """,
            {"melt_id": melt_id},
        )
        return [BlindedMessage.from_row(r) for r in rows]

    async def delete_blinded_messages_melt_id(
        self,
        *,
        db: Database,
        melt_id: str,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            DELETE FROM {db.table_with_schema('promises')}
            WHERE melt_quote = :melt_id AND c_ IS NULL
            """,
            {"melt_id": melt_id},
        )

    async def store_mint_quote(
        self,
        *,
        db: Database,
        quote: MintQuote,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('mint_quotes')}
            (quote, method, request, checking_id, unit, amount, state, created_time, paid_time, expiry)
            VALUES (:quote, :method, :request, :checking_id, :unit, :amount, :state, :created_time, :paid_time, :expiry)
            """,
            {
                "quote": quote.quote,
                "method": quote.method,
                "request": quote.request,
                "checking_id": quote.checking_id,
                "unit": quote.unit,
                "amount": quote.amount,
                "state": quote.state.value,
                "created_time": quote.created_time,
                "paid_time": quote.paid_time,
                "expiry": quote.expiry,
            },
        )

    async def get_mint_quote(
        self,
        *,
        db: Database,
        quote_id: Optional[str] = None,
        checking_id: Optional[str] = None,
        request: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[MintQuote]:
        clauses = []
        values: Dict[str, str] = {}
        if quote_id:
            clauses.append("quote = :quote_id")
            values["quote_id"] = quote_id
        if checking_id:
            clauses.append("checking_id = :checking_id")
            values["checking_id"] = checking_id
        if request:
            clauses.append("request = :request")
            values["request"] = request
        if not clauses:
            raise ValueError("No search criteria")
        row = await (conn or db).fetchone(
            f"""
            SELECT * from {db.table_with_schema('mint_quotes')}
            WHERE {' AND '.join(clauses)}
            """,
            values,
        )
        return MintQuote.from_row(row) if row else None

    async def update_mint_quote_state(
        self,
        *,
        db: Database,
        quote_id: str,
        from_state: MintQuoteState,
        to_state: MintQuoteState,
        conn: Optional[Connection] = None,
    ) -> bool:
        values = {
            "quote": quote_id,
            "from_state": from_state.value,
            "to_state": to_state.value,
        }
        if to_state == MintQuoteState.paid:
            set_paid_time = ", paid_time = :paid_time"
            values["paid_time"] = db.timestamp_now
        else:
            set_paid_time = ""
        result = await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('mint_quotes')}
            SET state = :to_state{set_paid_time}
            WHERE quote = :quote AND state = :from_state
            """,
            values,
        )
        return result.rowcount == 1

    async def get_expired_mint_quotes(
        self,
        *,
        db: Database,
        now: int,
        conn: Optional[Connection] = None,
    ) -> List[MintQuote]:
        rows = await (conn or db).fetchall(
            f"""
            SELECT * FROM {db.table_with_schema('mint_quotes')}
            WHERE state = :state AND expiry IS NOT NULL AND expiry < :now
            """,
            {"state": MintQuoteState.unpaid.value, "now": now},
        )
        return [MintQuote.from_row(row) for row in rows]

    async def delete_unpaid_mint_quote(
        self,
        *,
        db: Database,
        quote_id: str,
        conn: Optional[Connection] = None,
    ) -> bool:
        result = await (conn or db).execute(
            f"""
            DELETE FROM {db.table_with_schema('mint_quotes')}
            WHERE quote = :quote AND state = :state
            """,
            {"quote": quote_id, "state": MintQuoteState.unpaid.value},
        )
        return result.rowcount == 1

    async def store_melt_quote(
        self,
        *,
        db: Database,
        quote: MeltQuote,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('melt_quotes')}
            (quote, method, request, checking_id, unit, amount, fee_reserve, state, created_time, paid_time, fee_paid, payment_preimage, expiry, change)
            VALUES (:quote, :method, :request, :checking_id, :unit, :amount, :fee_reserve, :state, :created_time, :paid_time, :fee_paid, :payment_preimage, :expiry, :change)
            """,
            {
                "quote": quote.quote,
                "method": quote.method,
                "request": quote.request,
                "checking_id": quote.checking_id,
                "unit": quote.unit,
                "amount": quote.amount,
                "fee_reserve": quote.fee_reserve,
                "state": quote.state.value,
                "created_time": quote.created_time,
                "paid_time": quote.paid_time,
                "fee_paid": quote.fee_paid,
                "payment_preimage": quote.payment_preimage,
                "expiry": quote.expiry,
                "change": None,
            },
        )

    async def get_melt_quote(
        self,
        *,
        db: Database,
        quote_id: Optional[str] = None,
        checking_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[MeltQuote]:
        clauses = []
        values: Dict[str, str] = {}
        if quote_id:
            clauses.append("quote = :quote_id")
            values["quote_id"] = quote_id
        if checking_id:
            clauses.append("checking_id = :checking_id")
            values["checking_id"] = checking_id
        if not clauses:
            raise ValueError("No search criteria")
        row = await (conn or db).fetchone(
            f"""
            SELECT * from {db.table_with_schema('melt_quotes')}
            WHERE {' AND '.join(clauses)}
            ORDER BY created_time DESC
            """,
            values,
        )
        return MeltQuote.from_row(row) if row else None

    async def get_melt_quotes_by_state(
        self,
        *,
        db: Database,
        state: MeltQuoteState,
        conn: Optional[Connection] = None,
    ) -> List[MeltQuote]:
        rows = await (conn or db).fetchall(
            f"""
            SELECT * from {db.table_with_schema('melt_quotes')}
            WHERE state = :state
            """,
            {"state": state.value},
        )
        return [MeltQuote.from_row(r) for r in rows]

    async def update_melt_quote(
        self,
        *,
        db: Database,
        quote: MeltQuote,
        from_state: MeltQuoteState,
        conn: Optional[Connection] = None,
    ) -> bool:
        result = await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('melt_quotes')}
            SET state = :state, fee_paid = :fee_paid, paid_time = :paid_time,
                payment_preimage = :payment_preimage, change = :change
            WHERE quote = :quote AND state = :from_state
            """,
            {
                "state": quote.state.value,
                "fee_paid": quote.fee_paid,
                "paid_time": quote.paid_time,
                "payment_preimage": quote.payment_preimage,
                "change": (
                    json.dumps([s.model_dump() for s in quote.change])
                    if quote.change
                    else None
                ),
                "quote": quote.quote,
                "from_state": from_state.value,
            },
        )
        return result.rowcount == 1
