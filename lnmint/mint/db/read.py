from typing import List, Optional

from ...core.base import ProofSpentState, ProofState
from ...core.db import Connection, Database
from ..crud import LedgerCrud


class DbReadHelper:
    db: Database
    crud: LedgerCrud

    def __init__(self, db: Database, crud: LedgerCrud) -> None:
        self.db = db
        self.crud = crud

    async def get_proofs_states(
        self, Ys: List[str], conn: Optional[Connection] = None
    ) -> List[ProofState]:
        """Checks if provided proofs are spent or are pending.
        Used by wallets to check if their proofs have been redeemed by a receiver or they are still in-flight in a transaction.

        Returns a list in the same order as the provided Ys. A Y the mint has never seen is
        reported as unspent.

        Args:
            Ys (List[str]): List of Y's of proofs to check

        Returns:
            List[ProofState]: State of each proof
        """
        async with self.db.get_connection(conn) as conn:
            known = await self.crud.get_proofs_states(Ys=Ys, db=self.db, conn=conn)
        return [
            ProofState(Y=Y, state=known.get(Y, ProofSpentState.unspent)) for Y in Ys
        ]
