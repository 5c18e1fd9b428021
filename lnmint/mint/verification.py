import time
from typing import List, Literal, Optional, Tuple, Union

from loguru import logger

from ..core.base import (
    Amount,
    BlindedMessage,
    BlindedSignature,
    Method,
    MintKeyset,
    Proof,
    Unit,
)
from ..core.db import Connection
from ..core.errors import (
    InvalidProofsError,
    KeysetExpiredError,
    KeysetInactiveError,
    KeysetNotFoundError,
    NoSecretInProofsError,
    NotAllowedError,
    OutputsAlreadySignedError,
    SecretTooLongError,
    TransactionAmountExceedsLimitError,
    TransactionAmountInvalidError,
    TransactionDuplicateInputsError,
    TransactionDuplicateOutputsError,
    TransactionError,
    TransactionMultipleUnitsError,
    TransactionNotBalancedError,
    TransactionUnitError,
)
from ..core.settings import settings
from .keysets import LedgerKeysets
from .protocols import SupportsBackends, SupportsDb
from .signing import LedgerSigning


class LedgerVerification(LedgerSigning, LedgerKeysets, SupportsDb, SupportsBackends):
    """Verification functions for the ledger."""

    async def verify_inputs_and_outputs(
        self,
        *,
        proofs: List[Proof],
        outputs: Optional[List[BlindedMessage]] = None,
        conn: Optional[Connection] = None,
    ):
        """Checks all proofs and outputs for validity.

        Warning: Does NOT check if the proofs were already spent. This is decided by the
        state transition of the proofs when they are consumed.

        Args:
            proofs (List[Proof]): List of proofs to check.
            outputs (Optional[List[BlindedMessage]], optional): List of outputs to check.
                Must be provided for a swap but not for a melt. Defaults to None.
            conn (Optional[Connection], optional): Database connection. Defaults to None.

        Raises:
            TransactionError: Criteria for provided proofs or outputs not met.
            InvalidProofsError: BDHKE verification failed.
        """
        # Verify inputs
        if not proofs:
            raise TransactionError("no proofs provided.")
        self._verify_request_length(proofs)
        # Verify amounts of inputs
        for p in proofs:
            self._verify_amount(p.amount)
        # Verify secret criteria
        if not all([self._verify_secret_criteria(p) for p in proofs]):
            raise TransactionError("secrets do not match criteria.")
        # verify that only unique proofs were used
        if not self._verify_no_duplicate_proofs(proofs):
            raise TransactionDuplicateInputsError()
        # Verify that the keysets are known and within their retention period
        for p in proofs:
            self._verify_keyset_retention(self.get_keyset_by_id(p.id))
        # Verify ecash signatures
        if not all([self.verify_proof(p) for p in proofs]):
            raise InvalidProofsError()

        if outputs is None:
            # If no outputs are provided, we are melting
            return

        # Verify outputs
        await self._verify_outputs(outputs, conn=conn)

        # Verify input and output amounts
        self._verify_equation_balanced(proofs, outputs)

    async def _verify_outputs(
        self,
        outputs: List[BlindedMessage],
        skip_amount_check=False,
        conn: Optional[Connection] = None,
    ):
        """Verify that the outputs are valid."""
        logger.trace(f"Verifying {len(outputs)} outputs.")
        if not outputs:
            raise TransactionError("no outputs provided.")
        self._verify_request_length(outputs)
        # Verify all outputs have the same keyset id
        if not all([o.id == outputs[0].id for o in outputs]):
            raise TransactionError("outputs have different keyset ids.")
        # Verify that the keyset id is known and active
        if outputs[0].id not in self.keysets:
            raise KeysetNotFoundError(outputs[0].id)
        if not self.keysets[outputs[0].id].active:
            raise KeysetInactiveError(outputs[0].id)
        # Verify amounts of outputs
        # we skip the amount check for change outputs (which can have amount 0)
        if not skip_amount_check:
            for o in outputs:
                self._verify_amount(o.amount)
        # verify that only unique outputs were used
        if not self._verify_no_duplicate_outputs(outputs):
            raise TransactionDuplicateOutputsError()
        # verify that outputs have not been signed or reserved previously
        signed_before = await self._check_outputs_issued_before(outputs, conn)
        if any(signed_before):
            raise OutputsAlreadySignedError()
        logger.trace(f"Verified {len(outputs)} outputs.")

    async def _check_outputs_issued_before(
        self,
        outputs: List[BlindedMessage],
        conn: Optional[Connection] = None,
    ) -> List[bool]:
        """Checks whether the provided outputs are already known to the mint, either
        signed or reserved as change of a pending melt.

        Args:
            outputs (List[BlindedMessage]): Outputs to check

        Returns:
            result (List[bool]): Whether outputs are already present in the database.
        """
        async with self.db.get_connection(conn) as conn:
            known = await self.crud.get_known_outputs(
                b_s=[output.B_ for output in outputs], db=self.db, conn=conn
            )
        return [output.B_ in known for output in outputs]

    def _verify_secret_criteria(self, proof: Proof) -> Literal[True]:
        """Verifies that a secret is present and is not too long (DOS prevention)."""
        if proof.secret is None or proof.secret == "":
            raise NoSecretInProofsError()
        if len(proof.secret) > settings.mint_max_secret_length:
            raise SecretTooLongError(
                f"secret too long. max: {settings.mint_max_secret_length}"
            )
        return True

    def _verify_keyset_retention(self, keyset: MintKeyset) -> None:
        """Inactive keysets are only accepted for `mint_inactive_keyset_retention_days`
        after they were rotated out. Without a retention period they are accepted forever.
        """
        retention_days = settings.mint_inactive_keyset_retention_days
        if keyset.active or not retention_days or not keyset.valid_to:
            return
        if keyset.valid_to + retention_days * 24 * 3600 < int(time.time()):
            raise KeysetExpiredError(keyset.id)

    def _verify_no_duplicate_proofs(self, proofs: List[Proof]) -> bool:
        secrets = [p.secret for p in proofs]
        if len(secrets) != len(list(set(secrets))):
            return False
        return True

    def _verify_no_duplicate_outputs(self, outputs: List[BlindedMessage]) -> bool:
        B_s = [od.B_ for od in outputs]
        if len(B_s) != len(list(set(B_s))):
            return False
        return True

    def _verify_amount(self, amount: int) -> int:
        """Any amount used should be positive and not larger than 2^MAX_ORDER."""
        valid = amount > 0 and amount < 2**settings.max_order
        if not valid:
            raise TransactionAmountInvalidError(f"invalid amount: {amount}")
        return amount

    def _verify_request_length(self, items: Union[List[Proof], List[BlindedMessage]]):
        if len(items) > settings.mint_max_request_length:
            raise NotAllowedError(
                f"too many inputs or outputs. max: {settings.mint_max_request_length}"
            )

    def _verify_units_match(
        self,
        proofs: List[Proof],
        outs: Union[List[BlindedSignature], List[BlindedMessage]],
    ) -> Unit:
        """Verifies that the units of the inputs and outputs match."""
        units_proofs = [self.keysets[p.id].unit for p in proofs]
        units_outputs = [self.keysets[o.id].unit for o in outs if o.id]
        if not len(set(units_proofs)) == 1:
            raise TransactionMultipleUnitsError("inputs have different units.")
        if not len(set(units_outputs)) == 1:
            raise TransactionMultipleUnitsError("outputs have different units.")
        if not units_proofs[0] == units_outputs[0]:
            raise TransactionUnitError(
                f"input unit {units_proofs[0].name} does not match output unit {units_outputs[0].name}."
            )
        return units_proofs[0]

    def _verify_equation_balanced(
        self,
        proofs: List[Proof],
        outs: Union[List[BlindedSignature], List[BlindedMessage]],
    ) -> None:
        """Verify that Σinputs - Σoutputs = 0.
        Outputs can be BlindedSignature or BlindedMessage.
        """
        if not proofs:
            raise TransactionError("no proofs provided.")
        if not outs:
            raise TransactionError("no outputs provided.")

        _ = self._verify_units_match(proofs, outs)
        sum_inputs = sum(self._verify_amount(p.amount) for p in proofs)
        sum_outputs = sum(self._verify_amount(o.amount) for o in outs)
        if not sum_outputs - sum_inputs == 0:
            raise TransactionNotBalancedError(
                f"inputs ({sum_inputs}) vs outputs ({sum_outputs}) are not balanced."
            )

    def _verify_and_get_unit_method(
        self, unit_str: str, method_str: str
    ) -> Tuple[Unit, Method]:
        """Verify that the unit is supported by the ledger."""
        try:
            method = Method[method_str]
            unit = Unit[unit_str]
        except KeyError:
            raise NotAllowedError(
                f"no support for method '{method_str}' with unit '{unit_str}'."
            )

        if not any([unit == k.unit for k in self.keysets.values()]):
            raise NotAllowedError(f"unit '{unit.name}' not supported in any keyset.")

        if not self.backends.get(method) or unit not in self.backends[method]:
            raise NotAllowedError(
                f"no support for method '{method.name}' with unit '{unit.name}'."
            )

        return unit, method

    async def _verify_mint_limits(self, amount: Amount) -> None:
        if settings.mint_peg_out_only:
            raise NotAllowedError("Mint does not allow minting new tokens.")
        if settings.mint_max_peg_in and amount.amount > settings.mint_max_peg_in:
            raise TransactionAmountExceedsLimitError(
                f"Maximum mint amount is {amount.unit.str(settings.mint_max_peg_in)}."
            )
        if settings.mint_max_balance:
            balance = await self.get_unit_balance(amount.unit)
            if balance + amount.amount > settings.mint_max_balance:
                raise NotAllowedError("Mint has reached maximum balance.")

    def _verify_melt_limits(self, amount: Amount) -> None:
        if settings.mint_max_peg_out and amount.amount > settings.mint_max_peg_out:
            raise TransactionAmountExceedsLimitError(
                f"Maximum melt amount is {amount.unit.str(settings.mint_max_peg_out)}."
            )
