import asyncio
import time
from typing import Dict, List, Mapping, Optional, Tuple

import bolt11
from loguru import logger

from ..core.base import (
    Amount,
    BlindedMessage,
    BlindedSignature,
    MeltQuote,
    MeltQuoteState,
    Method,
    MintKeyset,
    MintQuote,
    MintQuoteState,
    Proof,
    ProofSpentState,
    ProofState,
    Unit,
)
from ..core.crypto.b_dhke import hash_to_curve
from ..core.crypto.keys import derive_pubkey, random_hash
from ..core.crypto.secp import PublicKey
from ..core.db import Connection, Database
from ..core.errors import (
    CashuError,
    LightningError,
    LightningPaymentFailedError,
    NotAllowedError,
    PaymentUncertainError,
    QuoteAlreadyIssuedError,
    QuoteExpiredError,
    QuoteNotFoundError,
    QuoteNotPaidError,
    QuotePendingError,
    TransactionAmountInvalidError,
    TransactionError,
    TransactionNotBalancedError,
    TransactionUnitError,
)
from ..core.helpers import calculate_number_of_blank_outputs, sum_proofs
from ..core.models import (
    PostMeltQuoteRequest,
    PostMeltQuoteResponse,
    PostMintQuoteRequest,
)
from ..core.settings import settings
from ..core.split import amount_split
from ..lightning.base import (
    InvoiceResponse,
    LightningBackend,
    PaymentQuoteResponse,
    PaymentResponse,
    PaymentResult,
    PaymentStatus,
)
from .crud import LedgerCrud, LedgerCrudSqlite
from .db.read import DbReadHelper
from .db.write import DbWriteHelper
from .features import LedgerFeatures
from .tasks import LedgerTasks
from .verification import LedgerVerification


class Ledger(LedgerVerification, LedgerTasks, LedgerFeatures):
    backends: Mapping[Method, Mapping[Unit, LightningBackend]] = {}
    keysets: Dict[str, MintKeyset] = {}
    db: Database
    db_read: DbReadHelper
    db_write: DbWriteHelper
    invoice_listener_tasks: List[asyncio.Task] = []
    regular_tasks: List[asyncio.Task] = []
    disable_melt: bool = False
    pubkey: PublicKey

    def __init__(
        self,
        *,
        db: Database,
        seed: str,
        amounts: Optional[List[int]] = None,
        backends: Optional[Mapping[Method, Mapping[Unit, LightningBackend]]] = None,
        crud: Optional[LedgerCrud] = None,
    ) -> None:
        self.keysets: Dict[str, MintKeyset] = {}
        self.backends: Mapping[Method, Mapping[Unit, LightningBackend]] = {}
        self.invoice_listener_tasks: List[asyncio.Task] = []
        self.regular_tasks: List[asyncio.Task] = []
        self.disable_melt = False

        if not seed:
            raise Exception("seed not set")
        self.seed = seed

        self.db = db
        self.crud = crud or LedgerCrudSqlite()

        if backends:
            self.backends = backends

        if amounts:
            self.amounts = amounts
        else:
            self.amounts = [2**n for n in range(settings.max_order)]

        self.pubkey = derive_pubkey(self.seed)
        self.db_read = DbReadHelper(self.db, self.crud)
        self.db_write = DbWriteHelper(self.db, self.crud, self.db_read)

    # ------- STARTUP -------

    async def startup_ledger(self) -> None:
        await self.init_keysets()
        await self._check_backends()
        await self._check_pending_melt_quotes()
        self.regular_tasks.append(asyncio.create_task(self._run_regular_tasks()))
        self.invoice_listener_tasks = await self.dispatch_listeners()

    async def _run_regular_tasks(self) -> None:
        while True:
            await asyncio.sleep(settings.mint_regular_tasks_interval_seconds)
            try:
                await self._check_pending_melt_quotes()
                await self._prune_expired_mint_quotes()
            except Exception as e:
                logger.error(f"Ledger regular task failed: {e}")

    async def _check_backends(self) -> None:
        for method in self.backends:
            for unit in self.backends[method]:
                logger.info(
                    f"Using {self.backends[method][unit].__class__.__name__} backend for"
                    f" method: '{method.name}' and unit: '{unit.name}'"
                )
                status = await self.backends[method][unit].status()
                if status.error_message:
                    raise LightningError(
                        "The backend for"
                        f" {self.backends[method][unit].__class__.__name__} isn't"
                        f" working properly: '{status.error_message}'"
                    )
                logger.info(f"Backend balance: {status.balance}")

        logger.info(f"Data dir: {settings.mint_dir}")

    async def shutdown_ledger(self) -> None:
        logger.debug("Shutting down invoice listeners")
        for task in self.invoice_listener_tasks:
            task.cancel()
        logger.debug("Shutting down regular tasks")
        for task in self.regular_tasks:
            task.cancel()
        logger.debug("Disconnecting from database")
        await self.db.engine.dispose()

    async def _check_pending_melt_quotes(self) -> None:
        """Checks all pending melt quotes with the backend and either settles or releases
        them once the outcome of their payment is known.
        """
        pending_melt_quotes = await self.crud.get_melt_quotes_by_state(
            state=MeltQuoteState.pending, db=self.db
        )
        if not pending_melt_quotes:
            return
        logger.info(f"Checking {len(pending_melt_quotes)} pending melt quotes")
        for quote in pending_melt_quotes:
            try:
                quote = await self.get_melt_quote(quote_id=quote.quote)
                logger.info(f"Melt quote {quote.quote} state: {quote.state}")
            except CashuError as e:
                logger.error(f"Could not check melt quote {quote.quote}: {e.detail}")

    # ------- TRANSACTIONS -------

    async def mint_quote(self, quote_request: PostMintQuoteRequest) -> MintQuote:
        """Creates a mint quote and stores it in the database.

        Args:
            quote_request (PostMintQuoteRequest): Mint quote request.

        Raises:
            Exception: Quote creation failed.

        Returns:
            MintQuote: Mint quote object.
        """
        logger.trace("called mint_quote")
        if not quote_request.amount > 0:
            raise TransactionAmountInvalidError("amount must be positive")

        unit, method = self._verify_and_get_unit_method(
            quote_request.unit, Method.bolt11.name
        )
        await self._verify_mint_limits(Amount(unit=unit, amount=quote_request.amount))

        logger.trace(f"requesting invoice for {unit.str(quote_request.amount)}")
        invoice_response: InvoiceResponse = await self.backends[method][
            unit
        ].create_invoice(
            amount=Amount(unit=unit, amount=quote_request.amount),
            memo=quote_request.description,
        )
        logger.trace(
            f"got invoice {invoice_response.payment_request} with checking id"
            f" {invoice_response.checking_id}"
        )

        if not (
            invoice_response.ok
            and invoice_response.payment_request
            and invoice_response.checking_id
        ):
            raise LightningError(
                f"could not fetch bolt11 payment request from backend: {invoice_response.error_message}"
            )

        # the backend may not report an expiry, the invoice always has one
        expiry = invoice_response.expiry
        if expiry is None:
            invoice_obj = bolt11.decode(invoice_response.payment_request)
            if invoice_obj.expiry is not None:
                expiry = invoice_obj.date + invoice_obj.expiry

        # NOTE: we normalize the request to lowercase to avoid case sensitivity
        request = invoice_response.payment_request.lower()

        quote = MintQuote(
            quote=random_hash(),
            method=method.name,
            request=request,
            checking_id=invoice_response.checking_id,
            unit=unit.name,
            amount=quote_request.amount,
            state=MintQuoteState.unpaid,
            created_time=int(time.time()),
            expiry=expiry,
        )
        await self.crud.store_mint_quote(quote=quote, db=self.db)
        logger.debug(f"Created mint quote {quote.quote} for {unit.str(quote.amount)}")
        return quote

    async def get_mint_quote(self, quote_id: str) -> MintQuote:
        """Returns a mint quote. If the quote is not paid, checks with the backend if the associated request is paid.

        Args:
            quote_id (str): ID of the mint quote.

        Raises:
            QuoteNotFoundError: Quote not found.

        Returns:
            MintQuote: Mint quote object.
        """
        quote = await self.crud.get_mint_quote(quote_id=quote_id, db=self.db)
        if not quote:
            raise QuoteNotFoundError(quote_id)

        if not quote.unpaid:
            return quote

        unit, method = self._verify_and_get_unit_method(quote.unit, quote.method)
        logger.trace(f"Lightning: checking invoice {quote.checking_id}")
        status: PaymentStatus = await self.backends[method][unit].get_invoice_status(
            quote.checking_id
        )
        if status.settled:
            # the invoice listener could have marked it paid in the mean time
            await self.db_write._set_mint_quote_paid(quote_id)
            quote = await self.crud.get_mint_quote(quote_id=quote_id, db=self.db)
            if not quote:
                raise QuoteNotFoundError(quote_id)
        return quote

    async def mint(
        self,
        *,
        outputs: List[BlindedMessage],
        quote_id: str,
    ) -> List[BlindedSignature]:
        """Mints new coins if quote with `quote_id` was paid. Ingest blind messages `outputs` and returns blind signatures `promises`.

        The quote is marked as issued in the same transaction in which the signatures are
        stored. Only after this transaction is committed are the signatures returned. A
        caller that lost the response can recover the signatures with `restore`.

        Args:
            outputs (List[BlindedMessage]): Outputs (blinded messages) to sign.
            quote_id (str): Mint quote id.

        Raises:
            QuoteNotPaidError: Quote not paid.
            QuoteAlreadyIssuedError: Quote already issued.
            QuoteExpiredError: Quote expired before it was paid.
            TransactionNotBalancedError: Amount to mint does not match quote amount.

        Returns:
            List[BlindedSignature]: Signatures on the outputs.
        """
        await self._verify_outputs(outputs)
        sum_amount_outputs = sum([b.amount for b in outputs])
        # we already know from _verify_outputs that all outputs have the same unit because they have the same keyset
        output_unit = self.keysets[outputs[0].id].unit

        quote = await self.get_mint_quote(quote_id)
        if quote.issued:
            raise QuoteAlreadyIssuedError()
        if not quote.paid:
            if quote.expired:
                raise QuoteExpiredError()
            raise QuoteNotPaidError()
        if not quote.unit == output_unit.name:
            raise TransactionUnitError("quote unit does not match output unit")
        if not quote.amount == sum_amount_outputs:
            raise TransactionNotBalancedError(
                f"amount to mint ({sum_amount_outputs}) does not match quote amount ({quote.amount})"
            )

        promises = self._sign_blinded_messages(outputs)
        async with self.db.get_connection(
            lock_table="mint_quotes",
            lock_select_statement=f"quote='{quote_id}'",
        ) as conn:
            await self.db_write._set_mint_quote_issued(quote, conn)
            await self._store_promises(outputs, promises, conn, mint_quote_id=quote_id)

        logger.debug(f"Issued {output_unit.str(quote.amount)} for quote {quote_id}")
        return promises

    def create_internal_melt_quote(
        self, mint_quote: MintQuote, unit: Unit
    ) -> PaymentQuoteResponse:
        """Quote for paying an invoice of this mint, which is settled without the backend."""
        if not mint_quote.unit == unit.name:
            raise TransactionUnitError("units do not match")
        if not mint_quote.method == Method.bolt11.name:
            raise TransactionError("methods do not match")
        if not mint_quote.unpaid:
            raise TransactionError(f"mint quote is not unpaid: {mint_quote.state}")

        internal_fee = Amount(unit, 0)  # no internal fees
        amount = Amount(unit, mint_quote.amount)

        payment_quote = PaymentQuoteResponse(
            checking_id=mint_quote.checking_id,
            amount=amount,
            fee=internal_fee,
        )
        logger.info(
            f"Issuing internal melt quote: {mint_quote.request} ->"
            f" {mint_quote.quote} ({amount.str()} + {internal_fee.str()} fees)"
        )
        return payment_quote

    def validate_payment_quote(self, payment_quote: PaymentQuoteResponse, unit: Unit):
        if not payment_quote.checking_id:
            raise LightningError("quote has no checking id")
        # make sure the backend returned the amount with a correct unit
        if not payment_quote.amount.unit == unit:
            raise TransactionUnitError("payment quote amount units do not match")
        # fee from the backend must be in the same unit as the amount
        if not payment_quote.fee.unit == unit:
            raise TransactionUnitError("payment quote fee units do not match")

    async def melt_quote(
        self, melt_quote: PostMeltQuoteRequest
    ) -> PostMeltQuoteResponse:
        """Creates a melt quote and stores it in the database.

        Args:
            melt_quote (PostMeltQuoteRequest): Melt quote request.

        Raises:
            TransactionError: Invoice invalid or without an amount.
            NotAllowedError: Unit or method not supported.

        Returns:
            PostMeltQuoteResponse: Melt quote response.
        """
        unit, method = self._verify_and_get_unit_method(
            melt_quote.unit, Method.bolt11.name
        )

        # We assume that the request is a bolt11 invoice, this works since we
        # support only the bolt11 method.
        try:
            invoice_obj = bolt11.decode(melt_quote.request)
        except Exception as e:
            raise TransactionError(f"invalid bolt11 invoice: {e}")
        if not invoice_obj.amount_msat:
            raise TransactionError("invoice has no amount.")

        # NOTE: we normalize the request to lowercase to avoid case sensitivity
        request = melt_quote.request.lower()

        # an invoice of one of our own mint quotes is settled internally without fees
        mint_quote = await self.crud.get_mint_quote(request=request, db=self.db)
        if mint_quote and mint_quote.unit == unit.name:
            payment_quote = self.create_internal_melt_quote(mint_quote, unit)
        else:
            payment_quote = await self.backends[method][unit].get_payment_quote(
                melt_quote=melt_quote
            )

        self.validate_payment_quote(payment_quote, unit)
        self._verify_melt_limits(payment_quote.amount.to(unit))

        # we set the expiry of this quote to the expiry of the bolt11 invoice
        expiry = None
        if invoice_obj.expiry is not None:
            expiry = invoice_obj.date + invoice_obj.expiry

        quote = MeltQuote(
            quote=random_hash(),
            method=method.name,
            request=request,
            checking_id=payment_quote.checking_id,
            unit=unit.name,
            amount=payment_quote.amount.to(unit).amount,
            state=MeltQuoteState.unpaid,
            fee_reserve=payment_quote.fee.to(unit).amount,
            created_time=int(time.time()),
            expiry=expiry,
        )
        await self.crud.store_melt_quote(quote=quote, db=self.db)
        logger.debug(
            f"Created melt quote {quote.quote} for {unit.str(quote.amount)}"
            f" with fee reserve {unit.str(quote.fee_reserve)}"
        )
        return PostMeltQuoteResponse.from_melt_quote(quote)

    async def get_melt_quote(self, quote_id: str) -> MeltQuote:
        """Returns a melt quote.

        If the melt quote pays a mint quote of this mint and is pending, the internal
        settlement is completed if the mint quote is still unpaid and released otherwise.

        If the melt quote is pending, checks status of the payment with the backend.
            - If settled, sets the quote as paid and spends the pending proofs (commit).
            - If failed, sets the quote as unpaid and releases the pending proofs (rollback).
            - Otherwise the quote stays pending.

        Args:
            quote_id (str): ID of the melt quote.

        Raises:
            QuoteNotFoundError: Quote not found.

        Returns:
            MeltQuote: Melt quote object.
        """
        melt_quote = await self.crud.get_melt_quote(quote_id=quote_id, db=self.db)
        if not melt_quote:
            raise QuoteNotFoundError(quote_id)

        if not melt_quote.pending:
            return melt_quote

        # internal payments never reach the backend, a pending one was interrupted
        # between reserving and committing and is settled again
        mint_quote = await self._get_internal_mint_quote(melt_quote)
        if mint_quote:
            if mint_quote.unpaid:
                logger.info(f"Resuming internal settlement of melt quote {quote_id}")
                return await self._settle_melt_internally(melt_quote, mint_quote)
            logger.warning(
                f"Mint quote {mint_quote.quote} of internal melt quote {quote_id} is"
                f" {mint_quote.state}, releasing the proofs"
            )
            return await self.db_write._unset_melt_quote_pending(melt_quote)

        unit, method = self._verify_and_get_unit_method(
            melt_quote.unit, melt_quote.method
        )
        logger.debug(
            f"Lightning: checking outgoing Lightning payment {melt_quote.checking_id}"
        )
        try:
            status: PaymentStatus = await self.backends[method][
                unit
            ].get_payment_status(melt_quote.checking_id)
        except Exception as e:
            logger.error(
                f"Lightning backend error: could not check payment status of melt quote {quote_id}: {e}"
            )
            return melt_quote
        logger.debug(f"State: {status}")

        if status.settled:
            fee_paid = status.fee.to(unit, round="up").amount if status.fee else 0
            melt_quote = await self._commit_melt(
                melt_quote, fee_paid=fee_paid, preimage=status.preimage
            )
        elif status.failed:
            logger.debug(f"Setting quote {quote_id} as unpaid")
            melt_quote = await self.db_write._unset_melt_quote_pending(melt_quote)
        return melt_quote

    async def get_melt_quote_by_payment_hash(self, payment_hash: str) -> MeltQuote:
        """Returns the latest melt quote for the invoice with `payment_hash`, see `get_melt_quote`."""
        melt_quote = await self.crud.get_melt_quote(
            checking_id=payment_hash, db=self.db
        )
        if not melt_quote:
            raise QuoteNotFoundError(payment_hash)
        return await self.get_melt_quote(melt_quote.quote)

    async def _get_internal_mint_quote(
        self, melt_quote: MeltQuote
    ) -> Optional[MintQuote]:
        """Returns the mint quote of this mint that the melt quote pays, if any."""
        mint_quote = await self.crud.get_mint_quote(
            request=melt_quote.request, db=self.db
        )
        if (
            mint_quote
            and mint_quote.unit == melt_quote.unit
            and mint_quote.checking_id == melt_quote.checking_id
        ):
            return mint_quote
        return None

    async def melt(
        self,
        *,
        proofs: List[Proof],
        quote: str,
        outputs: Optional[List[BlindedMessage]] = None,
    ) -> PostMeltQuoteResponse:
        """Spends proofs and pays a Lightning invoice.

        The proofs and the quote are reserved as pending before the payment is made. The
        payment and the settlement after it are shielded from cancellation of the caller.

        Args:
            proofs (List[Proof]): Proofs provided for paying the Lightning invoice
            quote (str): ID of the melt quote.
            outputs (Optional[List[BlindedMessage]]): Blank outputs for returning overpaid fees to the wallet.

        Raises:
            LightningPaymentFailedError: Payment failed, the proofs can be used again.
            PaymentUncertainError: Outcome of the payment unknown, the proofs stay pending.

        Returns:
            PostMeltQuoteResponse: Melt quote response.
        """
        # make sure we're allowed to melt
        if self.disable_melt and settings.mint_disable_melt_on_error:
            raise NotAllowedError("Melt is disabled. Please contact the operator.")

        # get melt quote and check if it was already paid
        melt_quote = await self.get_melt_quote(quote_id=quote)
        if melt_quote.pending:
            raise QuotePendingError()
        if not melt_quote.unpaid:
            raise TransactionError(f"melt quote is not unpaid: {melt_quote.state}")

        unit, method = self._verify_and_get_unit_method(
            melt_quote.unit, melt_quote.method
        )

        # verify inputs
        # note, we do not verify outputs here, as they are only used for returning overpaid fees
        await self.verify_inputs_and_outputs(proofs=proofs)
        if not all([self.keysets[p.id].unit == unit for p in proofs]):
            raise TransactionUnitError(
                f"input unit does not match quote unit {melt_quote.unit}"
            )

        # verify that the amount of the input proofs covers the quote and the fee reserve
        total_provided = sum_proofs(proofs)
        total_needed = melt_quote.amount + melt_quote.fee_reserve
        # we need the fees specifically for lightning to return the overpaid fees
        fee_reserve_provided = total_provided - melt_quote.amount
        if total_provided < total_needed:
            raise TransactionNotBalancedError(
                f"not enough inputs provided for melt. Provided: {total_provided}, needed: {total_needed}"
            )

        # make sure that the outputs (for fee return) are in the same unit as the quote
        if outputs:
            # _verify_outputs checks if all outputs have the same unit
            await self._verify_outputs(outputs, skip_amount_check=True)
            outputs_unit = self.keysets[outputs[0].id].unit
            if not melt_quote.unit == outputs_unit.name:
                raise TransactionUnitError(
                    f"output unit {outputs_unit.name} does not match quote unit {melt_quote.unit}"
                )
            max_outputs = calculate_number_of_blank_outputs(fee_reserve_provided)
            if len(outputs) > max_outputs:
                raise TransactionError(
                    f"too many change outputs: {len(outputs)}, max: {max_outputs}"
                )

        # once the proofs are reserved the payment can't be undone, so reserving,
        # paying and settling run to completion even if the caller goes away
        melt_quote = await asyncio.shield(
            self._settle_melt(melt_quote, proofs, outputs, unit, method)
        )
        return PostMeltQuoteResponse.from_melt_quote(melt_quote)

    async def _settle_melt(
        self,
        melt_quote: MeltQuote,
        proofs: List[Proof],
        outputs: Optional[List[BlindedMessage]],
        unit: Unit,
        method: Method,
    ) -> MeltQuote:
        """Reserves the proofs and the quote, pays the quote and commits or releases it
        depending on the outcome of the payment."""
        # this fails if any proof is not unspent or the quote is not unpaid
        melt_quote = await self.db_write._set_melt_quote_pending(
            melt_quote, proofs, outputs
        )

        mint_quote = await self._get_internal_mint_quote(melt_quote)
        if mint_quote:
            return await self._settle_melt_internally(melt_quote, mint_quote)

        backend = self.backends[method][unit]
        logger.debug(f"Lightning: pay invoice {melt_quote.request}")
        try:
            payment = await asyncio.wait_for(
                backend.pay_invoice(melt_quote, melt_quote.fee_reserve * 1000),
                timeout=settings.mint_lightning_payment_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Lightning payment of melt quote {melt_quote.quote} timed out after"
                f" {settings.mint_lightning_payment_timeout}s."
            )
            payment = PaymentResponse(
                result=PaymentResult.UNKNOWN, error_message="payment timed out"
            )
        except Exception as e:
            logger.error(f"Exception during pay_invoice: {e}")
            payment = PaymentResponse(
                result=PaymentResult.UNKNOWN,
                error_message=str(e),
            )
        logger.debug(
            f"Melt: result: {payment.result.name}: preimage: {payment.preimage},"
            f" fee: {payment.fee.str() if payment.fee is not None else 'None'}"
        )

        match payment.result:
            case PaymentResult.SETTLED:
                fee_paid = payment.fee.to(unit, round="up").amount if payment.fee else 0
                return await self._commit_melt(
                    melt_quote, fee_paid=fee_paid, preimage=payment.preimage
                )

            case PaymentResult.FAILED | PaymentResult.UNKNOWN:
                # explicitly check payment status for failed or unknown payment states
                checking_id = payment.checking_id or melt_quote.checking_id
                logger.debug(
                    f"Payment state is {payment.result.name}.{' Error: ' + payment.error_message + '.' if payment.error_message else ''} Checking status for {checking_id}."
                )
                try:
                    status = await backend.get_payment_status(checking_id)
                except Exception as e:
                    # We might have lost connection to the backend. Keep the transaction pending.
                    logger.error(
                        f"Lightning backend error: could not check payment status. Proofs for melt quote {melt_quote.quote} are stuck as PENDING.\nError: {e}"
                    )
                    self.disable_melt = True
                    raise PaymentUncertainError(
                        f"could not check payment status of melt quote {melt_quote.quote}"
                    )

                match status.result:
                    case PaymentResult.FAILED:
                        # Payment AND a status check both agree on a failure. We roll back the transaction.
                        await self.db_write._unset_melt_quote_pending(melt_quote)
                        if status.error_message:
                            logger.error(f"Status check error: {status.error_message}")
                        raise LightningPaymentFailedError(
                            f"Lightning payment failed{': ' + payment.error_message if payment.error_message else ''}."
                        )
                    case PaymentResult.SETTLED:
                        fee_paid = (
                            status.fee.to(unit, round="up").amount if status.fee else 0
                        )
                        return await self._commit_melt(
                            melt_quote, fee_paid=fee_paid, preimage=status.preimage
                        )
                    case _:
                        logger.error(
                            f"Payment state was {payment.result.name} but additional payment state check returned {status.result.name}. Proofs for melt quote {melt_quote.quote} are stuck as PENDING."
                        )
                        self.disable_melt = True
                        raise PaymentUncertainError(
                            f"payment of melt quote {melt_quote.quote} is {status.result.name}"
                        )

            case _:
                logger.debug(
                    f"Lightning payment is {payment.result.name}: {payment.checking_id}"
                )
                raise PaymentUncertainError(
                    f"payment of melt quote {melt_quote.quote} is pending"
                )

    async def _settle_melt_internally(
        self, melt_quote: MeltQuote, mint_quote: MintQuote
    ) -> MeltQuote:
        """Settles a melt quote that pays a mint quote of this mint, without fees."""
        if not mint_quote.amount == melt_quote.amount:
            await self.db_write._unset_melt_quote_pending(melt_quote)
            raise TransactionError("amounts do not match")

        logger.info(
            f"Settling bolt11 payment internally: {melt_quote.quote} ->"
            f" {mint_quote.quote} ({melt_quote.amount} {melt_quote.unit})"
        )
        try:
            return await self._commit_melt(
                melt_quote, fee_paid=0, preimage=None, internal_mint_quote=mint_quote
            )
        except CashuError:
            await self.db_write._unset_melt_quote_pending(melt_quote)
            raise

    async def _commit_melt(
        self,
        melt_quote: MeltQuote,
        fee_paid: int,
        preimage: Optional[str],
        internal_mint_quote: Optional[MintQuote] = None,
    ) -> MeltQuote:
        """Finalizes a successful payment in a single transaction: the pending proofs are
        spent, overpaid fees are returned as change and the quote is set as paid.

        A quote that is not pending anymore was settled or released concurrently and is
        returned as it is.
        """
        async with self.db.get_connection(lock_table="proofs") as conn:
            quote_db = await self.crud.get_melt_quote(
                quote_id=melt_quote.quote, db=self.db, conn=conn
            )
            if not quote_db:
                raise QuoteNotFoundError(melt_quote.quote)
            if not quote_db.pending:
                logger.debug(f"Melt quote {melt_quote.quote} is already {quote_db.state}")
                return quote_db

            proofs = await self.crud.get_pending_proofs_for_quote(
                quote_id=melt_quote.quote, db=self.db, conn=conn
            )
            await self.db_write._transition_proofs(
                proofs,
                ProofSpentState.pending,
                ProofSpentState.spent,
                conn=conn,
                quote_id=melt_quote.quote,
            )

            if internal_mint_quote:
                paid = await self.crud.update_mint_quote_state(
                    quote_id=internal_mint_quote.quote,
                    from_state=MintQuoteState.unpaid,
                    to_state=MintQuoteState.paid,
                    db=self.db,
                    conn=conn,
                )
                if not paid:
                    raise TransactionError("mint quote is not unpaid")

            # change to compensate wallet for overpaid fees
            change = await self._generate_change_promises(
                fee_provided=sum_proofs(proofs) - quote_db.amount,
                fee_paid=fee_paid,
                melt_id=melt_quote.quote,
                conn=conn,
            )

            quote_db.state = MeltQuoteState.paid
            quote_db.fee_paid = fee_paid
            quote_db.payment_preimage = preimage
            quote_db.paid_time = int(time.time())
            quote_db.change = change or None
            updated = await self.crud.update_melt_quote(
                quote=quote_db,
                from_state=MeltQuoteState.pending,
                db=self.db,
                conn=conn,
            )
            if not updated:
                raise TransactionError("melt quote is not pending")
        logger.debug(f"Melt quote {melt_quote.quote} paid with fee {fee_paid}")
        return quote_db

    async def _generate_change_promises(
        self,
        fee_provided: int,
        fee_paid: int,
        melt_id: str,
        conn: Connection,
    ) -> List[BlindedSignature]:
        """Signs the blank outputs stored with melt `melt_id` for the difference between the
        Lightning fee reserve provided by the wallet and the actual Lightning fee paid by the mint.

        If there is a positive difference, produces at most as many signatures as there are
        blank outputs, with values close or equal to the fee difference. If the number of
        outputs matches `calculate_number_of_blank_outputs`, the overpaid fee is returned
        perfectly. Otherwise, a smaller amount will be returned.

        Blank outputs that are not needed are deleted.

        Returns:
            List[BlindedSignature]: Signatures on the outputs.
        """
        outputs = await self.crud.get_blinded_messages_melt_id(
            melt_id=melt_id, db=self.db, conn=conn
        )
        overpaid_fee = fee_provided - fee_paid
        promises: List[BlindedSignature] = []
        if overpaid_fee < 0:
            logger.error(
                f"Overpaid fee is negative ({overpaid_fee}). This should not happen."
            )
        elif overpaid_fee > 0 and outputs:
            logger.debug(
                f"Lightning fee was: {fee_paid}. User provided: {fee_provided}. "
                f"Returning difference: {overpaid_fee}."
            )
            # we sort the return amounts in descending order so we only
            # take the largest values if there are fewer outputs
            return_amounts = sorted(amount_split(overpaid_fee), reverse=True)
            n_return_outputs = min(len(outputs), len(return_amounts))
            # we need to imprint these amounts into the blank outputs
            change_outputs = [
                o.model_copy(update={"amount": return_amounts[i]})
                for i, o in enumerate(outputs[:n_return_outputs])
            ]
            promises = self._sign_blinded_messages(change_outputs)
            await self._store_promises(
                change_outputs, promises, conn, melt_quote_id=melt_id
            )
        # delete remaining unsigned blank outputs from db
        await self.crud.delete_blinded_messages_melt_id(
            melt_id=melt_id, db=self.db, conn=conn
        )
        return promises

    async def swap(
        self,
        *,
        proofs: List[Proof],
        outputs: List[BlindedMessage],
    ) -> List[BlindedSignature]:
        """Consumes proofs and prepares new promises based on the amount swap. Used for swapping tokens
        before sending or for redeeming tokens for new ones that have been received by another wallet.

        The proofs are spent and the signatures stored in a single transaction.

        Args:
            proofs (List[Proof]): Proofs to be spent for the swap.
            outputs (List[BlindedMessage]): New outputs that should be signed in return.

        Raises:
            Exception: Validation of proofs or outputs failed
            ProofNotUnspentError: A proof is already spent or pending.

        Returns:
            List[BlindedSignature]: New promises (signatures) for the outputs.
        """
        logger.trace("swap called")
        # verify spending inputs and outputs
        await self.verify_inputs_and_outputs(proofs=proofs, outputs=outputs)
        promises = self._sign_blinded_messages(outputs)
        async with self.db.get_connection(lock_table="proofs") as conn:
            await self.db_write._transition_proofs(
                proofs, ProofSpentState.unspent, ProofSpentState.spent, conn=conn
            )
            await self._store_promises(outputs, promises, conn)
        logger.trace("swap successful")
        return promises

    async def restore(
        self, outputs: List[BlindedMessage]
    ) -> Tuple[List[BlindedMessage], List[BlindedSignature]]:
        """Returns the stored signatures for outputs that were signed before."""
        self._verify_request_length(outputs)
        promises = await self.crud.get_promises(
            b_s=[output.B_ for output in outputs], db=self.db
        )
        return_outputs: List[BlindedMessage] = []
        signatures: List[BlindedSignature] = []
        for output in outputs:
            if output.B_ in promises:
                logger.trace(f"promise found: {output.B_}")
                return_outputs.append(output)
                signatures.append(promises[output.B_])
        return return_outputs, signatures

    # ------- CHECK -------

    async def check_state(self, secrets: List[str]) -> List[ProofState]:
        """Returns the state of the proofs with `secrets`, in the same order."""
        Ys = [hash_to_curve(s.encode("utf-8")).serialize().hex() for s in secrets]
        return await self.check_proofs_state(Ys)

    async def check_proofs_state(self, Ys: List[str]) -> List[ProofState]:
        """Returns the state of the proofs with the given Y = hash_to_curve(secret),
        in the same order. Proofs the mint has never seen are unspent.
        """
        if len(Ys) > settings.mint_max_request_length:
            raise NotAllowedError(
                f"too many proofs. max: {settings.mint_max_request_length}"
            )
        return await self.db_read.get_proofs_states(Ys)
