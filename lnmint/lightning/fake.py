import asyncio
import hashlib
import math
from datetime import datetime
from os import urandom
from typing import AsyncGenerator, Dict, Optional, Set

from bolt11 import (
    Bolt11,
    Feature,
    Features,
    FeatureState,
    MilliSatoshi,
    TagChar,
    Tags,
    decode,
    encode,
)
from loguru import logger

from ..core.base import Amount, MeltQuote, Unit
from ..core.helpers import fee_reserve
from ..core.models import PostMeltQuoteRequest
from ..core.settings import settings
from .base import (
    InvoiceResponse,
    LightningBackend,
    PaymentQuoteResponse,
    PaymentResponse,
    PaymentResult,
    PaymentStatus,
    StatusResponse,
)


class FakeWallet(LightningBackend):
    """In-process Lightning backend that settles every invoice it is asked about.

    Behaviour of outgoing payments is controlled by the `fakewallet_*` settings.
    """

    unit: Unit
    # shared between instances so that invoices of one fake node are known to all
    payment_secrets: Dict[str, str] = dict()
    paid_invoices_outgoing: Set[str] = set()
    paid_invoices_incoming: Set[str] = set()
    secret: str = "FAKEWALLET SECRET"
    privkey: str = hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode(),
        b"FakeWallet",
        2048,
        32,
    ).hex()

    supported_units = {Unit.sat, Unit.msat, Unit.usd, Unit.eur}

    supports_incoming_payment_stream: bool = True

    def __init__(self, unit: Unit = Unit.sat, **kwargs):
        self.assert_unit_supported(unit)
        self.unit = unit
        self.paid_invoices_queue: asyncio.Queue[str] = asyncio.Queue(0)

    async def status(self) -> StatusResponse:
        return StatusResponse(error_message=None, balance=1337)

    async def mark_invoice_paid(self, checking_id: str, delay: bool = False) -> None:
        """Settles an incoming invoice and announces it on the paid invoices stream."""
        if checking_id in self.paid_invoices_incoming:
            return
        if settings.fakewallet_delay_incoming_payment and delay:
            await asyncio.sleep(settings.fakewallet_delay_incoming_payment)
        self.paid_invoices_incoming.add(checking_id)
        await self.paid_invoices_queue.put(checking_id)

    def _amount_msat(self, amount: Amount) -> int:
        if amount.unit in [Unit.sat, Unit.msat]:
            return amount.to(Unit.msat, round="up").amount
        elif amount.unit in [Unit.usd, Unit.eur]:
            return math.ceil(amount.amount / 100 / settings.fakewallet_btc_price * 1e11)
        raise NotImplementedError()

    async def create_invoice(
        self,
        amount: Amount,
        memo: Optional[str] = None,
        expiry: Optional[int] = None,
    ) -> InvoiceResponse:
        self.assert_unit_supported(amount.unit)
        tags = Tags()
        tags.add(
            TagChar.features,
            Features.from_feature_list(
                {Feature.payment_secret: FeatureState.supported}
            ),
        )
        tags.add(TagChar.description, memo or "")
        tags.add(TagChar.expire_time, expiry or 3600)

        secret = urandom(32).hex()
        tags.add(TagChar.payment_secret, secret)
        payment_hash = hashlib.sha256(secret.encode()).hexdigest()
        tags.add(TagChar.payment_hash, payment_hash)
        self.payment_secrets[payment_hash] = secret

        date = int(datetime.now().timestamp())
        bolt11 = Bolt11(
            currency="bc",
            amount_msat=MilliSatoshi(self._amount_msat(amount)),
            date=date,
            tags=tags,
        )
        payment_request = encode(bolt11, self.privkey)

        return InvoiceResponse(
            ok=True,
            checking_id=payment_hash,
            payment_request=payment_request,
            expiry=date + (expiry or 3600),
        )

    async def pay_invoice(
        self, quote: MeltQuote, fee_limit_msat: int
    ) -> PaymentResponse:
        if settings.fakewallet_pay_invoice_state_exception:
            raise Exception("FakeWallet pay_invoice exception")

        invoice = decode(quote.request)

        if settings.fakewallet_delay_outgoing_payment:
            await asyncio.sleep(settings.fakewallet_delay_outgoing_payment)

        fee_msat = min(settings.fakewallet_fee_paid_msat, fee_limit_msat)
        if self.unit in [Unit.sat, Unit.msat]:
            fee = Amount(Unit.msat, fee_msat).to(self.unit, round="up")
        else:
            fee = Amount(self.unit, 1)
        preimage = self.payment_secrets.get(invoice.payment_hash) or "0" * 64

        result = PaymentResult[settings.fakewallet_pay_invoice_state or "SETTLED"]
        if result == PaymentResult.SETTLED:
            if invoice.payment_hash in self.paid_invoices_outgoing:
                return PaymentResponse(
                    result=PaymentResult.FAILED,
                    checking_id=invoice.payment_hash,
                    error_message="Invoice already paid",
                )
            self.paid_invoices_outgoing.add(invoice.payment_hash)
            logger.trace(f"FakeWallet: paid {invoice.payment_hash}")
            return PaymentResponse(
                result=result,
                checking_id=invoice.payment_hash,
                fee=fee,
                preimage=preimage,
            )
        return PaymentResponse(
            result=result,
            checking_id=invoice.payment_hash,
            error_message=f"FakeWallet payment {result}",
        )

    async def get_invoice_status(self, checking_id: str) -> PaymentStatus:
        if checking_id not in self.paid_invoices_incoming and settings.fakewallet_brr:
            await self.mark_invoice_paid(checking_id)
        if checking_id in self.paid_invoices_incoming:
            return PaymentStatus(result=PaymentResult.SETTLED)
        return PaymentStatus(result=PaymentResult.PENDING)

    async def get_payment_status(self, checking_id: str) -> PaymentStatus:
        if settings.fakewallet_payment_state_exception:
            raise Exception("FakeWallet get_payment_status exception")
        if settings.fakewallet_payment_state:
            result = PaymentResult[settings.fakewallet_payment_state]
            if result == PaymentResult.SETTLED:
                self.paid_invoices_outgoing.add(checking_id)
                return PaymentStatus(
                    result=result,
                    fee=Amount(self.unit, 0),
                    preimage=self.payment_secrets.get(checking_id) or "0" * 64,
                )
            return PaymentStatus(result=result)
        if checking_id in self.paid_invoices_outgoing:
            return PaymentStatus(result=PaymentResult.SETTLED)
        return PaymentStatus(result=PaymentResult.FAILED)

    async def get_payment_quote(
        self, melt_quote: PostMeltQuoteRequest
    ) -> PaymentQuoteResponse:
        invoice_obj = decode(melt_quote.request)
        assert invoice_obj.amount_msat, "invoice has no amount."
        amount_msat = int(invoice_obj.amount_msat)

        if self.unit in [Unit.sat, Unit.msat]:
            fees = Amount(unit=Unit.msat, amount=fee_reserve(amount_msat))
            amount = Amount(unit=Unit.msat, amount=amount_msat)
        elif self.unit in [Unit.usd, Unit.eur]:
            amount_cents = math.ceil(
                amount_msat / 1e11 * settings.fakewallet_btc_price * 100
            )
            amount = Amount(unit=self.unit, amount=amount_cents)
            fees = Amount(unit=self.unit, amount=2)
        else:
            raise NotImplementedError()

        return PaymentQuoteResponse(
            checking_id=invoice_obj.payment_hash,
            fee=fees.to(self.unit, round="up"),
            amount=amount.to(self.unit, round="up"),
        )

    async def paid_invoices_stream(self) -> AsyncGenerator[str, None]:
        while True:
            checking_id = await self.paid_invoices_queue.get()
            yield checking_id
