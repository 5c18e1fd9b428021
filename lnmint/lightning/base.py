from abc import ABC, abstractmethod
from enum import Enum, auto
from typing import AsyncGenerator, Optional, Set, Union

from pydantic import BaseModel

from ..core.base import Amount, MeltQuote, Unit
from ..core.models import PostMeltQuoteRequest


class Unsupported(Exception):
    """A backend was asked for a unit it can't denominate payments in."""


class PaymentResult(Enum):
    """What a backend knows about a payment.

    Only SETTLED and FAILED are final. The mint keeps the proofs of a melt reserved
    while the result is PENDING or UNKNOWN.
    """

    SETTLED = auto()
    FAILED = auto()
    PENDING = auto()
    UNKNOWN = auto()

    def __str__(self):
        return self.name


class StatusResponse(BaseModel):
    balance: Union[int, float]
    error_message: Optional[str] = None


class InvoiceResponse(BaseModel):
    ok: bool
    checking_id: Optional[str] = None
    payment_request: Optional[str] = None
    # unix time after which the invoice can't be paid anymore
    expiry: Optional[int] = None
    error_message: Optional[str] = None


class PaymentQuoteResponse(BaseModel):
    """Amount and fee reserve for paying an invoice, both in the unit of the quote."""

    checking_id: str
    amount: Amount
    fee: Amount


class PaymentOutcome(BaseModel):
    result: PaymentResult
    fee: Optional[Amount] = None
    preimage: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.result == PaymentResult.SETTLED

    @property
    def failed(self) -> bool:
        return self.result == PaymentResult.FAILED

    @property
    def pending(self) -> bool:
        return self.result == PaymentResult.PENDING

    @property
    def unknown(self) -> bool:
        return self.result == PaymentResult.UNKNOWN

    def __str__(self) -> str:
        details = []
        if self.preimage:
            details.append(f"preimage: {self.preimage}")
        if self.fee:
            details.append(f"fee: {self.fee.str()}")
        if self.error_message:
            details.append(f"error: {self.error_message}")
        if not details:
            return self.result.name
        return f"{self.result.name} ({', '.join(details)})"


class PaymentResponse(PaymentOutcome):
    """Answer of `pay_invoice`. `checking_id` identifies the payment for later
    status checks if the backend tracks it under another id than the quote."""

    checking_id: Optional[str] = None


class PaymentStatus(PaymentOutcome):
    """Answer of a status check of an incoming invoice or an outgoing payment."""


class LightningBackend(ABC):
    """A Lightning node the mint receives and sends payments with, for one unit.

    Invoices and payments are identified by their `checking_id`, which is the payment
    hash of the invoice. Implementations must not report a payment as FAILED unless
    it can no longer succeed.
    """

    supports_incoming_payment_stream: bool = False
    supported_units: Set[Unit]
    unit: Unit

    def assert_unit_supported(self, unit: Unit):
        if unit not in self.supported_units:
            raise Unsupported(f"unit {unit.name} is not supported")

    @abstractmethod
    def __init__(self, unit: Unit, **kwargs):
        pass

    @abstractmethod
    async def status(self) -> StatusResponse:
        """Balance of the node. `error_message` is set if the node is unusable."""

    @abstractmethod
    async def create_invoice(
        self,
        amount: Amount,
        memo: Optional[str] = None,
    ) -> InvoiceResponse:
        pass

    @abstractmethod
    async def pay_invoice(
        self, quote: MeltQuote, fee_limit_msat: int
    ) -> PaymentResponse:
        pass

    @abstractmethod
    async def get_invoice_status(self, checking_id: str) -> PaymentStatus:
        """Whether an invoice of this node was paid. An open invoice is PENDING."""

    @abstractmethod
    async def get_payment_status(self, checking_id: str) -> PaymentStatus:
        pass

    @abstractmethod
    async def get_payment_quote(
        self, melt_quote: PostMeltQuoteRequest
    ) -> PaymentQuoteResponse:
        pass

    @abstractmethod
    def paid_invoices_stream(self) -> AsyncGenerator[str, None]:
        """Yields the `checking_id` of every incoming invoice that settles."""
