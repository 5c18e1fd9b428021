from typing import Optional


class CashuError(Exception):
    code: int
    detail: str

    def __init__(self, detail, code=0):
        super().__init__(detail)
        self.code = code
        self.detail = detail


class NotAllowedError(CashuError):
    detail = "not allowed"
    code = 10000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class OutputsAlreadySignedError(CashuError):
    detail = "outputs have already been signed before."
    code = 10002

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class InvalidProofsError(CashuError):
    detail = "proofs could not be verified"
    code = 10003

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class InvalidBlindedMessageError(CashuError):
    detail = "blinded message is not a valid point"
    code = 10004

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class TransactionError(CashuError):
    detail = "transaction error"
    code = 11000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class ProofNotUnspentError(TransactionError):
    """A proof was not in the UNSPENT state when it was about to be consumed."""

    detail = "proofs are not unspent"
    code = 11001

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class TokenAlreadySpentError(ProofNotUnspentError):
    detail = "Token already spent."
    code = 11001

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class ProofsPendingError(ProofNotUnspentError):
    detail = "proofs are pending."
    code = 11012

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class TransactionNotBalancedError(TransactionError):
    code = 11002

    def __init__(self, detail):
        super().__init__(detail, code=self.code)


class SecretTooLongError(TransactionError):
    code = 11003

    def __init__(self, detail="secret too long"):
        super().__init__(detail, code=self.code)


class NoSecretInProofsError(TransactionError):
    detail = "no secret in proofs"
    code = 11004

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class TransactionUnitError(TransactionError):
    code = 11005

    def __init__(self, detail):
        super().__init__(detail, code=self.code)


class TransactionAmountExceedsLimitError(TransactionError):
    code = 11006

    def __init__(self, detail):
        super().__init__(detail, code=self.code)


class TransactionDuplicateInputsError(TransactionError):
    detail = "Duplicate inputs provided"
    code = 11007

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail, code=self.code)


class TransactionDuplicateOutputsError(TransactionError):
    detail = "Duplicate outputs provided"
    code = 11008

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail, code=self.code)


class TransactionMultipleUnitsError(TransactionError):
    detail = "Inputs/Outputs of multiple units"
    code = 11009

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail, code=self.code)


class TransactionAmountInvalidError(TransactionError):
    detail = "invalid amount"
    code = 11011

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail, code=self.code)


class KeysetError(CashuError):
    detail = "keyset error"
    code = 12000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class KeysetNotFoundError(KeysetError):
    detail = "keyset not found"
    code = 12001

    def __init__(self, keyset_id: Optional[str] = None):
        if keyset_id:
            self.detail = f"{self.detail}: {keyset_id}"
        super().__init__(self.detail, code=self.code)


class KeysetInactiveError(KeysetError):
    detail = "keyset is not active"
    code = 12002

    def __init__(self, keyset_id: Optional[str] = None):
        if keyset_id:
            self.detail = f"{self.detail}: {keyset_id}"
        super().__init__(self.detail, code=self.code)


class KeysetDenominationError(KeysetError):
    """The keyset holds no key for the requested amount."""

    detail = "unknown denomination"
    code = 12003

    def __init__(self, amount: Optional[int] = None):
        if amount is not None:
            self.detail = f"{self.detail}: {amount}"
        super().__init__(self.detail, code=self.code)


class KeysetExpiredError(KeysetError):
    detail = "keyset is past its retention period"
    code = 12004

    def __init__(self, keyset_id: Optional[str] = None):
        if keyset_id:
            self.detail = f"{self.detail}: {keyset_id}"
        super().__init__(self.detail, code=self.code)


class LightningError(CashuError):
    detail = "Lightning error"
    code = 20000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class QuoteNotPaidError(CashuError):
    detail = "quote not paid"
    code = 20001

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class QuoteAlreadyIssuedError(CashuError):
    detail = "quote already issued"
    code = 20002

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class QuoteNotFoundError(CashuError):
    detail = "quote not found"
    code = 20003

    def __init__(self, quote_id: Optional[str] = None):
        if quote_id:
            self.detail = f"{self.detail}: {quote_id}"
        super().__init__(self.detail, code=self.code)


class LightningPaymentFailedError(LightningError):
    detail = "Lightning payment failed"
    code = 20004

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail, code=self.code)


class QuotePendingError(CashuError):
    detail = "quote is pending"
    code = 20005

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class QuoteExpiredError(CashuError):
    detail = "quote expired"
    code = 20007

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class PaymentUncertainError(LightningError):
    """The outcome of a Lightning payment is unknown.

    The melt quote and its proofs stay pending until the payment status can be
    determined. Callers must poll the quote before attempting to pay again.
    """

    detail = "Lightning payment outcome unknown"
    code = 20008

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail, code=self.code)
