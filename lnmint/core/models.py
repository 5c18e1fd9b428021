from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .base import BlindedSignature, MeltQuote
from .settings import settings

# ------- INFO -------


class MintMethodSetting(BaseModel):
    method: str
    unit: str
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None


class MeltMethodSetting(BaseModel):
    method: str
    unit: str
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None


class MintInfoContact(BaseModel):
    method: str
    info: str


# ------- KEYS -------


class KeysResponseKeyset(BaseModel):
    id: str
    unit: str
    keys: Dict[int, str]


class KeysetsResponseKeyset(BaseModel):
    id: str
    unit: str
    active: bool


# ------- MINT QUOTE -------


class PostMintQuoteRequest(BaseModel):
    unit: str = Field(..., max_length=settings.mint_max_request_length)  # output unit
    amount: int = Field(..., gt=0)  # output amount
    description: Optional[str] = Field(
        default=None, max_length=settings.mint_max_request_length
    )  # invoice description


# ------- MELT QUOTE -------


class PostMeltQuoteRequest(BaseModel):
    unit: str = Field(
        default="sat", max_length=settings.mint_max_request_length
    )  # input unit
    request: str = Field(
        ..., max_length=settings.mint_max_request_length
    )  # output payment request


class PostMeltQuoteResponse(BaseModel):
    quote: str  # quote id
    amount: int  # input amount
    unit: str
    request: str
    fee_reserve: int  # input fee reserve
    state: str  # state of the quote
    expiry: Optional[int] = None  # expiry of the quote
    payment_preimage: Optional[str] = None  # payment preimage
    change: Optional[List[BlindedSignature]] = None  # NUT-08 change

    @classmethod
    def from_melt_quote(cls, melt_quote: MeltQuote) -> "PostMeltQuoteResponse":
        to_dict = melt_quote.model_dump()
        # turn state into string
        to_dict["state"] = melt_quote.state.value
        return cls.model_validate(to_dict)
