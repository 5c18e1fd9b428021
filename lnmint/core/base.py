import json
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.engine import RowMapping

from .crypto.b_dhke import hash_to_curve
from .crypto.keys import (
    counter_from_derivation_path,
    derive_keys,
    derive_keyset_id,
    derive_pubkeys,
)
from .crypto.secp import PrivateKey, PublicKey
from .settings import settings


class DLEQ(BaseModel):
    """
    Discrete Log Equality (DLEQ) Proof
    """

    e: str
    s: str


# ------- PROOFS -------


class ProofSpentState(Enum):
    unspent = "UNSPENT"
    spent = "SPENT"
    pending = "PENDING"

    def __str__(self):
        return self.name


class ProofState(BaseModel):
    Y: str
    state: ProofSpentState

    @property
    def unspent(self) -> bool:
        return self.state == ProofSpentState.unspent

    @property
    def spent(self) -> bool:
        return self.state == ProofSpentState.spent

    @property
    def pending(self) -> bool:
        return self.state == ProofSpentState.pending


class Proof(BaseModel):
    """
    Value token
    """

    id: str = ""
    amount: int = 0
    secret: str = ""  # secret or message to be blinded and signed
    Y: str = ""  # hash_to_curve(secret)
    C: str = ""  # signature on secret, unblinded by wallet
    witness: Optional[str] = None  # unused, kept for wire compatibility

    def __init__(self, **data):
        super().__init__(**data)
        self.Y = hash_to_curve(self.secret.encode("utf-8")).serialize().hex()

    @classmethod
    def from_row(cls, row: RowMapping):
        return cls(
            id=row["id"],
            amount=row["amount"],
            secret=row["secret"],
            C=row["c"],
            witness=row["witness"],
        )

    def to_dict(self):
        return dict(id=self.id, amount=self.amount, secret=self.secret, C=self.C)


class BlindedMessage(BaseModel):
    """
    Blinded message or blinded secret or "output" which is to be signed by the mint
    """

    amount: int
    id: str  # Keyset id
    B_: str  # Hex-encoded blinded message
    witness: Optional[str] = None  # unused, kept for wire compatibility

    @classmethod
    def from_row(cls, row: RowMapping):
        return cls(
            amount=row["amount"],
            id=row["id"],
            B_=row["b_"],
        )


class BlindedSignature(BaseModel):
    """
    Blinded signature or "promise" which is the signature on a `BlindedMessage`
    """

    id: str
    amount: int
    C_: str  # Hex-encoded signature
    dleq: Optional[DLEQ] = None  # DLEQ proof

    @classmethod
    def from_row(cls, row: RowMapping):
        return cls(
            id=row["id"],
            amount=row["amount"],
            C_=row["c_"],
            dleq=DLEQ(e=row["dleq_e"], s=row["dleq_s"]),
        )


# ------- Quotes -------


class MeltQuoteState(Enum):
    unpaid = "UNPAID"
    pending = "PENDING"
    paid = "PAID"

    def __str__(self):
        return self.name


class MeltQuote(BaseModel):
    quote: str
    method: str
    request: str
    checking_id: str
    unit: str
    amount: int
    fee_reserve: int
    state: MeltQuoteState
    created_time: Union[int, None] = None
    paid_time: Union[int, None] = None
    fee_paid: int = 0
    payment_preimage: Optional[str] = None
    expiry: Optional[int] = None
    change: Optional[List[BlindedSignature]] = None

    @classmethod
    def from_row(cls, row: RowMapping):
        change = None
        if row["change"]:
            change = json.loads(row["change"])

        return cls(
            quote=row["quote"],
            method=row["method"],
            request=row["request"],
            checking_id=row["checking_id"],
            unit=row["unit"],
            amount=row["amount"],
            fee_reserve=row["fee_reserve"],
            state=MeltQuoteState(row["state"]),
            created_time=row["created_time"],
            paid_time=row["paid_time"],
            fee_paid=row["fee_paid"] or 0,
            change=change,
            expiry=row["expiry"],
            payment_preimage=row["payment_preimage"],
        )

    @property
    def unpaid(self) -> bool:
        return self.state == MeltQuoteState.unpaid

    @property
    def pending(self) -> bool:
        return self.state == MeltQuoteState.pending

    @property
    def paid(self) -> bool:
        return self.state == MeltQuoteState.paid

    # guards the `state` attribute against transitions the melt state machine does not allow
    def __setattr__(self, name, value):
        # an unpaid quote can only be set to pending or paid
        if name == "state" and self.unpaid:
            if value not in [MeltQuoteState.pending, MeltQuoteState.paid]:
                raise Exception(
                    f"Cannot change state of an unpaid melt quote to {value}."
                )
        # a paid quote can not be changed
        if name == "state" and self.paid:
            raise Exception("Cannot change state of a paid melt quote.")
        super().__setattr__(name, value)


class MintQuoteState(Enum):
    unpaid = "UNPAID"
    paid = "PAID"
    issued = "ISSUED"

    def __str__(self):
        return self.name


class MintQuote(BaseModel):
    quote: str
    method: str
    request: str
    checking_id: str
    unit: str
    amount: int
    state: MintQuoteState
    created_time: Union[int, None] = None
    paid_time: Union[int, None] = None
    expiry: Optional[int] = None

    @classmethod
    def from_row(cls, row: RowMapping):
        return cls(
            quote=row["quote"],
            method=row["method"],
            request=row["request"],
            checking_id=row["checking_id"],
            unit=row["unit"],
            amount=row["amount"],
            state=MintQuoteState(row["state"]),
            created_time=row["created_time"],
            paid_time=row["paid_time"],
            expiry=row["expiry"],
        )

    @property
    def unpaid(self) -> bool:
        return self.state == MintQuoteState.unpaid

    @property
    def paid(self) -> bool:
        return self.state == MintQuoteState.paid

    @property
    def issued(self) -> bool:
        return self.state == MintQuoteState.issued

    @property
    def expired(self) -> bool:
        return self.expiry is not None and self.expiry < int(time.time())

    def __setattr__(self, name, value):
        # an unpaid quote can only be set to paid
        if name == "state" and self.unpaid:
            if value != MintQuoteState.paid:
                raise Exception(
                    f"Cannot change state of an unpaid mint quote to {value}."
                )
        # a paid quote can only be set to issued
        if name == "state" and self.paid:
            if value != MintQuoteState.issued:
                raise Exception(f"Cannot change state of a paid mint quote to {value}.")
        # an issued quote cannot be changed
        if name == "state" and self.issued:
            raise Exception("Cannot change state of an issued mint quote.")
        super().__setattr__(name, value)


# ------- KEYSETS -------


class Unit(Enum):
    sat = 0
    msat = 1
    usd = 2
    eur = 3
    btc = 4

    def str(self, amount: int) -> str:
        if self == Unit.sat:
            return f"{amount} sat"
        elif self == Unit.msat:
            return f"{amount} msat"
        elif self == Unit.usd:
            return f"${amount/100:.2f} USD"
        elif self == Unit.eur:
            return f"{amount/100:.2f} EUR"
        elif self == Unit.btc:
            return f"{amount/1e8:.8f} BTC"
        else:
            raise Exception("Invalid unit")

    def __str__(self):
        return self.name


@dataclass
class Amount:
    unit: Unit
    amount: int

    def to(self, to_unit: Unit, round: Optional[str] = None):
        if self.unit == to_unit:
            return self

        if self.unit == Unit.sat:
            if to_unit == Unit.msat:
                return Amount(to_unit, self.amount * 1000)
            else:
                raise Exception(f"Cannot convert {self.unit.name} to {to_unit.name}")
        elif self.unit == Unit.msat:
            if to_unit == Unit.sat:
                if round == "up":
                    return Amount(to_unit, math.ceil(self.amount / 1000))
                elif round == "down":
                    return Amount(to_unit, math.floor(self.amount / 1000))
                else:
                    return Amount(to_unit, self.amount // 1000)
            else:
                raise Exception(f"Cannot convert {self.unit.name} to {to_unit.name}")
        else:
            return self

    def str(self) -> str:
        return self.unit.str(self.amount)

    def __repr__(self):
        return self.unit.str(self.amount)


class Method(Enum):
    bolt11 = 0


class MintKeyset:
    """
    Contains the keyset from the mint's perspective.

    The private keys are derived from the seed on construction and are never persisted.
    """

    id: str
    private_keys: Dict[int, PrivateKey]
    public_keys: Dict[int, PublicKey]
    active: bool
    unit: Unit
    derivation_path: str
    amounts: List[int]
    valid_from: Optional[int] = None
    valid_to: Optional[int] = None

    def __init__(
        self,
        *,
        seed: str,
        derivation_path: str,
        amounts: Optional[List[int]] = None,
        unit: Optional[str] = None,
        active: Optional[bool] = None,
        valid_from: Optional[int] = None,
        valid_to: Optional[int] = None,
        id: str = "",
    ):
        assert seed, "seed not set"
        assert derivation_path, "derivation path not set"
        self.seed = seed
        self.derivation_path = derivation_path
        self.amounts = amounts or [2**n for n in range(settings.max_order)]
        self.active = bool(active) if active is not None else False
        self.valid_from = valid_from
        self.valid_to = valid_to

        # infer unit from derivation path
        if not unit:
            self.unit = Unit(int(self.derivation_path.split("/")[2].replace("'", "")))
            logger.trace(f"Inferred unit: {self.unit.name}")
        else:
            self.unit = Unit[unit]

        self.generate_keys()

        # a stored id that does not match the derived keys means the seed has changed
        if id and id != self.id:
            raise Exception(
                f"keyset id mismatch: stored {id}, derived {self.id} for"
                f" {self.derivation_path}. Did the mint private key change?"
            )

        logger.trace(f"Loaded keyset id: {self.id} ({self.unit.name})")

    @classmethod
    def from_row(cls, row: RowMapping, seed: str):
        return cls(
            seed=seed,
            id=row["id"],
            derivation_path=row["derivation_path"],
            amounts=json.loads(row["amounts"]),
            unit=row["unit"],
            active=row["active"],
            valid_from=row["valid_from"],
            valid_to=row["valid_to"],
        )

    @property
    def counter(self) -> int:
        return counter_from_derivation_path(self.derivation_path)

    @property
    def public_keys_hex(self) -> Dict[int, str]:
        return {
            int(amount): key.serialize().hex()
            for amount, key in self.public_keys.items()
        }

    def generate_keys(self):
        """Generates keys of a keyset from a seed."""
        self.private_keys = derive_keys(self.seed, self.derivation_path, self.amounts)
        self.public_keys = derive_pubkeys(self.private_keys, self.amounts)
        self.id = derive_keyset_id(self.public_keys)
