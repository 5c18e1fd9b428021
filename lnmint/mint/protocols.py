"""Attributes the ledger mixins rely on. `Ledger` provides all of them."""

from typing import Dict, List, Mapping, Protocol

from ..core.base import Method, MintKeyset, Unit
from ..core.crypto.secp import PublicKey
from ..core.db import Database
from ..lightning.base import LightningBackend
from .crud import LedgerCrud
from .db.read import DbReadHelper
from .db.write import DbWriteHelper


class SupportsSeed(Protocol):
    # master secret all keysets are derived from
    seed: str


class SupportsKeysets(Protocol):
    amounts: List[int]
    # every keyset loaded at startup or rotated in since, by id
    keysets: Dict[str, MintKeyset]


class SupportsBackends(Protocol):
    backends: Mapping[Method, Mapping[Unit, LightningBackend]]


class SupportsDb(Protocol):
    db: Database
    crud: LedgerCrud
    db_read: DbReadHelper
    db_write: DbWriteHelper


class SupportsPubkey(Protocol):
    # identity key published in the mint info
    pubkey: PublicKey
