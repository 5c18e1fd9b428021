import base64
import hashlib
import os
from typing import Dict, List

from bip32 import BIP32

from .secp import PrivateKey, PublicKey


def derivation_path_for(unit_index: int, counter: int) -> str:
    """Derivation path of the keyset for a unit at a given rotation counter."""
    return f"m/0'/{unit_index}'/{counter}'"


def counter_from_derivation_path(derivation_path: str) -> int:
    return int(derivation_path.split("/")[-1].replace("'", ""))


def derive_keys(seed: str, derivation_path: str, amounts: List[int]):
    """
    Deterministic derivation of keys for 2^n values.
    """
    bip32 = BIP32.from_seed(seed.encode())
    orders_str = [f"/{a}'" for a in range(len(amounts))]
    return {
        a: PrivateKey(
            bip32.get_privkey_from_path(derivation_path + orders_str[i]),
            raw=True,
        )
        for i, a in enumerate(amounts)
    }


def derive_pubkey(seed: str) -> PublicKey:
    return PrivateKey(
        hashlib.sha256((seed).encode("utf-8")).digest()[:32],
        raw=True,
    ).pubkey


def derive_pubkeys(keys: Dict[int, PrivateKey], amounts: List[int]):
    return {amt: keys[amt].pubkey for amt in amounts}


def derive_keyset_id(keys: Dict[int, PublicKey]) -> str:
    """Deterministic derivation keyset_id from set of public keys."""
    # sort public keys by amount
    sorted_keys = dict(sorted(keys.items()))
    pubkeys_concat = b"".join([p.serialize() for _, p in sorted_keys.items()])
    return f"00{hashlib.sha256(pubkeys_concat).hexdigest()[:14]}"


def random_hash() -> str:
    """Returns a base64-urlsafe encoded random hash."""
    return base64.urlsafe_b64encode(os.urandom(30)).decode()
