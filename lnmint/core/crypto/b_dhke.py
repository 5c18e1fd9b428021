# Don't trust me with cryptography.

"""
Blind Diffie-Hellman key exchange (BDHKE) between a client (Alice) and the mint (Bob).

Bob (Mint):
K = k*G
return K

Alice (Client):
Y = hash_to_curve(secret_message)
r = random blinding factor
B_ = Y + r*G
return B_

Bob:
C_ = k*B_
  (= k*Y + k*r*G)
return C_

Alice:
C = C_ - r*K
 (= C_ - k*r*G)
 (= k*Y)
return C, secret_message

Bob:
Y = hash_to_curve(secret_message)
C == k*Y
If true, C must have originated from Bob


# DLEQ Proof

(These steps occur once Bob returns C_)

Bob:
p = random nonce
R1 = p*G
R2 = p*B_
e = hash(R1,R2,K,C_)
s = p + e*k
return e, s

Alice:
R1 = s*G - e*K
R2 = s*B_ - e*C_
e == hash(R1,R2,K,C_)

If true, k in K = k*G must be equal to k in C_ = k*B_
"""

import hashlib
from typing import Optional, Tuple

from .secp import PrivateKey, PublicKey

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


def hash_to_curve(message: bytes) -> PublicKey:
    """Generates a secp256k1 point from a message.

    The point is generated by hashing the message with a domain separator and then
    iteratively trying to compute a point from the hash, incrementing a 4-byte
    little-endian counter until a valid x-coordinate is found.
    """
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    counter = 0
    while counter < 2**16:
        _hash = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            # will error if point does not lie on curve
            return PublicKey(b"\x02" + _hash, raw=True)
        except ValueError:
            counter += 1
    # it is statistically unlikely to reach this point
    raise ValueError("No valid point found")


def step1_alice(
    secret_msg: str, blinding_factor: Optional[PrivateKey] = None
) -> Tuple[PublicKey, PrivateKey]:
    Y: PublicKey = hash_to_curve(secret_msg.encode("utf-8"))
    r = blinding_factor or PrivateKey()
    B_: PublicKey = Y + r.pubkey
    return B_, r


def step2_bob(B_: PublicKey, k: PrivateKey) -> Tuple[PublicKey, PrivateKey, PrivateKey]:
    C_: PublicKey = B_.mult(k)
    # produce dleq proof
    e, s = step2_bob_dleq(B_, k)
    return C_, e, s


def step3_alice(C_: PublicKey, r: PrivateKey, K: PublicKey) -> PublicKey:
    C: PublicKey = C_ - K.mult(r)
    return C


def verify(k: PrivateKey, C: PublicKey, secret_msg: str) -> bool:
    Y: PublicKey = hash_to_curve(secret_msg.encode("utf-8"))
    return C == Y.mult(k)


def hash_e(*publickeys: PublicKey) -> bytes:
    e_ = ""
    for p in publickeys:
        _p = p.serialize(compressed=False).hex()
        e_ += str(_p)
    e = hashlib.sha256(e_.encode("utf-8")).digest()
    return e


def step2_bob_dleq(
    B_: PublicKey, k: PrivateKey, p_bytes: bytes = b""
) -> Tuple[PrivateKey, PrivateKey]:
    if p_bytes:
        # deterministic p for testing
        p = PrivateKey(privkey=p_bytes, raw=True)
    else:
        # normally, we generate a random p
        p = PrivateKey()

    R1 = p.pubkey  # R1 = pG
    R2: PublicKey = B_.mult(p)  # R2 = pB_
    C_: PublicKey = B_.mult(k)  # C_ = kB_
    K = k.pubkey
    e = hash_e(R1, R2, K, C_)  # e = hash(R1, R2, K, C_)
    s = p.tweak_add(k.tweak_mul(e))  # s = p + ek
    spk = PrivateKey(s, raw=True)
    epk = PrivateKey(e, raw=True)
    return epk, spk


def alice_verify_dleq(
    B_: PublicKey, C_: PublicKey, e: PrivateKey, s: PrivateKey, K: PublicKey
) -> bool:
    R1 = s.pubkey - K.mult(e)
    R2 = B_.mult(s) - C_.mult(e)
    e_bytes = e.private_key
    return e_bytes == hash_e(R1, R2, K, C_)


def carol_verify_dleq(
    secret_msg: str,
    r: PrivateKey,
    C: PublicKey,
    e: PrivateKey,
    s: PrivateKey,
    K: PublicKey,
) -> bool:
    Y: PublicKey = hash_to_curve(secret_msg.encode("utf-8"))
    C_: PublicKey = C + K.mult(r)
    B_: PublicKey = Y + r.pubkey
    return alice_verify_dleq(B_, C_, e, s, K)
