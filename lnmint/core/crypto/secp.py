from typing import Optional

from coincurve import PrivateKey as CoincurvePrivateKey
from coincurve import PublicKey as CoincurvePublicKey


class PublicKey(CoincurvePublicKey):
    """secp256k1 point with the group operations used by the blind signature scheme."""

    def __init__(self, pubkey: bytes, raw: bool = True):
        # `raw` is accepted for call-site compatibility, keys are always raw bytes
        super().__init__(pubkey)

    def __add__(self, pubkey2: "PublicKey") -> "PublicKey":
        if not isinstance(pubkey2, CoincurvePublicKey):
            raise TypeError(f"can't add pubkey and {pubkey2.__class__}")
        combined = CoincurvePublicKey.combine_keys([self, pubkey2])
        return PublicKey(combined.format())

    def __neg__(self) -> "PublicKey":
        serialized = self.format()
        first_byte, remainder = serialized[:1], serialized[1:]
        # flip odd/even byte
        first_byte = {b"\x03": b"\x02", b"\x02": b"\x03"}[first_byte]
        return PublicKey(first_byte + remainder)

    def __sub__(self, pubkey2: "PublicKey") -> "PublicKey":
        if not isinstance(pubkey2, CoincurvePublicKey):
            raise TypeError(f"can't subtract {pubkey2.__class__} from pubkey")
        return self + (-PublicKey(pubkey2.format()))

    def __eq__(self, pubkey2) -> bool:
        if not isinstance(pubkey2, CoincurvePublicKey):
            return False
        return self.format() == pubkey2.format()

    def __hash__(self) -> int:
        return hash(self.format())

    def mult(self, privkey: "PrivateKey") -> "PublicKey":
        if not isinstance(privkey, CoincurvePrivateKey):
            raise TypeError("can't multiply with non privatekey")
        return PublicKey(self.multiply(privkey.secret).format())

    def serialize(self, compressed: bool = True) -> bytes:
        return self.format(compressed=compressed)


class PrivateKey(CoincurvePrivateKey):
    def __init__(self, privkey: Optional[bytes] = None, raw: bool = True):
        super().__init__(privkey)

    @property
    def pubkey(self) -> PublicKey:
        return PublicKey(self.public_key.format())

    @property
    def private_key(self) -> bytes:
        return self.secret

    def serialize(self) -> str:
        return self.to_hex()

    def tweak_add(self, scalar: bytes) -> bytes:
        """Returns (self + scalar) mod n as raw bytes."""
        return self.add(scalar).secret

    def tweak_mul(self, scalar: bytes) -> bytes:
        """Returns (self * scalar) mod n as raw bytes."""
        return self.multiply(scalar).secret
