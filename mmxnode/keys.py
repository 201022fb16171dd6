"""secp256k1 public keys, compact ECDSA signatures and a deterministic key wallet."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils

from .types import Address, FixedBytes, Hash

_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_HALF_ORDER = _ORDER // 2

KeyPair = Tuple[Hash, "PubKey"]


def _private_key(secret) -> ec.EllipticCurvePrivateKey:
    raw = bytes(secret)
    if len(raw) != 32:
        raise ValueError("secret key must be 32 bytes")
    value = int.from_bytes(raw, "big")
    if not 0 < value < _ORDER:
        raise ValueError("invalid secret key")
    return ec.derive_private_key(value, ec.SECP256K1())


class PubKey(FixedBytes):
    """A compressed 33-byte secp256k1 public key."""

    SIZE = 33
    __slots__ = ()

    @classmethod
    def from_secret(cls, secret):
        public = _private_key(secret).public_key()
        return cls(public.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint))

    def get_addr(self):
        """Return the address owned by this key: the SHA-256 of its bytes."""
        return Address.digest(bytes(self))

    def _public_key(self) -> ec.EllipticCurvePublicKey:
        try:
            return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(self))
        except ValueError as ex:
            raise ValueError("invalid public key") from ex


class Signature(FixedBytes):
    """A 64-byte compact ECDSA signature (r and s, big-endian, low s)."""

    SIZE = 64
    __slots__ = ()

    @classmethod
    def sign(cls, secret, message_hash):
        digest = bytes(message_hash)
        if len(digest) != 32:
            raise ValueError("message hash must be 32 bytes")
        der = _private_key(secret).sign(digest, ec.ECDSA(utils.Prehashed(hashes.SHA256())))
        r, s = utils.decode_dss_signature(der)
        if s > _HALF_ORDER:
            s = _ORDER - s
        return cls(r.to_bytes(32, "big") + s.to_bytes(32, "big"))

    def verify(self, pubkey, message_hash):
        """Check the signature; a malformed encoding raises ValueError."""
        raw = bytes(self)
        r = int.from_bytes(raw[:32], "big")
        s = int.from_bytes(raw[32:], "big")
        if r >= _ORDER or s >= _ORDER:
            raise ValueError("invalid signature encoding")
        if r == 0 or s == 0 or s > _HALF_ORDER:
            return False
        key = PubKey(pubkey)._public_key()
        digest = bytes(message_hash)
        if len(digest) != 32:
            raise ValueError("message hash must be 32 bytes")
        try:
            key.verify(utils.encode_dss_signature(r, s), digest,
                       ec.ECDSA(utils.Prehashed(hashes.SHA256())))
        except InvalidSignature:
            return False
        return True


class EcdsaWallet:
    """Keys and addresses derived deterministically from a 32-byte seed."""

    def __init__(self, seed, num_addresses):
        self._master = Hash(seed)
        self._keypairs: List[KeyPair] = []
        self._addresses: List[Address] = []
        self._index_map: Dict[Address, int] = {}
        self._keypair_map: Dict[Address, KeyPair] = {}
        for index in range(num_addresses + 1):
            keys = self.generate_keypair(index)
            addr = keys[1].get_addr()
            self._keypairs.append(keys)
            self._addresses.append(addr)
            self._index_map[addr] = index
            self._keypair_map[addr] = keys

    def get_secret(self, index):
        return self._keypairs[index][0]

    def get_pubkey(self, index):
        return self._keypairs[index][1]

    def get_address(self, index):
        return self._addresses[index]

    def get_all_addresses(self):
        return list(self._addresses)

    def find_address(self, address) -> Optional[int]:
        """Return the index of ``address``, or None if it is not ours."""
        return self._index_map.get(address)

    def get_keypair(self, key):
        """Return the key pair for an index or for one of our addresses."""
        if isinstance(key, int):
            return self._keypairs[key]
        try:
            return self._keypair_map[key]
        except KeyError:
            raise KeyError("unknown address") from None

    def generate_secret(self, path: Union[int, Sequence[int]]):
        steps = [0, path] if isinstance(path, int) else list(path)
        master_digest = Hash.digest(self._master)
        key = self._master
        for step in steps:
            inner = Hash.digest(key + Hash.digest(step.to_bytes(4, "little")))
            key = Hash.digest(inner + master_digest)
        return key

    def generate_keypair(self, path: Union[int, Sequence[int]]):
        secret = self.generate_secret(path)
        return secret, PubKey.from_secret(secret)