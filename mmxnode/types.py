"""Fixed-size byte values, hashes, bech32m addresses and transaction output keys."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from functools import total_ordering
from typing import ClassVar, Iterable, List, Tuple

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3
_MAX_LENGTH = 90
_ADDRESS_HRP = "mmx"
_ADDRESS_WORDS = 52


@total_ordering
class FixedBytes:
    """An immutable value of exactly ``SIZE`` bytes, zero by default."""

    SIZE: ClassVar[int] = 0
    __slots__ = ("_data",)

    def __init__(self, data=b""):
        if isinstance(data, (int, str)):
            raise TypeError(f"{type(self).__name__} expects bytes, not {type(data).__name__}")
        raw = bytes(data)
        if len(raw) > self.SIZE:
            raise ValueError("input size overflow")
        self._data = raw + bytes(self.SIZE - len(raw))

    @classmethod
    def from_hex(cls, text):
        """Parse a hex string holding exactly ``SIZE`` bytes."""
        try:
            raw = bytes.fromhex(text)
        except ValueError as ex:
            raise ValueError(f"invalid hex string: {text!r}") from ex
        if len(raw) != cls.SIZE:
            raise ValueError("input size mismatch")
        return cls(raw)

    def hex(self):
        return self._data.hex()

    def is_zero(self):
        return not any(self._data)

    def __bytes__(self):
        return self._data

    def __len__(self):
        return self.SIZE

    def __bool__(self):
        return not self.is_zero()

    def __add__(self, other):
        if isinstance(other, (FixedBytes, bytes, bytearray)):
            return self._data + bytes(other)
        return NotImplemented

    def __eq__(self, other):
        if isinstance(other, FixedBytes) and other.SIZE == self.SIZE:
            return self._data == other._data
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, FixedBytes) and other.SIZE == self.SIZE:
            return self._data < other._data
        return NotImplemented

    def __hash__(self):
        return hash(self._data)

    def __str__(self):
        return self.hex()

    def __repr__(self):
        return f"{type(self).__name__}({self.hex()!r})"


class Hash(FixedBytes):
    """A 32-byte SHA-256 value."""

    SIZE = 32
    __slots__ = ()

    @classmethod
    def digest(cls, data):
        """Return the SHA-256 of ``data``."""
        return cls(hashlib.sha256(bytes(data)).digest())

    @classmethod
    def ones(cls):
        return cls(b"\xff" * cls.SIZE)

    @classmethod
    def empty(cls):
        """Return the SHA-256 of no bytes."""
        return cls.digest(b"")

    def to_int(self):
        """Interpret the bytes as a little-endian 256-bit integer."""
        return int.from_bytes(bytes(self), "little")


class Address(Hash):
    """A 32-byte address written as a bech32m string with prefix ``mmx``."""

    __slots__ = ()

    @classmethod
    def from_string(cls, text):
        try:
            _, words = bech32m_decode(text)
        except ValueError as ex:
            raise ValueError(f"invalid address: {text}") from ex
        if len(words) != _ADDRESS_WORDS:
            raise ValueError(f"invalid address (size != {_ADDRESS_WORDS}): {text}")
        bits = 0
        for word in words[:51]:
            bits = (bits << 5) | (word & 0x1F)
        bits = (bits << 1) | ((words[51] >> 4) & 1)
        bits &= (1 << 256) - 1
        return cls(bits.to_bytes(32, "little"))

    def to_string(self):
        bits = self.to_int()
        words = [0] * _ADDRESS_WORDS
        words[51] = (bits & 1) << 4
        bits >>= 1
        for pos in range(50, -1, -1):
            words[pos] = bits & 0x1F
            bits >>= 5
        return bech32m_encode(_ADDRESS_HRP, words)

    def __str__(self):
        return self.to_string()


@dataclass(frozen=True, order=True)
class TxioKey:
    """Identifies one output of a transaction."""

    txid: Hash = field(default_factory=Hash)
    index: int = 0


def _polymod(values: Iterable[int]) -> int:
    generators = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
    chk = 1
    for value in values:
        top = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ value
        for bit, gen in enumerate(generators):
            if (top >> bit) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def bech32m_encode(hrp, data):
    """Encode 5-bit ``data`` words under ``hrp`` as a bech32m string."""
    words = list(data)
    if any(not 0 <= w < 32 for w in words):
        raise ValueError("data words must be 5-bit values")
    hrp = hrp.lower()
    checksum_src = _hrp_expand(hrp) + words + [0] * 6
    mod = _polymod(checksum_src) ^ _BECH32M_CONST
    checksum = [(mod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_CHARSET[w] for w in words + checksum)


def bech32m_decode(text) -> Tuple[str, List[int]]:
    """Decode a bech32m string into its prefix and 5-bit data words."""
    if any(ord(c) < 33 or ord(c) > 126 for c in text):
        raise ValueError("invalid character")
    if text.lower() != text and text.upper() != text:
        raise ValueError("mixed case")
    text = text.lower()
    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text) or len(text) > _MAX_LENGTH:
        raise ValueError("invalid separator position or length")
    hrp = text[:pos]
    try:
        words = [_CHARSET.index(c) for c in text[pos + 1:]]
    except ValueError as ex:
        raise ValueError("invalid data character") from ex
    check = _polymod(_hrp_expand(hrp) + words)
    if check == _BECH32_CONST:
        raise ValueError("bech32 encoding, expected bech32m")
    if check != _BECH32M_CONST:
        raise ValueError("invalid checksum")
    return hrp, words[:-6]