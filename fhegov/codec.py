"""Encrypted value codec.

The codec turns a plain number into an opaque :class:`EncryptedValue` and
applies a small fixed set of transforms to it. Callers only ever see
``encrypt`` / ``decrypt`` / ``transform`` over an opaque byte blob, so a
real homomorphic backend can replace the reference ones without touching the
registry or the authorizer.

Two backends ship here:
- EnvelopeCodec: the ``FHE-<base64>`` envelope used by the reference web app
- FernetCodec: authenticated symmetric encryption; transforms run as
  decrypt -> compute -> encrypt inside the backend
"""

from __future__ import annotations

import base64
import binascii
import enum
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from .errors import MalformedCiphertext


Number = Union[int, float]

_INT_RE = re.compile(r"^-?[0-9]+$")


@dataclass(frozen=True)
class EncryptedValue:
    """Opaque ciphertext for a single number.

    Attributes
    - blob: backend-specific bytes; ASCII-safe so it can sit inside JSON
    """

    blob: bytes

    def to_bytes(self) -> bytes:
        return self.blob

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedValue":
        if not isinstance(data, (bytes, bytearray)):
            raise MalformedCiphertext("ciphertext must be bytes")
        return cls(bytes(data))

    @classmethod
    def from_text(cls, text: str) -> "EncryptedValue":
        if not isinstance(text, str):
            raise MalformedCiphertext("ciphertext text must be a string")
        try:
            return cls(text.encode("ascii"))
        except UnicodeEncodeError:
            raise MalformedCiphertext("ciphertext text is not ASCII") from None

    def __str__(self) -> str:
        return self.blob.decode("ascii", errors="replace")


class TransformKind(enum.Enum):
    IDENTITY = "identity"
    SCALE_UP_10 = "increase10%"
    SCALE_DOWN_10 = "decrease10%"
    DOUBLE = "double"

    @classmethod
    def parse(cls, name: object) -> "TransformKind":
        """Map a wire name to a transform; anything unknown is IDENTITY."""
        if isinstance(name, cls):
            return name
        for kind in cls:
            if kind.value == name or kind.name == name:
                return kind
        return cls.IDENTITY


_PLAIN_OPS: Dict[TransformKind, Callable[[Number], Number]] = {
    TransformKind.IDENTITY: lambda v: v,
    TransformKind.SCALE_UP_10: lambda v: v * 1.1,
    TransformKind.SCALE_DOWN_10: lambda v: v * 0.9,
    TransformKind.DOUBLE: lambda v: v * 2,
}


def apply_plain(value: Number, op: object) -> Number:
    """Plain-arithmetic counterpart of :meth:`Codec.transform`."""
    return _PLAIN_OPS[TransformKind.parse(op)](value)


## --- number <-> text ------------------------------------------------------


def format_number(value: object) -> str:
    # bool is an int subclass but never a parameter value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected a number, got {type(value).__name__}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("cannot encrypt a non-finite number")
        return repr(value)
    return str(value)


def parse_number(text: str) -> Number:
    text = text.strip()
    if _INT_RE.match(text):
        return int(text)
    try:
        value = float(text)
    except ValueError:
        raise MalformedCiphertext(f"payload {text[:32]!r} is not a number") from None
    if not math.isfinite(value):
        raise MalformedCiphertext("payload is not a finite number")
    return value


## --- codec contract -------------------------------------------------------


class Codec(ABC):
    """Contract every encryption backend satisfies."""

    scheme = "abstract"

    @abstractmethod
    def encrypt(self, value: Number) -> EncryptedValue:
        ...

    @abstractmethod
    def decrypt(self, encrypted: EncryptedValue) -> Number:
        ...

    def transform(self, encrypted: EncryptedValue, op: object) -> EncryptedValue:
        """Apply ``op`` so that decrypt(result) == op_plain(decrypt(encrypted)).

        The default runs decrypt -> compute -> encrypt inside the backend; a
        homomorphic backend overrides this to work on the ciphertext directly.
        """
        kind = TransformKind.parse(op)
        return self.encrypt(apply_plain(self.decrypt(encrypted), kind))


class EnvelopeCodec(Codec):
    """``FHE-`` + base64 of the decimal text. Illustrative, not confidential."""

    scheme = "envelope"
    PREFIX = b"FHE-"

    def encrypt(self, value: Number) -> EncryptedValue:
        text = format_number(value)
        return EncryptedValue(self.PREFIX + base64.b64encode(text.encode("ascii")))

    def decrypt(self, encrypted: EncryptedValue) -> Number:
        blob = _blob_of(encrypted)
        if not blob.startswith(self.PREFIX):
            raise MalformedCiphertext("missing FHE- envelope prefix")
        try:
            raw = base64.b64decode(blob[len(self.PREFIX):], validate=True)
            text = raw.decode("ascii")
        except (binascii.Error, UnicodeDecodeError):
            raise MalformedCiphertext("envelope body is not valid base64") from None
        return parse_number(text)


class FernetCodec(Codec):
    """Fernet (AES-CBC + HMAC) backend; transforms happen behind the key."""

    scheme = "fernet"

    def __init__(self, key: Optional[bytes] = None):
        self.key = key or Fernet.generate_key()
        self._fernet = Fernet(self.key)

    def encrypt(self, value: Number) -> EncryptedValue:
        text = format_number(value)
        return EncryptedValue(self._fernet.encrypt(text.encode("ascii")))

    def decrypt(self, encrypted: EncryptedValue) -> Number:
        blob = _blob_of(encrypted)
        try:
            raw = self._fernet.decrypt(blob)
        except InvalidToken:
            raise MalformedCiphertext("token was not produced by this key") from None
        return parse_number(raw.decode("ascii"))


def _blob_of(encrypted: object) -> bytes:
    if not isinstance(encrypted, EncryptedValue):
        raise MalformedCiphertext(
            f"expected EncryptedValue, got {type(encrypted).__name__}"
        )
    return encrypted.blob


def make_codec(backend: str = "envelope", key: Optional[str] = None) -> Codec:
    if backend == "envelope":
        return EnvelopeCodec()
    if backend == "fernet":
        return FernetCodec(key.encode("ascii") if key else None)
    raise ValueError(f"unknown codec backend {backend!r}")
