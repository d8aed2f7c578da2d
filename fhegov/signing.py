"""Wallet-style message signing (secp256k1 via ``ecdsa``).

Stands in for the browser wallet's "sign message" prompt: the CLI and the
demo sign decryption challenges with a local key, and the server checks the
signature it receives against the challenge it issued.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Callable, Optional

import ecdsa

from .errors import AuthorizationDenied


class MessageSigner:
    """secp256k1 key pair that signs UTF-8 messages."""

    def __init__(self, private_key: Optional[str] = None):
        if private_key:
            self._sk = ecdsa.SigningKey.from_string(bytes.fromhex(private_key), curve=ecdsa.SECP256k1)
        else:
            self._sk = ecdsa.SigningKey.generate(curve=ecdsa.SECP256k1)
        self.private_key = self._sk.to_string().hex()
        self.public_key = self._sk.get_verifying_key().to_string().hex()
        self.address = account_address(self.public_key)

    def sign(self, message: str) -> str:
        return self._sk.sign(message.encode("utf-8"), hashfunc=hashlib.sha256).hex()

    __call__ = sign

    @classmethod
    def from_file(cls, path: str) -> "MessageSigner":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(data["private_key"])

    def save(self, path: str) -> None:
        payload = {"private_key": self.private_key, "public_key": self.public_key, "address": self.address}
        Path(path).write_text(json.dumps(payload, indent=2), encoding="utf-8")


def account_address(public_key: str) -> str:
    return "0x" + hashlib.sha256(bytes.fromhex(public_key)).hexdigest()[:40]


def verify_signature(public_key: str, message: str, signature: str) -> bool:
    try:
        vk = ecdsa.VerifyingKey.from_string(bytes.fromhex(public_key), curve=ecdsa.SECP256k1)
        return vk.verify(bytes.fromhex(signature), message.encode("utf-8"), hashfunc=hashlib.sha256)
    except (ValueError, ecdsa.BadSignatureError, ecdsa.MalformedPointError):
        return False


def verifying_sign_fn(public_key: str, signature: str) -> Callable[[str], str]:
    """Sign function for a signature produced elsewhere (e.g. by an HTTP client).

    Returns the signature when it verifies over the challenge, refuses otherwise.
    """

    def sign_fn(message: str) -> str:
        if not verify_signature(public_key, message, signature):
            raise AuthorizationDenied("signature does not match the challenge")
        return signature

    return sign_fn
