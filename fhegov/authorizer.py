"""Signature-gated decryption.

A plaintext is released only after the session's signer has signed the
challenge built from the session context. The signature authenticates the
user's intent to view; it is not bound to a particular ciphertext or
proposal, so one signed challenge would authorize any proposal in the same
session.
"""

from __future__ import annotations

import inspect
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Union

from .codec import Codec, EncryptedValue, Number
from .errors import AuthorizationDenied, DecryptionAbandoned, DecryptionInProgress
from .registry import Registry
from .session import ChallengeContext, Session

log = logging.getLogger(__name__)

Signature = Union[str, bytes]
SignFn = Callable[[str], Union[Signature, Awaitable[Signature]]]


def build_challenge(ctx: ChallengeContext) -> str:
    """Canonical challenge text; identical inputs give identical bytes."""
    return (
        f"publickey:{ctx.public_key}\n"
        f"contractAddresses:{ctx.contract_address}\n"
        f"contractsChainId:{ctx.chain_id}\n"
        f"startTimestamp:{ctx.start_timestamp}\n"
        f"durationDays:{ctx.duration_days}"
    )


async def _obtain_signature(sign_fn: SignFn, message: str) -> Any:
    try:
        signature = sign_fn(message)
        if inspect.isawaitable(signature):
            signature = await signature
    except AuthorizationDenied:
        raise
    except Exception as e:
        # wallet rejections surface as arbitrary exceptions
        raise AuthorizationDenied(f"signer refused the challenge: {e}") from e
    if not signature:
        raise AuthorizationDenied("signer returned no signature")
    return signature


class DecryptionAuthorizer:
    def __init__(self, codec: Codec, session: Session):
        self.codec = codec
        self.session = session

    def challenge(self) -> str:
        return build_challenge(self.session.challenge_context())

    @contextmanager
    def _in_flight(self) -> Iterator[int]:
        if not self.session.guard.acquire(blocking=False):
            raise DecryptionInProgress("a decryption request is already pending")
        self.session.decrypting = True
        try:
            yield self.session.view_generation
        finally:
            self.session.decrypting = False
            self.session.guard.release()

    async def _decrypt_signed(self, encrypted: EncryptedValue, sign_fn: SignFn, generation: int) -> Number:
        try:
            await _obtain_signature(sign_fn, self.challenge())
        except AuthorizationDenied as e:
            log.warning("decryption denied for %s: %s", self.session.account, e)
            raise
        if self.session.view_generation != generation:
            raise DecryptionAbandoned("session moved on before the signature arrived")
        return self.codec.decrypt(encrypted)

    async def request_decryption(self, encrypted: EncryptedValue, sign_fn: SignFn) -> Number:
        """Have ``sign_fn`` sign the challenge, then decrypt ``encrypted``.

        Raises AuthorizationDenied when the signer refuses or fails,
        DecryptionInProgress when another request of this session is pending,
        DecryptionAbandoned when the view changed while waiting.
        """
        with self._in_flight() as generation:
            return await self._decrypt_signed(encrypted, sign_fn, generation)

    async def request_proposal_decryption(self, registry: Registry, proposal_id: str, sign_fn: SignFn) -> Number:
        with self._in_flight() as generation:
            proposal = await registry.get_proposal(proposal_id)
            value = await self._decrypt_signed(proposal.encrypted_parameter, sign_fn, generation)
        log.info("proposal %s parameter revealed to %s", proposal_id, self.session.account)
        return value
