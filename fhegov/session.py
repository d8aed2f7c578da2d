"""Per-user session state, passed explicitly instead of living in globals."""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .config import SessionConf


def generate_public_key() -> str:
    """Random 2000-hex-digit public key material for the decryption challenge."""
    return "0x" + secrets.token_hex(1000)


@dataclass(frozen=True)
class ChallengeContext:
    public_key: str
    contract_address: str
    chain_id: int
    start_timestamp: int
    duration_days: int


@dataclass
class Session:
    """State of one connected user.

    ``view_generation`` is bumped whenever the user opens or closes a detail
    view; a decryption that resolves under an older generation is stale.
    """

    account: str
    chain_id: int
    contract_address: str
    public_key: str
    start_timestamp: int
    duration_days: int = 30
    decrypting: bool = False
    view_generation: int = 0
    open_proposal: Optional[str] = None
    # held while a decryption is outstanding; server requests run on threads
    guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def start(
        cls,
        account: str,
        conf: Optional[SessionConf] = None,
        now: Optional[float] = None,
        public_key: Optional[str] = None,
    ) -> "Session":
        conf = conf or SessionConf()
        return cls(
            account=account,
            chain_id=conf.chain_id,
            contract_address=conf.contract_address,
            public_key=public_key or generate_public_key(),
            start_timestamp=int(time.time() if now is None else now),
            duration_days=conf.duration_days,
        )

    def challenge_context(self) -> ChallengeContext:
        return ChallengeContext(
            public_key=self.public_key,
            contract_address=self.contract_address,
            chain_id=self.chain_id,
            start_timestamp=self.start_timestamp,
            duration_days=self.duration_days,
        )

    def open_view(self, proposal_id: str) -> None:
        self.open_proposal = proposal_id
        self.view_generation += 1

    def close_view(self) -> None:
        self.open_proposal = None
        self.view_generation += 1

    def expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.start_timestamp + self.duration_days * 86400
