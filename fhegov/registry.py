"""Proposal registry on top of a ledger store.

Layout in the store:
- ``proposal_keys``: JSON array of proposal ids (the index)
- ``proposal_<id>``: JSON record, see :meth:`Proposal.to_record`

The registry keeps no authoritative state. ``cached`` is only the last
listing, rebuilt on every :meth:`Registry.list_proposals` call.

Known limitation: ``cast_vote`` and the index append in ``submit_proposal``
are read-modify-write sequences with no compare-and-set underneath. Two
sessions voting on the same proposal at the same time can both read the
old tally and both write ``old + 1``, losing one vote; two concurrent
submissions can likewise drop one id from the index (its record stays
stored but unlisted). The store contract offers no primitive to prevent
this, so it is left visible rather than papered over with a local lock.
"""

from __future__ import annotations

import json
import logging
import math
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .codec import Codec, EncryptedValue, EnvelopeCodec, Number
from .errors import MalformedCiphertext, MalformedRecord, ProposalNotFound, StoreUnavailable
from .store import INDEX_KEY, LedgerStore, record_key

log = logging.getLogger(__name__)

CATEGORIES = ("economy", "governance", "environment", "technology", "other")
STATUSES = ("pending", "approved", "rejected")

_ID_ALPHABET = string.digits + string.ascii_lowercase
_KNOWN_FIELDS = {
    "title", "description", "data", "timestamp", "proposer",
    "category", "status", "votesFor", "votesAgainst",
}


def new_proposal_id(now: Optional[float] = None) -> str:
    """Millisecond timestamp prefix plus 7 random base36 characters."""
    ms = int((time.time() if now is None else now) * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"{ms}-{suffix}"


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


@dataclass
class Proposal:
    id: str
    title: str
    description: str
    encrypted_parameter: EncryptedValue
    created_at: Number
    proposer: str
    category: str
    status: str = "pending"
    votes_for: int = 0
    votes_against: int = 0
    # fields written by other clients, carried through untouched
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        record = dict(self.extra)
        record.update(
            {
                "title": self.title,
                "description": self.description,
                "data": str(self.encrypted_parameter),
                "timestamp": self.created_at,
                "proposer": self.proposer,
                "category": self.category,
                "status": self.status,
                "votesFor": self.votes_for,
                "votesAgainst": self.votes_against,
            }
        )
        return record

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_record()).encode("utf-8")

    @classmethod
    def from_record(cls, proposal_id: str, record: Any) -> "Proposal":
        key = record_key(proposal_id)
        if not isinstance(record, dict):
            raise MalformedRecord(key, "record is not a JSON object")
        title = record.get("title")
        data = record.get("data")
        ts = record.get("timestamp")
        if not isinstance(title, str):
            raise MalformedRecord(key, "missing title")
        if not isinstance(data, str):
            raise MalformedRecord(key, "missing encrypted data")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts):
            raise MalformedRecord(key, "missing timestamp")
        try:
            encrypted = EncryptedValue.from_text(data)
        except MalformedCiphertext as e:
            raise MalformedRecord(key, str(e)) from None
        status = record.get("status")
        return cls(
            id=proposal_id,
            title=title,
            description=str(record.get("description") or ""),
            encrypted_parameter=encrypted,
            created_at=ts,
            proposer=str(record.get("proposer") or ""),
            category=str(record.get("category") or "other"),
            status=status if status in STATUSES else "pending",
            votes_for=_count(record.get("votesFor")),
            votes_against=_count(record.get("votesAgainst")),
            extra={k: v for k, v in record.items() if k not in _KNOWN_FIELDS},
        )

    @classmethod
    def from_bytes(cls, proposal_id: str, raw: bytes) -> "Proposal":
        try:
            record = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedRecord(record_key(proposal_id), str(e)) from None
        return cls.from_record(proposal_id, record)


@dataclass(frozen=True)
class VoteTally:
    proposal_id: str
    votes_for: int
    votes_against: int


def parse_index(raw: bytes) -> List[str]:
    """Decode the ``proposal_keys`` blob; empty bytes is an empty index.

    Raises MalformedRecord when the blob is present but unreadable.
    """
    if not raw or not raw.strip():
        return []
    try:
        ids = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedRecord(INDEX_KEY, str(e)) from None
    if not isinstance(ids, list):
        raise MalformedRecord(INDEX_KEY, "index is not a JSON array")
    out: List[str] = []
    seen = set()
    for pid in ids:
        if isinstance(pid, str) and pid not in seen:
            seen.add(pid)
            out.append(pid)
    return out


class Registry:
    def __init__(
        self,
        store: LedgerStore,
        codec: Optional[Codec] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.codec = codec or EnvelopeCodec()
        self.clock = clock
        self.cached: List[Proposal] = []

    async def list_proposals(self) -> List[Proposal]:
        """All readable proposals, newest first; ties keep index order."""
        if not await self.store.available():
            log.info("ledger unavailable, listing is empty")
            self.cached = []
            return []
        try:
            ids = parse_index(await self.store.get(INDEX_KEY))
        except MalformedRecord as e:
            log.warning("skipping unreadable proposal index: %s", e)
            self.cached = []
            return []
        except StoreUnavailable as e:
            log.warning("ledger dropped while reading the index: %s", e)
            self.cached = []
            return []

        proposals: List[Proposal] = []
        for pid in ids:
            try:
                raw = await self.store.get(record_key(pid))
            except StoreUnavailable as e:
                # partial listing: one unreachable record is skipped like a corrupt one
                log.warning("skipping proposal %s, ledger read failed: %s", pid, e)
                continue
            if not raw:
                # index written by a concurrent submit whose record is not visible yet
                log.debug("index lists %s but no record is stored", pid)
                continue
            try:
                proposals.append(Proposal.from_bytes(pid, raw))
            except MalformedRecord as e:
                log.warning("skipping proposal: %s", e)
        proposals.sort(key=lambda p: p.created_at, reverse=True)
        self.cached = proposals
        return proposals

    async def get_proposal(self, proposal_id: str) -> Proposal:
        if not await self.store.available():
            raise StoreUnavailable("ledger store is offline")
        raw = await self.store.get(record_key(proposal_id))
        if not raw:
            raise ProposalNotFound(proposal_id)
        return Proposal.from_bytes(proposal_id, raw)

    async def submit_proposal(
        self,
        title: str,
        description: str,
        category: str,
        value: Number,
        proposer: str,
    ) -> str:
        """Encrypt ``value``, store the record, append its id to the index.

        Returns the new id only once both writes went through; a failed
        write raises WriteFailed and the proposal counts as not submitted.
        """
        if not isinstance(title, str) or not title.strip():
            raise ValueError("title is required")
        if category not in CATEGORIES:
            raise ValueError(f"category must be one of {', '.join(CATEGORIES)}")
        if not isinstance(proposer, str) or not proposer:
            raise ValueError("proposer is required")
        encrypted = self.codec.encrypt(value)

        if not await self.store.available():
            raise StoreUnavailable("ledger store is offline")

        now = self.clock()
        proposal = Proposal(
            id=new_proposal_id(now),
            title=title.strip(),
            description=description or "",
            encrypted_parameter=encrypted,
            created_at=int(now),
            proposer=proposer,
            category=category,
        )
        await self.store.put(record_key(proposal.id), proposal.to_bytes())

        # last writer wins on the index blob
        ids = parse_index(await self.store.get(INDEX_KEY))
        ids.append(proposal.id)
        await self.store.put(INDEX_KEY, json.dumps(ids).encode("utf-8"))
        log.info("proposal %s submitted by %s (%s)", proposal.id, proposer, category)
        return proposal.id

    async def cast_vote(self, proposal_id: str, in_favor: bool) -> VoteTally:
        """Read the record, bump one counter by 1, write the record back.

        Not atomic: see the module docstring for the lost-update case.
        """
        proposal = await self.get_proposal(proposal_id)
        if in_favor:
            proposal.votes_for += 1
        else:
            proposal.votes_against += 1
        await self.store.put(record_key(proposal_id), proposal.to_bytes())
        log.info(
            "vote %s on %s -> %d/%d",
            "for" if in_favor else "against",
            proposal_id,
            proposal.votes_for,
            proposal.votes_against,
        )
        return VoteTally(proposal_id, proposal.votes_for, proposal.votes_against)


## --- read-side helpers ------------------------------------------------------


@dataclass(frozen=True)
class ProposalStats:
    total: int
    pending: int
    approved: int
    rejected: int

    @classmethod
    def from_proposals(cls, proposals: Iterable[Proposal]) -> "ProposalStats":
        counts = {s: 0 for s in STATUSES}
        total = 0
        for p in proposals:
            total += 1
            counts[p.status] = counts.get(p.status, 0) + 1
        return cls(total, counts["pending"], counts["approved"], counts["rejected"])


def filter_proposals(
    proposals: Iterable[Proposal], query: str = "", category: Optional[str] = None
) -> List[Proposal]:
    """Case-insensitive title search, optionally limited to one category."""
    q = (query or "").strip().lower()
    return [
        p
        for p in proposals
        if (not q or q in p.title.lower()) and (not category or p.category == category)
    ]


def is_owner(proposal: Proposal, account: Optional[str]) -> bool:
    return bool(account) and proposal.proposer.lower() == account.lower()
