"""Flask API for the governance core.

Endpoints:
- GET /health -> {"available": bool}
- GET /proposals[?q=...&category=...] -> {"proposals": [...], "stats": {...}}
- POST /proposals -> submit {"title", "description", "category", "value", "proposer"}
- GET /proposals/<id> -> one proposal
- POST /proposals/<id>/vote -> {"in_favor": bool}
- GET /challenge?account=... -> challenge text the account must sign
- POST /proposals/<id>/decrypt -> {"account", "signer_key", "signature"}
- GET|PUT /ledger/<key> -> raw key/value access, backs HttpLedgerStore
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request

from .authorizer import DecryptionAuthorizer
from .codec import Codec, make_codec
from .config import Settings, load_settings
from .errors import (
    AuthorizationDenied,
    DecryptionAbandoned,
    DecryptionInProgress,
    MalformedCiphertext,
    MalformedRecord,
    ProposalNotFound,
    StoreUnavailable,
    WriteFailed,
)
from .registry import Proposal, ProposalStats, Registry, filter_proposals
from .session import Session
from .signing import account_address, verifying_sign_fn
from .store import LedgerStore, make_store

log = logging.getLogger(__name__)


@dataclass
class AppState:
    settings: Settings
    store: LedgerStore
    codec: Codec
    registry: Registry
    # account -> session, oldest first; sessions fix the challenge's start timestamp
    sessions: "OrderedDict[str, Session]" = field(default_factory=OrderedDict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def _prune(self) -> None:
        for account in [a for a, s in self.sessions.items() if s.expired() and not s.decrypting]:
            del self.sessions[account]
        idle = [a for a, s in self.sessions.items() if not s.decrypting]
        while len(self.sessions) >= self.settings.server.max_sessions and idle:
            del self.sessions[idle.pop(0)]

    def session_for(self, account: str) -> Session:
        with self.lock:
            session = self.sessions.get(account)
            if session is None or session.expired():
                self._prune()
                session = Session.start(account, self.settings.session)
                self.sessions[account] = session
            return session

    def existing_session(self, account: str) -> Optional[Session]:
        with self.lock:
            session = self.sessions.get(account)
            if session is None or session.expired():
                return None
            return session


def proposal_json(p: Proposal) -> Dict[str, Any]:
    return {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "encrypted_data": str(p.encrypted_parameter),
        "timestamp": p.created_at,
        "proposer": p.proposer,
        "category": p.category,
        "status": p.status,
        "votesFor": p.votes_for,
        "votesAgainst": p.votes_against,
    }


def _error(msg: str, code: int, **extra: Any):
    body = {"error": msg}
    body.update(extra)
    return jsonify(body), code


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    codec: Optional[Codec] = None,
) -> Flask:
    settings = settings or load_settings()
    store = store or make_store(settings.ledger)
    codec = codec or make_codec(settings.codec.backend, settings.codec.fernet_key)
    state = AppState(settings, store, codec, Registry(store, codec))

    app = Flask(__name__)
    app.extensions["fhegov"] = state

    @app.route("/health", methods=["GET"])
    async def health():
        return jsonify({"available": await state.store.available()})

    @app.route("/proposals", methods=["GET"])
    async def list_proposals():
        proposals = await state.registry.list_proposals()
        stats = ProposalStats.from_proposals(proposals)
        shown = filter_proposals(proposals, request.args.get("q", ""), request.args.get("category"))
        return jsonify(
            {
                "proposals": [proposal_json(p) for p in shown],
                "stats": {
                    "total": stats.total,
                    "pending": stats.pending,
                    "approved": stats.approved,
                    "rejected": stats.rejected,
                },
            }
        )

    @app.route("/proposals", methods=["POST"])
    async def submit_proposal():
        data = request.get_json(silent=True)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return _error("request body must be a JSON object", 400)
        try:
            pid = await state.registry.submit_proposal(
                data.get("title", ""),
                data.get("description", ""),
                data.get("category", "economy"),
                data.get("value"),
                data.get("proposer", ""),
            )
        except (ValueError, TypeError) as e:
            return _error(str(e), 400)
        except StoreUnavailable as e:
            return _error("ledger unavailable", 503, detail=str(e))
        except WriteFailed as e:
            return _error("submission not recorded", 502, detail=str(e))
        return jsonify({"status": "submitted", "id": pid}), 201

    @app.route("/proposals/<proposal_id>", methods=["GET"])
    async def get_proposal(proposal_id: str):
        try:
            p = await state.registry.get_proposal(proposal_id)
        except ProposalNotFound:
            return _error("proposal not found", 404)
        except MalformedRecord as e:
            return _error("proposal record unreadable", 500, detail=str(e))
        except StoreUnavailable:
            return _error("ledger unavailable", 503)
        return jsonify(proposal_json(p))

    @app.route("/proposals/<proposal_id>/vote", methods=["POST"])
    async def vote(proposal_id: str):
        data = request.get_json(silent=True)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return _error("request body must be a JSON object", 400)
        in_favor = data.get("in_favor")
        if not isinstance(in_favor, bool):
            return _error("in_favor must be true or false", 400)
        try:
            tally = await state.registry.cast_vote(proposal_id, in_favor)
        except ProposalNotFound:
            return _error("proposal not found", 404)
        except MalformedRecord as e:
            return _error("proposal record unreadable", 500, detail=str(e))
        except StoreUnavailable:
            return _error("ledger unavailable", 503)
        except WriteFailed as e:
            return _error("vote not recorded", 502, detail=str(e))
        return jsonify({"id": proposal_id, "votesFor": tally.votes_for, "votesAgainst": tally.votes_against})

    @app.route("/challenge", methods=["GET"])
    def challenge():
        account = request.args.get("account")
        if not account:
            return _error("missing account", 400)
        session = state.session_for(account)
        auth = DecryptionAuthorizer(state.codec, session)
        return jsonify({"account": account, "challenge": auth.challenge()})

    @app.route("/proposals/<proposal_id>/decrypt", methods=["POST"])
    async def decrypt(proposal_id: str):
        data = request.get_json(silent=True)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return _error("request body must be a JSON object", 400)
        account = data.get("account")
        signer_key = data.get("signer_key")
        signature = data.get("signature")
        if not all(isinstance(v, str) and v for v in (account, signer_key, signature)):
            return _error("missing or invalid fields", 400)
        session = state.existing_session(account)
        if session is None:
            return _error("request a challenge first", 400)
        try:
            if account_address(signer_key) != account:
                return _error("signer key does not belong to account", 403)
        except ValueError:
            return _error("signer_key must be hex", 400)

        auth = DecryptionAuthorizer(state.codec, session)
        try:
            value = await auth.request_proposal_decryption(
                state.registry, proposal_id, verifying_sign_fn(signer_key, signature)
            )
        except AuthorizationDenied as e:
            return _error("authorization denied", 403, detail=str(e))
        except DecryptionInProgress:
            return _error("a decryption is already pending", 409)
        except DecryptionAbandoned:
            return _error("decryption abandoned", 409)
        except ProposalNotFound:
            return _error("proposal not found", 404)
        except (MalformedCiphertext, MalformedRecord) as e:
            return _error("stored ciphertext unreadable", 500, detail=str(e))
        except StoreUnavailable:
            return _error("ledger unavailable", 503)
        return jsonify({"id": proposal_id, "value": value})

    @app.route("/ledger/<key>", methods=["GET"])
    async def ledger_get(key: str):
        raw = await state.store.get(key)
        if not raw:
            return _error("no such key", 404)
        return Response(raw, mimetype="application/octet-stream")

    @app.route("/ledger/<key>", methods=["PUT"])
    async def ledger_put(key: str):
        try:
            await state.store.put(key, request.get_data())
        except WriteFailed as e:
            return _error("write failed", 502, detail=str(e))
        return jsonify({"status": "ok", "key": key})

    return app


def main():
    from .logging_setup import configure_logging

    settings = load_settings()
    configure_logging(settings.logging)
    app = create_app(settings)
    log.info("serving on %s:%d (ledger=%s)", settings.server.host, settings.server.port, settings.ledger.driver)
    app.run(host=settings.server.host, port=settings.server.port, debug=settings.server.debug)


if __name__ == "__main__":
    main()
