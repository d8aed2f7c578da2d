import asyncio

import pytest

from fhegov.authorizer import DecryptionAuthorizer, build_challenge
from fhegov.codec import EnvelopeCodec
from fhegov.config import SessionConf
from fhegov.errors import (
    AuthorizationDenied,
    DecryptionAbandoned,
    DecryptionInProgress,
    ProposalNotFound,
)
from fhegov.registry import Registry
from fhegov.session import ChallengeContext, Session, generate_public_key
from fhegov.signing import MessageSigner, verify_signature, verifying_sign_fn
from fhegov.store import MemoryLedgerStore


def _session(**kw):
    conf = SessionConf(chain_id=11155111, contract_address="0xC0FFEE", duration_days=30)
    return Session.start("0xA", conf, now=1_700_000_000, public_key="0xpk", **kw)


def test_challenge_exact_template():
    ctx = ChallengeContext("0xpk", "0xC0FFEE", 11155111, 1700000000, 30)
    assert build_challenge(ctx) == (
        "publickey:0xpk\n"
        "contractAddresses:0xC0FFEE\n"
        "contractsChainId:11155111\n"
        "startTimestamp:1700000000\n"
        "durationDays:30"
    )


def test_challenge_is_deterministic():
    ctx = ChallengeContext(generate_public_key(), "0xC0FFEE", 1, 1700000000, 10)
    first = build_challenge(ctx).encode("utf-8")
    for _ in range(5):
        assert build_challenge(ctx).encode("utf-8") == first
    assert not build_challenge(ctx).endswith("\n")
    auth = DecryptionAuthorizer(EnvelopeCodec(), _session())
    assert auth.challenge() == auth.challenge()


def test_generated_public_key_shape():
    pk = generate_public_key()
    assert pk.startswith("0x") and len(pk) == 2002
    int(pk[2:], 16)


def test_decrypt_after_signature():
    codec = EnvelopeCodec()
    auth = DecryptionAuthorizer(codec, _session())
    seen = []

    def sign(message):
        seen.append(message)
        return "0xsig"

    assert asyncio.run(auth.request_decryption(codec.encrypt(42), sign)) == 42
    assert seen == [auth.challenge()]
    assert auth.session.decrypting is False


def test_async_signer_is_awaited():
    codec = EnvelopeCodec()
    auth = DecryptionAuthorizer(codec, _session())

    async def sign(message):
        await asyncio.sleep(0)
        return b"\x01"

    assert asyncio.run(auth.request_decryption(codec.encrypt(2.5), sign)) == 2.5


def _refuse(message):
    raise RuntimeError("user rejected the request")


@pytest.mark.parametrize(
    "sign",
    [
        _refuse,
        lambda m: None,
        lambda m: "",
    ],
    ids=["raises", "none", "empty"],
)
def test_rejected_signature_releases_nothing(sign):
    codec = EnvelopeCodec()
    auth = DecryptionAuthorizer(codec, _session())
    calls = []
    real_decrypt = codec.decrypt
    codec.decrypt = lambda e: calls.append(e) or real_decrypt(e)
    with pytest.raises(AuthorizationDenied):
        asyncio.run(auth.request_decryption(codec.encrypt(42), sign))
    assert calls == []
    assert auth.session.decrypting is False


def test_second_request_while_pending_is_rejected():
    codec = EnvelopeCodec()
    auth = DecryptionAuthorizer(codec, _session())

    async def scenario():
        release = asyncio.Event()

        async def slow_sign(message):
            await release.wait()
            return "sig"

        first = asyncio.ensure_future(auth.request_decryption(codec.encrypt(1), slow_sign))
        await asyncio.sleep(0)
        with pytest.raises(DecryptionInProgress):
            await auth.request_decryption(codec.encrypt(2), lambda m: "sig")
        release.set()
        return await first

    assert asyncio.run(scenario()) == 1
    # the guard is released once the first request settles
    assert asyncio.run(auth.request_decryption(codec.encrypt(2), lambda m: "sig")) == 2


def test_result_discarded_when_view_closes():
    codec = EnvelopeCodec()
    session = _session()
    session.open_view("p1")
    auth = DecryptionAuthorizer(codec, session)

    def sign_then_close(message):
        session.close_view()
        return "sig"

    with pytest.raises(DecryptionAbandoned):
        asyncio.run(auth.request_decryption(codec.encrypt(42), sign_then_close))
    assert session.decrypting is False


def test_proposal_decryption_and_missing_proposal():
    codec = EnvelopeCodec()
    registry = Registry(MemoryLedgerStore(), codec)
    pid = asyncio.run(registry.submit_proposal("t", "", "economy", 7, "0xA"))
    auth = DecryptionAuthorizer(codec, _session())
    assert asyncio.run(auth.request_proposal_decryption(registry, pid, lambda m: "sig")) == 7
    with pytest.raises(ProposalNotFound):
        asyncio.run(auth.request_proposal_decryption(registry, "missing", lambda m: "sig"))
    assert auth.session.decrypting is False


def test_wallet_signature_over_challenge():
    wallet = MessageSigner()
    auth = DecryptionAuthorizer(EnvelopeCodec(), _session())
    challenge = auth.challenge()
    sig = wallet.sign(challenge)
    assert verify_signature(wallet.public_key, challenge, sig)
    assert not verify_signature(wallet.public_key, challenge + "x", sig)
    assert not verify_signature(MessageSigner().public_key, challenge, sig)
    assert not verify_signature(wallet.public_key, challenge, "zz")

    assert verifying_sign_fn(wallet.public_key, sig)(challenge) == sig
    with pytest.raises(AuthorizationDenied):
        verifying_sign_fn(wallet.public_key, sig)("another challenge")


def test_wallet_key_file_round_trip(tmp_path):
    wallet = MessageSigner()
    path = tmp_path / "wallet.json"
    wallet.save(str(path))
    again = MessageSigner.from_file(str(path))
    assert again.address == wallet.address
    assert again.address.startswith("0x") and len(again.address) == 42


def test_guard_held_by_another_thread_rejects_request():
    import threading

    codec = EnvelopeCodec()
    session = _session()
    auth = DecryptionAuthorizer(codec, session)
    held, done = threading.Event(), threading.Event()

    def other_worker():
        with session.guard:
            held.set()
            done.wait(5)

    t = threading.Thread(target=other_worker)
    t.start()
    try:
        assert held.wait(5)
        with pytest.raises(DecryptionInProgress):
            asyncio.run(auth.request_decryption(codec.encrypt(1), lambda m: "sig"))
    finally:
        done.set()
        t.join()
    assert asyncio.run(auth.request_decryption(codec.encrypt(1), lambda m: "sig")) == 1


def test_session_expiry():
    session = _session()
    assert not session.expired(now=1_700_000_000 + 29 * 86400)
    assert session.expired(now=1_700_000_000 + 30 * 86400)
