import asyncio

import pytest

from fhegov.authorizer import DecryptionAuthorizer
from fhegov.codec import FernetCodec, make_codec
from fhegov.errors import AuthorizationDenied
from fhegov.registry import Registry
from fhegov.session import Session
from fhegov.signing import MessageSigner
from fhegov.store import MemoryLedgerStore


def _world(codec=None):
    codec = codec or make_codec("envelope")
    registry = Registry(MemoryLedgerStore(), codec)
    wallet = MessageSigner()
    session = Session.start(wallet.address)
    return registry, wallet, DecryptionAuthorizer(codec, session)


@pytest.mark.parametrize("codec", [None, FernetCodec()], ids=["envelope", "fernet"])
def test_submit_list_vote_reveal(codec):
    registry, wallet, auth = _world(codec)

    async def scenario():
        pid = await registry.submit_proposal("Adjust rate", "", "economy", 42, wallet.address)
        listed = await registry.list_proposals()
        assert len(listed) == 1
        (p,) = listed
        assert (p.id, p.status, p.votes_for, p.votes_against) == (pid, "pending", 0, 0)
        tally = await registry.cast_vote(pid, True)
        assert tally.votes_for == 1
        return await auth.request_decryption(p.encrypted_parameter, wallet.sign)

    assert asyncio.run(scenario()) == 42


def test_rejecting_signer_never_yields_plaintext():
    registry, wallet, auth = _world()
    pid = asyncio.run(registry.submit_proposal("Adjust rate", "", "economy", 42, wallet.address))
    released = []

    def reject(message):
        raise PermissionError("user rejected the signature request")

    async def scenario():
        released.append(await auth.request_proposal_decryption(registry, pid, reject))

    with pytest.raises(AuthorizationDenied):
        asyncio.run(scenario())
    assert released == []
