"""Reference runner that walks through the governance flow end to end.

Run this script from the repository root to submit a proposal, vote on it,
show the lost-update case and reveal the encrypted parameter.
"""

import argparse
import asyncio

from fhegov import authorizer as authz
from fhegov.codec import TransformKind, make_codec
from fhegov.config import build_settings
from fhegov.errors import AuthorizationDenied
from fhegov.logging_setup import configure_logging
from fhegov.registry import ProposalStats, Registry
from fhegov.session import Session
from fhegov.signing import MessageSigner
from fhegov.store import make_store


def _print_heading(msg: str):
    print()
    print(msg)


def _print_kv(key: str, value: str):
    print(f"  {key}: {value}")


async def run(settings):
    store = make_store(settings.ledger)
    codec = make_codec(settings.codec.backend, settings.codec.fernet_key)
    registry = Registry(store, codec)
    wallet = MessageSigner()
    session = Session.start(wallet.address, settings.session)

    _print_heading("[1] Submit an encrypted proposal")
    pid = await registry.submit_proposal(
        "Adjust treasury rate", "Raise the base rate parameter", "economy", 42, wallet.address
    )
    _print_kv("id", pid)

    _print_heading("[2] List proposals")
    for p in await registry.list_proposals():
        _print_kv(p.id, f"{p.title} [{p.category}] {p.status} for={p.votes_for} against={p.votes_against}")
        _print_kv("ciphertext", str(p.encrypted_parameter)[:40] + "..")
        scaled = codec.transform(p.encrypted_parameter, TransformKind.SCALE_UP_10)
        _print_kv("increase10% (still encrypted)", str(scaled)[:40] + "..")

    _print_heading("[3] Vote")
    tally = await registry.cast_vote(pid, True)
    _print_kv("after one vote for", f"{tally.votes_for}/{tally.votes_against}")
    before = tally.votes_for
    await asyncio.gather(registry.cast_vote(pid, True), registry.cast_vote(pid, True))
    after = (await registry.get_proposal(pid)).votes_for
    _print_kv("two concurrent votes for", f"{before} -> {after} (read-modify-write, may lose one)")

    _print_heading("[4] Reveal the parameter")
    auth = authz.DecryptionAuthorizer(codec, session)
    print("  challenge:")
    for line in auth.challenge().splitlines():
        print("    " + (line[:60] + ".." if len(line) > 60 else line))
    value = await auth.request_proposal_decryption(registry, pid, wallet.sign)
    _print_kv("decrypted", str(value))

    def reject(message):
        raise PermissionError("user rejected the signature request")

    try:
        await auth.request_proposal_decryption(registry, pid, reject)
    except AuthorizationDenied as e:
        _print_kv("rejected signer", f"denied ({e})")

    stats = ProposalStats.from_proposals(await registry.list_proposals())
    _print_heading("[5] Stats")
    _print_kv("total", str(stats.total))
    _print_kv("pending", str(stats.pending))


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--config", default=None, help="YAML settings file")
    args = p.parse_args()
    settings = build_settings(args.config)
    configure_logging(settings.logging)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
