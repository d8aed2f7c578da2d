"""Small CLI for interacting with the fhegov Flask server.

Usage examples:
    python cli.py submit --title "Lower fees" --category economy --value 42 --proposer 0xabc
    python cli.py list --category economy
    python cli.py vote <id> --against
    python cli.py decrypt <id> --key wallet.json
"""

import argparse
import json
import os

import requests

from fhegov.signing import MessageSigner


BASE = os.environ.get("FHEGOV_URL", "http://127.0.0.1:5000")


def _number(text: str):
    try:
        return int(text)
    except ValueError:
        return float(text)


def _show(r: requests.Response):
    try:
        print(json.dumps(r.json(), indent=2))
    except ValueError:
        print(r.status_code, r.text)


def submit(title: str, description: str, category: str, value: float, proposer: str):
    body = {
        "title": title,
        "description": description,
        "category": category,
        "value": value,
        "proposer": proposer,
    }
    _show(requests.post(f"{BASE}/proposals", json=body, timeout=5))


def list_proposals(query: str, category: str):
    params = {"q": query}
    if category:
        params["category"] = category
    _show(requests.get(f"{BASE}/proposals", params=params, timeout=5))


def vote(proposal_id: str, in_favor: bool):
    _show(requests.post(f"{BASE}/proposals/{proposal_id}/vote", json={"in_favor": in_favor}, timeout=5))


def decrypt(proposal_id: str, key_path: str):
    if key_path and os.path.exists(key_path):
        signer = MessageSigner.from_file(key_path)
    else:
        signer = MessageSigner()
        if key_path:
            signer.save(key_path)
    r = requests.get(f"{BASE}/challenge", params={"account": signer.address}, timeout=5)
    r.raise_for_status()
    challenge = r.json()["challenge"]
    body = {
        "account": signer.address,
        "signer_key": signer.public_key,
        "signature": signer.sign(challenge),
    }
    _show(requests.post(f"{BASE}/proposals/{proposal_id}/decrypt", json=body, timeout=10))


def main():
    p = argparse.ArgumentParser()
    sub = p.add_subparsers(dest="cmd")
    s = sub.add_parser("submit")
    s.add_argument("--title", required=True)
    s.add_argument("--description", default="")
    s.add_argument("--category", default="economy")
    s.add_argument("--value", type=_number, required=True)
    s.add_argument("--proposer", required=True)
    ls = sub.add_parser("list")
    ls.add_argument("--query", default="")
    ls.add_argument("--category", default="")
    v = sub.add_parser("vote")
    v.add_argument("proposal_id")
    v.add_argument("--against", action="store_true")
    d = sub.add_parser("decrypt")
    d.add_argument("proposal_id")
    d.add_argument("--key", default="", help="wallet key file (created if missing)")
    args = p.parse_args()
    if args.cmd == "submit":
        submit(args.title, args.description, args.category, args.value, args.proposer)
    elif args.cmd == "list":
        list_proposals(args.query, args.category)
    elif args.cmd == "vote":
        vote(args.proposal_id, not args.against)
    elif args.cmd == "decrypt":
        decrypt(args.proposal_id, args.key)
    else:
        p.print_help()


if __name__ == "__main__":
    main()
