import asyncio
import json

import pytest
import requests

from fhegov.config import LedgerConf
from fhegov.errors import StoreUnavailable, WriteFailed
from fhegov.registry import Registry
from fhegov.store import (
    HttpLedgerStore,
    JsonFileLedgerStore,
    MemoryLedgerStore,
    make_store,
)


def test_memory_store_absent_key_is_empty():
    store = MemoryLedgerStore()
    assert asyncio.run(store.get("missing")) == b""
    asyncio.run(store.put("k", b"v"))
    assert asyncio.run(store.get("k")) == b"v"
    assert asyncio.run(store.available()) is True


def test_json_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "ledger" / "state.json"
    store = JsonFileLedgerStore(path)
    assert asyncio.run(store.available()) is True
    assert asyncio.run(store.get("proposal_keys")) == b""
    asyncio.run(store.put("proposal_keys", b'["a"]'))
    again = JsonFileLedgerStore(path)
    assert asyncio.run(again.get("proposal_keys")) == b'["a"]'
    on_disk = json.loads(path.read_text())
    assert on_disk == {"proposal_keys": b'["a"]'.hex()}


def test_json_file_store_backs_a_registry(tmp_path):
    path = tmp_path / "state.json"
    reg = Registry(JsonFileLedgerStore(path))
    pid = asyncio.run(reg.submit_proposal("t", "d", "technology", 3, "0xA"))
    asyncio.run(reg.cast_vote(pid, False))
    listed = asyncio.run(Registry(JsonFileLedgerStore(path)).list_proposals())
    assert [(p.id, p.votes_against) for p in listed] == [(pid, 1)]


def test_json_file_store_tolerates_corrupt_snapshot(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{broken")
    assert asyncio.run(JsonFileLedgerStore(path).get("x")) == b""


class _Resp:
    def __init__(self, status_code=200, content=b"", body=None):
        self.status_code = status_code
        self.content = content
        self._body = body

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _FakeHttp:
    """requests.Session stand-in backed by a dict."""

    def __init__(self):
        self.data = {}
        self.down = False
        self.broken = set()
        self.health = {"available": True}

    def get(self, url, timeout=None):
        if self.down:
            raise requests.ConnectionError("refused")
        if url.endswith("/health"):
            return _Resp(body=self.health)
        key = url.rsplit("/", 1)[1]
        if key in self.broken:
            raise requests.ConnectionError("connection reset")
        if key not in self.data:
            return _Resp(404)
        return _Resp(content=self.data[key])

    def put(self, url, data=None, headers=None, timeout=None):
        if self.down:
            raise requests.ConnectionError("refused")
        self.data[url.rsplit("/", 1)[1]] = data
        return _Resp()


def test_http_store_round_trip_and_failures():
    http = _FakeHttp()
    store = HttpLedgerStore("http://ledger.test/", session=http)
    assert asyncio.run(store.available()) is True
    assert asyncio.run(store.get("proposal_x")) == b""
    asyncio.run(store.put("proposal_x", b"{}"))
    assert asyncio.run(store.get("proposal_x")) == b"{}"

    http.down = True
    assert asyncio.run(store.available()) is False
    with pytest.raises(WriteFailed):
        asyncio.run(store.put("proposal_x", b"{}"))
    with pytest.raises(StoreUnavailable):
        asyncio.run(store.get("proposal_x"))


def test_make_store(tmp_path):
    assert isinstance(make_store(LedgerConf()), MemoryLedgerStore)
    store = make_store(LedgerConf(driver="json", json_path=str(tmp_path / "s.json")))
    assert isinstance(store, JsonFileLedgerStore)
    assert isinstance(make_store(LedgerConf(driver="http")), HttpLedgerStore)


def test_json_file_store_keeps_every_concurrent_put(tmp_path):
    store = JsonFileLedgerStore(tmp_path / "state.json")

    async def many_puts():
        await asyncio.gather(*(store.put(f"k{i}", b"v%d" % i) for i in range(40)))

    asyncio.run(many_puts())
    fresh = JsonFileLedgerStore(tmp_path / "state.json")
    missing = [i for i in range(40) if asyncio.run(fresh.get(f"k{i}")) != b"v%d" % i]
    assert missing == []


def test_http_health_with_non_json_body_is_unavailable():
    http = _FakeHttp()
    store = HttpLedgerStore("http://ledger.test", session=http)
    http.health = ValueError("Expecting value")
    assert asyncio.run(store.available()) is False
    http.health = ["not", "a", "dict"]
    assert asyncio.run(store.available()) is False


def test_listing_survives_ledger_dropping_mid_read():
    http = _FakeHttp()
    store = HttpLedgerStore("http://ledger.test", session=http)
    reg = Registry(store)
    kept = asyncio.run(reg.submit_proposal("kept", "", "economy", 1, "0xA"))
    lost = asyncio.run(reg.submit_proposal("lost", "", "economy", 2, "0xA"))
    http.broken.add(f"proposal_{lost}")
    assert [p.id for p in asyncio.run(reg.list_proposals())] == [kept]

    http.broken.add("proposal_keys")
    assert asyncio.run(reg.list_proposals()) == []
