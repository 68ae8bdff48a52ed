# tests/test_fastapi_api.py
import time

import pytest
from fastapi.testclient import TestClient
from ic.principal import Principal

from ledger_gateway.adapters.api.fastapi_app import create_app
from ledger_gateway.adapters.ic.codec import CandidCallCodec
from ledger_gateway.config import Settings
from ledger_gateway.domain.errors import ConfigurationError, TransportError
from ledger_gateway.domain.registry_service import RegistryService
from tests.fakes import InMemoryLedger, StubLedgerClient

CANISTER = Principal.from_str("uxrrr-q7777-77774-qaaaq-cai")
ABC = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def _service(ledger) -> RegistryService:
    return RegistryService(CandidCallCodec(ledger.sender), ledger, canister_id=CANISTER)


def make_client(ledger) -> TestClient:
    return TestClient(create_app(service=_service(ledger)))


def test_health():
    r = make_client(InMemoryLedger()).get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_register_returns_fingerprint():
    r = make_client(InMemoryLedger()).post("/register", files={"file": ("abc.txt", b"abc", "text/plain")})
    assert r.status_code == 200
    assert r.json() == {"message": "Hash registered successfully", "hash": ABC}


def test_verify_unknown_hash_is_404():
    r = make_client(InMemoryLedger()).post("/verify", json={"hash": ABC})
    assert r.status_code == 404
    assert r.json() == {"error": "Hash not found"}


def test_verify_after_register():
    start = time.time_ns()
    client = make_client(InMemoryLedger())
    assert client.post("/register", files={"file": ("abc.txt", b"abc")}).status_code == 200

    r = client.post("/verify", json={"hash": ABC})
    assert r.status_code == 200
    data = r.json()
    assert data["user"] == Principal.anonymous().to_str()
    assert data["timestamp"] > start


def test_register_without_file_makes_no_remote_call():
    stub = StubLedgerClient()
    r = make_client(stub).post("/register", data={"note": "no file here"})
    assert r.status_code == 400
    assert "error" in r.json()
    assert stub.invocations == 0


def test_verify_timeout_is_500_with_message():
    stub = StubLedgerClient(error=TransportError("query get_hash_info: no answer within 30s", kind="timeout"))
    r = make_client(stub).post("/verify", json={"hash": ABC})
    assert r.status_code == 500
    assert "no answer" in r.json()["error"]


def test_duplicate_register_is_500():
    client = make_client(InMemoryLedger())
    client.post("/register", files={"file": ("abc.txt", b"abc")})
    r = client.post("/register", files={"file": ("again.txt", b"abc")})
    assert r.status_code == 500
    assert "Hash already registered" in r.json()["error"]


def test_verify_input_errors_are_400():
    stub = StubLedgerClient()
    client = make_client(stub)
    assert client.post("/verify", json={"hash": "abc"}).status_code == 400
    assert client.post("/verify", json={}).json() == {"error": "Hash is required"}
    r = client.post("/verify", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid request format"}
    assert stub.invocations == 0


def test_verify_malformed_reply_is_500():
    r = make_client(StubLedgerClient(query_reply=b"\x00")).post("/verify", json={"hash": ABC})
    assert r.status_code == 500
    assert r.json()["error"]


def test_verify_file():
    client = make_client(InMemoryLedger())
    r = client.post("/verify-file", files={"file": ("abc.txt", b"abc")})
    assert r.status_code == 404
    assert r.json() == {"verified": False, "message": "File not verified", "hash": ABC}

    client.post("/register", files={"file": ("abc.txt", b"abc")})
    r = client.post("/verify-file", files={"file": ("abc.txt", b"abc")})
    assert r.status_code == 200
    data = r.json()
    assert data["verified"] is True and data["hash"] == ABC
    assert data["user"] == "2vxsx-fae"


def test_verify_file_without_file():
    assert make_client(StubLedgerClient()).post("/verify-file").status_code == 400


def test_unexpected_failure_still_answers_json():
    app = create_app(service=_service(StubLedgerClient(error=RuntimeError("boom"))))
    client = TestClient(app, raise_server_exceptions=False)
    r = client.post("/verify", json={"hash": ABC})
    assert r.status_code == 500
    assert r.headers["content-type"].startswith("application/json")
    assert r.json() == {"error": "Internal server error"}


def test_bad_canister_id_aborts_startup():
    app = create_app(cfg=Settings(CANISTER_ID="bad", FETCH_ROOT_KEY=False))
    with pytest.raises(ConfigurationError):
        with TestClient(app):
            pass


def test_unreachable_ledger_aborts_startup():
    cfg = Settings(LEDGER_HOST_URL="http://127.0.0.1:1", FETCH_ROOT_KEY=True, REQUEST_TIMEOUT_SECONDS=5)
    with pytest.raises(TransportError):
        with TestClient(create_app(cfg=cfg)):
            pass
