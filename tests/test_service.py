# /tests/test_service.py
from __future__ import annotations

import asyncio
import io
import time

import leb128
import pytest
from ic.principal import Principal

from ledger_gateway.adapters.ic.codec import CandidCallCodec
from ledger_gateway.domain.errors import DecodingError, HashingError, InputError, RemoteRejected, TransportError
from ledger_gateway.domain.models import NOT_FOUND, Found, InvocationKind, RegistrationRecord
from ledger_gateway.domain.registry_service import RegistryService
from tests.fakes import FailingStream, InMemoryLedger, StubLedgerClient, decode_text_arg

CANISTER = Principal.from_str("uxrrr-q7777-77774-qaaaq-cai")
ABC = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def _service(client) -> RegistryService:
    return RegistryService(CandidCallCodec(client.sender), client, canister_id=CANISTER, timeout_seconds=30)


@pytest.mark.asyncio
async def test_register_happy_path() -> None:
    ledger = InMemoryLedger()
    fingerprint = await _service(ledger).register(io.BytesIO(b"abc"))
    assert fingerprint == ABC
    assert ledger.calls == 1
    assert ABC in ledger.records


@pytest.mark.asyncio
async def test_register_sends_call_envelope() -> None:
    stub = StubLedgerClient()
    await _service(stub).register(io.BytesIO(b"abc"))
    (env,) = stub.calls
    assert env.kind is InvocationKind.CALL
    assert env.canister_id.to_str() == CANISTER.to_str()
    assert env.method_name == "register_hash"
    assert decode_text_arg(env.arg) == ABC


@pytest.mark.asyncio
async def test_unreadable_upload_never_reaches_ledger() -> None:
    stub = StubLedgerClient()
    stream = FailingStream()
    with pytest.raises(HashingError):
        await _service(stub).register(stream)  # type: ignore[arg-type]
    assert stream.closed
    assert stub.invocations == 0


@pytest.mark.asyncio
async def test_register_failure_is_not_retried() -> None:
    stub = StubLedgerClient(error=TransportError("call register_hash: down", kind=TransportError.NETWORK))
    with pytest.raises(TransportError):
        await _service(stub).register(io.BytesIO(b"abc"))
    assert len(stub.calls) == 1


@pytest.mark.asyncio
async def test_duplicate_registration_surfaces_rejection() -> None:
    ledger = InMemoryLedger()
    svc = _service(ledger)
    await svc.register(io.BytesIO(b"abc"))
    with pytest.raises(RemoteRejected):
        await svc.register(io.BytesIO(b"abc"))
    assert len(ledger.records) == 1


@pytest.mark.asyncio
async def test_register_with_malformed_reply() -> None:
    stub = StubLedgerClient(call_reply=b"not candid")
    with pytest.raises(DecodingError):
        await _service(stub).register(io.BytesIO(b"abc"))


@pytest.mark.asyncio
async def test_verify_unknown_is_not_found_every_time() -> None:
    ledger = InMemoryLedger()
    svc = _service(ledger)
    assert await svc.verify(ABC) is NOT_FOUND
    assert await svc.verify(ABC) is NOT_FOUND
    assert ledger.queries == 2  # no caching


@pytest.mark.asyncio
async def test_verify_after_register() -> None:
    start = time.time_ns()
    registrant = Principal.from_str("aaaaa-aa")
    ledger = InMemoryLedger(registrant)
    svc = _service(ledger)
    await svc.register(io.BytesIO(b"abc"))

    result = await svc.verify(ABC.upper())
    assert isinstance(result, Found)
    record = result.value
    assert isinstance(record, RegistrationRecord)
    assert record.user.to_str() == "aaaaa-aa"
    assert record.timestamp > start
    assert record.as_dict() == {"user": "aaaaa-aa", "timestamp": record.timestamp}


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", ["", "xyz", ABC[:10]])
async def test_verify_rejects_malformed_locally(bad: str) -> None:
    stub = StubLedgerClient()
    with pytest.raises(InputError):
        await _service(stub).verify(bad)
    assert stub.invocations == 0


@pytest.mark.asyncio
async def test_verify_malformed_reply_is_decoding_error() -> None:
    stub = StubLedgerClient(query_reply=b"not candid")
    with pytest.raises(DecodingError):
        await _service(stub).verify(ABC)
    (env,) = stub.queries
    assert env.kind is InvocationKind.QUERY
    assert env.method_name == "get_hash_info"


@pytest.mark.asyncio
async def test_verify_content() -> None:
    ledger = InMemoryLedger()
    svc = _service(ledger)
    fingerprint, result = await svc.verify_content(io.BytesIO(b"abc"))
    assert fingerprint == ABC and result is NOT_FOUND

    await svc.register(io.BytesIO(b"abc"))
    _, result = await svc.verify_content(io.BytesIO(b"abc"))
    assert isinstance(result, Found)


@pytest.mark.asyncio
async def test_concurrent_flows_share_one_client() -> None:
    ledger = InMemoryLedger()
    svc = _service(ledger)
    payloads = [f"file-{i}".encode() for i in range(10)]
    fingerprints = await asyncio.gather(*(svc.register(io.BytesIO(p)) for p in payloads))
    results = await asyncio.gather(*(svc.verify(fp) for fp in fingerprints))
    assert len(set(fingerprints)) == 10
    assert all(isinstance(r, Found) for r in results)


@pytest.mark.asyncio
async def test_hostile_reply_cannot_stall_the_loop() -> None:
    # (null, vec null) with a million zero-size elements: 14 bytes on the wire
    reply = b"DIDL\x01\x6d\x7f\x02\x7f\x00" + bytes(leb128.u.encode(1_000_000))
    stub = StubLedgerClient(query_reply=reply)
    svc = RegistryService(CandidCallCodec(stub.sender), stub, canister_id=CANISTER, timeout_seconds=0.05)

    ticks = 0

    async def ticker() -> None:
        nonlocal ticks
        while True:
            ticks += 1
            await asyncio.sleep(0.005)

    task = asyncio.create_task(ticker())
    started = time.monotonic()
    try:
        result = await svc.verify(ABC)
    except (TransportError, DecodingError):
        result = None
    finally:
        task.cancel()
    elapsed = time.monotonic() - started

    assert result in (None, NOT_FOUND)
    assert elapsed < 1.0
    assert ticks >= 2


@pytest.mark.asyncio
async def test_slow_ledger_hits_the_flow_deadline() -> None:
    svc = RegistryService(
        CandidCallCodec(Principal.anonymous()), StubLedgerClient(delay=2.0), canister_id=CANISTER, timeout_seconds=0.1
    )
    with pytest.raises(TransportError) as exc:
        await svc.verify(ABC)
    assert exc.value.kind == TransportError.TIMEOUT
