# /ledger_gateway/adapters/ic/aiohttp_agent.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import urlsplit

import aiohttp
import cbor2
import leb128
from ic.certificate import lookup
from ic.principal import Principal

from ledger_gateway.config import settings
from ledger_gateway.domain.errors import ConfigurationError, EncodingError, RemoteRejected, TransportError
from ledger_gateway.domain.models import InvocationKind, RemoteCallEnvelope

LOG = logging.getLogger("adapter.ic.agent")

T = TypeVar("T")

_SELF_DESCRIBE_TAG = 55799
_CBOR_HEADERS = {"Content-Type": "application/cbor"}


def _protocol_error(message: str) -> TransportError:
    return TransportError(message, kind=TransportError.PROTOCOL)


def _load_cbor(body: bytes, what: str) -> dict[str, Any]:
    try:
        doc = cbor2.loads(body)
    except (cbor2.CBORDecodeError, ValueError) as e:
        raise _protocol_error(f"{what}: undecodable CBOR") from e
    if isinstance(doc, cbor2.CBORTag) and doc.tag == _SELF_DESCRIBE_TAG:
        doc = doc.value
    if not isinstance(doc, dict):
        raise _protocol_error(f"{what}: expected a map, got {type(doc).__name__}")
    return doc


_NODE_ARITY = {0: 1, 1: 3, 2: 3, 3: 2, 4: 2}  # empty, fork, labeled, leaf, pruned
_MAX_TREE_DEPTH = 128


def _check_tree(node: Any, depth: int = 0) -> None:
    if (
        depth > _MAX_TREE_DEPTH
        or not isinstance(node, list)
        or not node
        or not isinstance(node[0], int)
        or _NODE_ARITY.get(node[0]) != len(node)
    ):
        raise _protocol_error("certificate: malformed hash tree")
    tag = node[0]
    if tag == 1:
        _check_tree(node[1], depth + 1)
        _check_tree(node[2], depth + 1)
    elif tag == 2:
        if not isinstance(node[1], bytes):
            raise _protocol_error("certificate: tree label is not a byte string")
        _check_tree(node[2], depth + 1)
    elif tag in (3, 4) and not isinstance(node[1], bytes):
        raise _protocol_error("certificate: tree leaf is not a byte string")


def _lookup_leaf(cert: dict[str, Any], path: list[bytes]) -> bytes | None:
    try:
        leaf = lookup(path, cert)
    except (TypeError, IndexError, KeyError, AttributeError, RecursionError) as e:
        raise _protocol_error("read_state: malformed certificate tree") from e
    if leaf is not None and not isinstance(leaf, bytes):
        raise _protocol_error("read_state: certificate leaf is not a byte string")
    return leaf


def _lookup_text(cert: dict[str, Any], path: list[bytes]) -> str | None:
    leaf = _lookup_leaf(cert, path)
    if leaf is None:
        return None
    try:
        return leaf.decode("utf-8")
    except UnicodeDecodeError as e:
        raise _protocol_error("read_state: certificate text leaf is not utf-8") from e


class AiohttpLedgerClient:
    """
    Transport to one replica over the HTTP interface (CBOR bodies).

    One session is shared by every flow; a semaphore bounds in-flight HTTP
    round trips so concurrent requests need no outside coordination. Like the
    session, the semaphore is rebuilt if the running loop changes.
    Every public operation runs under a deadline and maps failures onto
    TransportError / RemoteRejected. Nothing is retried.
    """

    def __init__(
        self,
        host_url: str,
        *,
        sender: Principal | None = None,
        timeout_seconds: float = settings.REQUEST_TIMEOUT_SECONDS,
        concurrency: int = settings.LEDGER_CONCURRENCY,
        poll_interval_ms: int = settings.POLL_INTERVAL_MS,
        poll_max_interval_ms: int = settings.POLL_MAX_INTERVAL_MS,
        max_reply_bytes: int = settings.MAX_REPLY_BYTES,
    ) -> None:
        parts = urlsplit(host_url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ConfigurationError(f"invalid ledger host url: {host_url!r}")

        self._base = host_url.rstrip("/")
        self._sender = sender or Principal.anonymous()
        self._timeout_seconds = timeout_seconds
        self._concurrency = concurrency
        self._poll_interval = poll_interval_ms / 1000.0
        self._poll_max_interval = poll_max_interval_ms / 1000.0
        self._max_reply_bytes = max_reply_bytes
        self.root_key: bytes | None = None

        self._session: aiohttp.ClientSession | None = None
        self._sem: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None  # track owning loop

    @property
    def sender(self) -> Principal:
        return self._sender

    async def _ensure_session(self) -> tuple[aiohttp.ClientSession, asyncio.Semaphore]:
        loop = asyncio.get_running_loop()
        if self._loop is not None and self._loop is not loop:
            # session and semaphore belong to a different (likely closed) loop
            try:
                if self._session and not self._session.closed:
                    await self._session.close()
            except RuntimeError:
                LOG.warning("session.close_failed", extra={"extra": {"reason": "stale loop"}})
            finally:
                self._session = None
                self._sem = None
                self._loop = None

        if self._session is None or self._session.closed or self._sem is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self._concurrency),
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
                raise_for_status=False,
            )
            self._sem = asyncio.Semaphore(self._concurrency)
            self._loop = loop
        return self._session, self._sem

    # --- low level ---

    async def _request(self, method: str, path: str, body: Any = None) -> tuple[int, bytes]:
        sess, sem = await self._ensure_session()
        data = None if body is None else cbor2.dumps(cbor2.CBORTag(_SELF_DESCRIBE_TAG, body))
        async with sem:
            async with sess.request(method, f"{self._base}{path}", data=data, headers=_CBOR_HEADERS) as resp:
                reply = bytearray()
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    reply.extend(chunk)
                    if len(reply) > self._max_reply_bytes:
                        LOG.warning(
                            "ledger.reply_too_large",
                            extra={"extra": {"path": path, "max": self._max_reply_bytes}},
                        )
                        raise _protocol_error(f"{path}: reply exceeds {self._max_reply_bytes} bytes")
                return resp.status, bytes(reply)

    @staticmethod
    def _raise_for_status(status: int, body: bytes, what: str) -> None:
        if status >= 300:
            detail = body[:200].decode("utf-8", errors="replace")
            raise TransportError(f"{what}: HTTP {status}: {detail}", kind=TransportError.HTTP, status=status)

    async def _bounded(self, what: str, op: Callable[[], Awaitable[T]], timeout: float | None) -> T:
        deadline = self._timeout_seconds if timeout is None else timeout
        try:
            async with asyncio.timeout(deadline):
                return await op()
        except TimeoutError as e:
            LOG.warning("ledger.timeout", extra={"extra": {"op": what, "deadline_s": deadline}})
            raise TransportError(f"{what}: no answer within {deadline}s", kind=TransportError.TIMEOUT) from e
        except aiohttp.ClientError as e:
            LOG.warning("ledger.network_error", extra={"extra": {"op": what, "error": str(e)}})
            raise TransportError(f"{what}: {e}", kind=TransportError.NETWORK) from e

    @staticmethod
    def _expect_kind(envelope: RemoteCallEnvelope, kind: InvocationKind) -> None:
        if envelope.kind is not kind:
            raise EncodingError(f"{kind.value} requires a {kind.value} envelope, got {envelope.kind.value}")

    @staticmethod
    def _rejection(code: Any, message: Any, what: str) -> RemoteRejected:
        if not isinstance(code, int) or isinstance(code, bool):
            raise _protocol_error(f"{what}: reject_code is not an integer")
        if not isinstance(message, str):
            raise _protocol_error(f"{what}: reject_message is not text")
        return RemoteRejected(code, message)

    # --- trust bootstrap ---

    async def fetch_root_key(self, *, timeout: float | None = None) -> bytes:
        """Fetch the replica's root key (local/test networks). Kept as-is, not validated."""

        async def _fetch() -> bytes:
            status, body = await self._request("GET", "/api/v2/status")
            self._raise_for_status(status, body, "status")
            key = _load_cbor(body, "status").get("root_key")
            if not isinstance(key, bytes):
                raise _protocol_error("status: reply has no root_key")
            return key

        self.root_key = await self._bounded("status", _fetch, timeout)
        LOG.info("ledger.root_key.fetched", extra={"extra": {"host": self._base, "bytes": len(self.root_key)}})
        return self.root_key

    # --- call ---

    async def call(self, envelope: RemoteCallEnvelope, *, timeout: float | None = None) -> bytes:
        self._expect_kind(envelope, InvocationKind.CALL)
        return await self._bounded(f"call {envelope.method_name}", lambda: self._call(envelope), timeout)

    async def _call(self, envelope: RemoteCallEnvelope) -> bytes:
        canister = envelope.canister_id.to_str()
        status, body = await self._request(
            "POST", f"/api/v2/canister/{canister}/call", {"content": envelope.content()}
        )
        self._raise_for_status(status, body, "call")
        LOG.info(
            "ledger.call.submitted",
            extra={"extra": {"method": envelope.method_name, "request_id": envelope.request_id.hex()}},
        )
        return await self._poll_request_status(envelope)

    async def _read_certificate(self, canister: str, content: dict[str, Any]) -> dict[str, Any]:
        status, body = await self._request("POST", f"/api/v2/canister/{canister}/read_state", {"content": content})
        self._raise_for_status(status, body, "read_state")
        cert_bytes = _load_cbor(body, "read_state").get("certificate")
        if not isinstance(cert_bytes, bytes):
            raise _protocol_error("read_state: reply has no certificate")
        cert = _load_cbor(cert_bytes, "certificate")
        _check_tree(cert.get("tree"))
        return cert

    async def _poll_request_status(self, envelope: RemoteCallEnvelope) -> bytes:
        canister = envelope.canister_id.to_str()
        rid = envelope.request_id
        content = {
            "request_type": "read_state",
            "sender": envelope.sender.bytes,
            "ingress_expiry": envelope.ingress_expiry,
            "paths": [[b"request_status", rid]],
        }
        delay = self._poll_interval

        while True:
            cert = await self._read_certificate(canister, content)

            state = _lookup_text(cert, [b"request_status", rid, b"status"])
            if state == "replied":
                reply = _lookup_leaf(cert, [b"request_status", rid, b"reply"])
                if reply is None:
                    raise _protocol_error("read_state: replied without reply")
                return reply
            if state == "rejected":
                code_leaf = _lookup_leaf(cert, [b"request_status", rid, b"reject_code"])
                message = _lookup_text(cert, [b"request_status", rid, b"reject_message"])
                code = leb128.u.decode(code_leaf) if code_leaf else 0
                LOG.warning(
                    "ledger.call.rejected",
                    extra={"extra": {"method": envelope.method_name, "code": code, "reason": message}},
                )
                raise self._rejection(code, message or "", "read_state")
            if state == "done":
                raise _protocol_error("read_state: reply already pruned")

            # unknown / received / processing
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._poll_max_interval)

    # --- query ---

    async def query(self, envelope: RemoteCallEnvelope, *, timeout: float | None = None) -> bytes:
        self._expect_kind(envelope, InvocationKind.QUERY)
        return await self._bounded(f"query {envelope.method_name}", lambda: self._query(envelope), timeout)

    async def _query(self, envelope: RemoteCallEnvelope) -> bytes:
        canister = envelope.canister_id.to_str()
        status, body = await self._request(
            "POST", f"/api/v2/canister/{canister}/query", {"content": envelope.content()}
        )
        self._raise_for_status(status, body, "query")
        doc = _load_cbor(body, "query")

        state = doc.get("status")
        if state == "replied":
            reply = doc.get("reply")
            if not isinstance(reply, dict) or not isinstance(reply.get("arg"), bytes):
                raise _protocol_error("query: replied without an arg byte string")
            return reply["arg"]
        if state == "rejected":
            rejection = self._rejection(doc.get("reject_code"), doc.get("reject_message"), "query")
            LOG.warning(
                "ledger.query.rejected",
                extra={
                    "extra": {
                        "method": envelope.method_name,
                        "code": rejection.reject_code,
                        "reason": rejection.reject_message,
                    }
                },
            )
            raise rejection
        raise _protocol_error(f"query: unexpected status {state!r}")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._sem = None
        self._loop = None
