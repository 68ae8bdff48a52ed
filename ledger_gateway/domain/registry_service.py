# /ledger_gateway/domain/registry_service.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import BinaryIO, TypeVar

from ic.candid import Types
from ic.principal import Principal

from ledger_gateway.adapters.ic.codec import HASH_INFO
from ledger_gateway.config import settings
from ledger_gateway.domain.errors import DecodingError, HashingError, TransportError
from ledger_gateway.domain.fingerprint import DEFAULT_CHUNK_SIZE, compute_fingerprint, normalize_fingerprint
from ledger_gateway.domain.models import (
    NOT_FOUND,
    Found,
    InvocationKind,
    LookupResult,
    RegistrationRecord,
    RemoteCallEnvelope,
)
from ledger_gateway.ports.call_codec import CallCodecPort
from ledger_gateway.ports.ledger_client import LedgerClientPort

LOG = logging.getLogger("registry_service")

T = TypeVar("T")

REGISTER_METHOD = "register_hash"
LOOKUP_METHOD = "get_hash_info"


class RegistryService:
    """Registration and verification flows over an injected codec and ledger client."""

    def __init__(
        self,
        codec: CallCodecPort,
        client: LedgerClientPort,
        *,
        canister_id: Principal,
        timeout_seconds: float = settings.REQUEST_TIMEOUT_SECONDS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.codec = codec
        self.client = client
        self.canister_id = canister_id
        self.timeout_seconds = timeout_seconds
        self.chunk_size = chunk_size

    async def _fingerprint(self, stream: BinaryIO) -> str:
        try:
            return await asyncio.to_thread(compute_fingerprint, stream, self.chunk_size)
        except OSError as e:
            LOG.warning("fingerprint.read_failed", extra={"extra": {"error": str(e)}})
            raise HashingError("Error computing hash") from e

    async def _invoke(self, envelope: RemoteCallEnvelope, decode: Callable[[bytes], T]) -> T:
        """Round trip plus reply decoding, both under one deadline."""
        send = self.client.call if envelope.kind is InvocationKind.CALL else self.client.query
        deadline = self.timeout_seconds
        try:
            async with asyncio.timeout(deadline):
                reply = await send(envelope, timeout=deadline)
                # reply bytes are untrusted; decode off the loop
                return await asyncio.to_thread(decode, reply)
        except TimeoutError as e:
            LOG.warning("ledger.timeout", extra={"extra": {"method": envelope.method_name, "deadline_s": deadline}})
            raise TransportError(
                f"{envelope.kind.value} {envelope.method_name}: no answer within {deadline}s",
                kind=TransportError.TIMEOUT,
            ) from e

    # --- registration ---

    async def register(self, stream: BinaryIO) -> str:
        fingerprint = await self._fingerprint(stream)
        LOG.info("register.fingerprint", extra={"extra": {"hash": fingerprint}})

        envelope = self.codec.encode(
            InvocationKind.CALL, self.canister_id, REGISTER_METHOD, [fingerprint], [Types.Text]
        )
        # register_hash returns (); undecodable bytes mean the interfaces disagree
        await self._invoke(envelope, lambda reply: self.codec.decode(reply, []))

        LOG.info("register.accepted", extra={"extra": {"hash": fingerprint}})
        return fingerprint

    # --- verification ---

    async def verify(self, fingerprint: str | None) -> LookupResult:
        """Found(RegistrationRecord) or NOT_FOUND. Always a fresh query."""
        fingerprint = normalize_fingerprint(fingerprint)

        envelope = self.codec.encode(
            InvocationKind.QUERY, self.canister_id, LOOKUP_METHOD, [fingerprint], [Types.Text]
        )
        result = await self._invoke(envelope, lambda reply: self.codec.decode_optional(reply, HASH_INFO))

        if isinstance(result, Found):
            record = self._to_record(result.value)
            LOG.info("verify.found", extra={"extra": {"hash": fingerprint, "user": record.user.to_str()}})
            return Found(record)

        LOG.info("verify.not_found", extra={"extra": {"hash": fingerprint}})
        return NOT_FOUND

    async def verify_content(self, stream: BinaryIO) -> tuple[str, LookupResult]:
        fingerprint = await self._fingerprint(stream)
        return fingerprint, await self.verify(fingerprint)

    @staticmethod
    def _to_record(value: object) -> RegistrationRecord:
        if not isinstance(value, dict):
            raise DecodingError(f"hash info is not a record: {value!r}")
        user, timestamp = value.get("user"), value.get("timestamp")
        if not isinstance(user, Principal) or not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise DecodingError("hash info record has unexpected field types")
        return RegistrationRecord(user=user, timestamp=timestamp)
