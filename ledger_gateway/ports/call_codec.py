# /ledger_gateway/ports/call_codec.py
from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from ledger_gateway.domain.models import InvocationKind, LookupResult, RemoteCallEnvelope
from ic.principal import Principal


class CallCodecPort(Protocol):
    def encode(
        self,
        kind: InvocationKind,
        target: Principal,
        method_name: str,
        args: Sequence[Any],
        types: Sequence[Any],
    ) -> RemoteCallEnvelope:
        """Serialize args and wrap them in an envelope routed as call or query."""

    def decode(self, reply: bytes, types: Sequence[Any]) -> list[Any]:
        """Decode reply bytes into native values of the given types."""

    def decode_optional(self, reply: bytes, inner: Any) -> LookupResult:
        """Decode a single `opt inner` reply into Found(value) or NotFound."""
