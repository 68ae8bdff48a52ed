# /ledger_gateway/adapters/ic/codec.py
from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping, Sequence
from typing import Any

from ic.candid import Types, decode, encode
from ic.principal import Principal
from ic.utils import to_request_id

from ledger_gateway.domain.errors import DecodingError, EncodingError
from ledger_gateway.domain.models import (
    NOT_FOUND,
    Found,
    InvocationKind,
    LookupResult,
    RemoteCallEnvelope,
)

LOG = logging.getLogger("adapter.ic.codec")

# get_hash_info : (text) -> (opt record { user : principal; timestamp : nat64 }) query
HASH_INFO: dict[str, Any] = {"user": Types.Principal, "timestamp": Types.Nat64}


def label_id(name: str) -> int:
    """Candid field id of a record label; the decoder keys wire records by it."""
    h = 0
    for b in name.encode("utf-8"):
        h = (h * 223 + b) % 2**32
    return h


def _decode_values(reply: bytes) -> list[Any]:
    try:
        return [item["value"] for item in decode(reply)]
    except Exception as e:  # ic.candid reports malformed input with assorted builtins
        raise DecodingError(f"undecodable reply: {e}") from e


def _unwrap_optional(value: Any) -> Any:
    # opt decodes as [] / [x]; null and reserved as None; a bare T stands for opt T
    if isinstance(value, list):
        if len(value) > 1:
            raise DecodingError("optional reply holds more than one value")
        return value[0] if value else None
    return value


def _field(record: Mapping[Any, Any], name: str) -> Any:
    label = label_id(name)
    for key in (name, f"_{label}_", f"_{label}", label):
        if key in record:
            return record[key]
    raise DecodingError(f"reply record has no field {name!r}")


def _native(value: Any, t: Any) -> Any:
    if t is not Types.Principal or isinstance(value, Principal):
        return value
    try:
        if isinstance(value, str):
            return Principal.from_str(value)
        if isinstance(value, (bytes, bytearray)):
            return Principal(bytes=bytes(value))
    except Exception as e:  # from_str raises TypeError or binascii.Error on bad text
        raise DecodingError(f"reply holds an invalid principal: {value!r}") from e
    raise DecodingError(f"expected a principal, got {type(value).__name__}")


class CandidCallCodec:
    """Builds Candid-encoded envelopes for one sender and decodes typed replies."""

    def __init__(self, sender: Principal, *, ingress_expiry_seconds: int = 240) -> None:
        self.sender = sender
        self.ingress_expiry_seconds = ingress_expiry_seconds

    def _expiry_ns(self) -> int:
        return time.time_ns() + self.ingress_expiry_seconds * 1_000_000_000

    def encode(
        self,
        kind: InvocationKind,
        target: Principal,
        method_name: str,
        args: Sequence[Any],
        types: Sequence[Any],
    ) -> RemoteCallEnvelope:
        if not method_name:
            raise EncodingError("method name required")
        if len(args) != len(types):
            raise EncodingError(f"{method_name}: {len(args)} arguments for {len(types)} types")
        try:
            arg = encode([{"type": t, "value": v} for v, t in zip(args, types)])
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise EncodingError(f"cannot encode arguments for {method_name}: {e}") from e

        fields = {
            "kind": kind,
            "canister_id": target,
            "method_name": method_name,
            "arg": arg,
            "sender": self.sender,
            "ingress_expiry": self._expiry_ns(),
            "nonce": os.urandom(16),
        }
        partial = RemoteCallEnvelope(**fields, request_id=b"")
        envelope = RemoteCallEnvelope(**fields, request_id=to_request_id(partial.content()))
        LOG.debug(
            "envelope.encoded",
            extra={"extra": {"kind": kind.value, "method": method_name, "request_id": envelope.request_id.hex()}},
        )
        return envelope

    def decode(self, reply: bytes, types: Sequence[Any]) -> list[Any]:
        """Leading reply values for `types`; extra trailing values are ignored."""
        values = _decode_values(reply)
        if len(values) < len(types):
            raise DecodingError(f"reply has {len(values)} values, expected {len(types)}")
        return [_native(v, t) for v, t in zip(values, types)]

    def decode_optional(self, reply: bytes, inner: Any) -> LookupResult:
        """
        Three-way boundary for an `opt inner` reply: Found(value), NOT_FOUND,
        or DecodingError. A record `inner` is given as {field name: type}.
        """
        values = _decode_values(reply)
        value = _unwrap_optional(values[0] if values else None)
        if value is None:
            return NOT_FOUND
        if isinstance(inner, Mapping):
            if not isinstance(value, Mapping):
                raise DecodingError(f"expected a record, got {type(value).__name__}")
            value = {name: _native(_field(value, name), t) for name, t in inner.items()}
        else:
            value = _native(value, inner)
        return Found(value)
