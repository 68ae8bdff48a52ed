# /ledger_gateway/domain/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ic.principal import Principal

# ==== Ledger records ====


@dataclass(frozen=True, slots=True)
class RegistrationRecord:
    user: Principal
    timestamp: int  # ns since epoch, set by the ledger

    def as_dict(self) -> dict[str, Any]:
        return {"user": self.user.to_str(), "timestamp": self.timestamp}


# ==== Lookup outcome ====


@dataclass(frozen=True, slots=True)
class Found:
    value: Any


@dataclass(frozen=True, slots=True)
class NotFound:
    pass


NOT_FOUND = NotFound()

LookupResult = Found | NotFound


# ==== Remote invocation ====


class InvocationKind(str, Enum):
    CALL = "call"  # state-mutating, finalized by consensus
    QUERY = "query"  # read-only, answered by a single replica


@dataclass(frozen=True, slots=True)
class RemoteCallEnvelope:
    """One encoded invocation. Built per request, submitted once, never reused."""

    kind: InvocationKind
    canister_id: Principal
    method_name: str
    arg: bytes
    sender: Principal
    ingress_expiry: int
    nonce: bytes
    request_id: bytes = field(repr=False)

    def content(self) -> dict[str, Any]:
        return {
            "request_type": self.kind.value,
            "canister_id": self.canister_id.bytes,
            "method_name": self.method_name,
            "arg": self.arg,
            "sender": self.sender.bytes,
            "ingress_expiry": self.ingress_expiry,
            "nonce": self.nonce,
        }
