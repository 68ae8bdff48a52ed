# /ledger_gateway/domain/errors.py
"""Error taxonomy shared by the flows, the codec and the ledger transport.

Each class carries the HTTP status the API layer renders it with, so the
mapping lives in one place. "Not found" is deliberately absent: an
unregistered fingerprint is a valid lookup outcome, not a failure.
"""
from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    http_status: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.message}


class ConfigurationError(GatewayError):
    """Startup-time misconfiguration (bad host URL, undecodable canister id)."""


class InputError(GatewayError):
    http_status = 400


class HashingError(GatewayError):
    pass


class EncodingError(GatewayError):
    pass


class DecodingError(GatewayError):
    pass


class TransportError(GatewayError):
    """Network failure, deadline expiry or unusable response from the replica."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP = "http"
    PROTOCOL = "protocol"

    def __init__(self, message: str, *, kind: str, status: int | None = None) -> None:
        super().__init__(message, kind=kind, status=status)
        self.kind = kind
        self.status = status


class RemoteRejected(GatewayError):
    """The canister executed the request and reported a rejection."""

    def __init__(self, reject_code: int, reject_message: str) -> None:
        super().__init__(f"rejected ({reject_code}): {reject_message}",
                         reject_code=reject_code, reject_message=reject_message)
        self.reject_code = reject_code
        self.reject_message = reject_message
