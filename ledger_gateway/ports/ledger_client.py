# /ledger_gateway/ports/ledger_client.py
from __future__ import annotations

from typing import Protocol

from ledger_gateway.domain.models import RemoteCallEnvelope
from ic.principal import Principal


class LedgerClientPort(Protocol):
    @property
    def sender(self) -> Principal:
        """Identity the client submits envelopes as."""

    async def call(self, envelope: RemoteCallEnvelope, *, timeout: float | None = None) -> bytes:
        """Submit a mutating envelope, wait for finalization; return the reply arg bytes."""

    async def query(self, envelope: RemoteCallEnvelope, *, timeout: float | None = None) -> bytes:
        """Submit a read-only envelope in one round trip; return the reply arg bytes."""
