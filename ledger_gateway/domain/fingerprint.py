# /ledger_gateway/domain/fingerprint.py
from __future__ import annotations

import hashlib
import re
from contextlib import closing
from typing import BinaryIO

from ledger_gateway.domain.errors import InputError

FINGERPRINT_HEX_LEN = 64
_FINGERPRINT_RE = re.compile(r"[0-9a-f]{64}")
DEFAULT_CHUNK_SIZE = 64 * 1024


def compute_fingerprint(stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """
    SHA-256 of everything readable from `stream`, as 64 lowercase hex chars.
    Absorbs the input chunk by chunk and closes the stream whatever happens;
    read failures surface as OSError.
    """
    digest = hashlib.sha256()
    with closing(stream):
        for chunk in iter(lambda: stream.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_fingerprint(text: str) -> bool:
    return bool(_FINGERPRINT_RE.fullmatch(text))


def normalize_fingerprint(text: str | None) -> str:
    if not text or not text.strip():
        raise InputError("Hash is required")
    candidate = text.strip().lower()
    if not is_fingerprint(candidate):
        raise InputError(f"Invalid hash format: expected {FINGERPRINT_HEX_LEN} hex characters")
    return candidate
