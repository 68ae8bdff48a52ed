# /ledger_gateway/config.py
from __future__ import annotations

import os

from pydantic import BaseModel


class Settings(BaseModel):
    # Ledger transport
    LEDGER_HOST_URL: str = os.getenv("LEDGER_HOST_URL", "http://localhost:4943")
    CANISTER_ID: str = os.getenv("CANISTER_ID", "uxrrr-q7777-77774-qaaaq-cai")
    FETCH_ROOT_KEY: bool = os.getenv("FETCH_ROOT_KEY", "true").lower() == "true"

    # Deadlines / polling
    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    INGRESS_EXPIRY_SECONDS: int = int(os.getenv("INGRESS_EXPIRY_SECONDS", "240"))
    POLL_INTERVAL_MS: int = int(os.getenv("POLL_INTERVAL_MS", "100"))
    POLL_MAX_INTERVAL_MS: int = int(os.getenv("POLL_MAX_INTERVAL_MS", "1000"))

    # Concurrency / limits
    LEDGER_CONCURRENCY: int = int(os.getenv("LEDGER_CONCURRENCY", "64"))  # in-flight ledger requests
    HASH_CHUNK_SIZE: int = int(os.getenv("HASH_CHUNK_SIZE", "65536"))
    MAX_REPLY_BYTES: int = int(os.getenv("MAX_REPLY_BYTES", "2097152"))  # 2 MB

    # HTTP surface
    CORS_ORIGINS: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
