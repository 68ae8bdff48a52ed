# /ledger_gateway/adapters/api/fastapi_app.py
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from ic.principal import Principal
from pydantic import BaseModel

from ledger_gateway.adapters.ic.aiohttp_agent import AiohttpLedgerClient
from ledger_gateway.adapters.ic.codec import CandidCallCodec
from ledger_gateway.adapters.system.logging_cfg import configure_logger
from ledger_gateway.config import Settings, settings
from ledger_gateway.domain.errors import ConfigurationError, GatewayError, InputError
from ledger_gateway.domain.models import NotFound
from ledger_gateway.domain.registry_service import RegistryService

LOG = logging.getLogger("adapter.api")
configure_logger(settings.LOG_LEVEL)


class VerifyRequestModel(BaseModel):
    hash: str | None = None


def build_service(cfg: Settings) -> tuple[RegistryService, AiohttpLedgerClient]:
    """Wire the production service. Raises ConfigurationError on bad settings."""
    try:
        canister_id = Principal.from_str(cfg.CANISTER_ID)
    except Exception as e:  # from_str raises TypeError or binascii.Error on bad text
        raise ConfigurationError(f"invalid CANISTER_ID {cfg.CANISTER_ID!r}: {e}") from e

    client = AiohttpLedgerClient(
        cfg.LEDGER_HOST_URL,
        timeout_seconds=cfg.REQUEST_TIMEOUT_SECONDS,
        concurrency=cfg.LEDGER_CONCURRENCY,
        poll_interval_ms=cfg.POLL_INTERVAL_MS,
        poll_max_interval_ms=cfg.POLL_MAX_INTERVAL_MS,
        max_reply_bytes=cfg.MAX_REPLY_BYTES,
    )
    codec = CandidCallCodec(client.sender, ingress_expiry_seconds=cfg.INGRESS_EXPIRY_SECONDS)
    service = RegistryService(
        codec,
        client,
        canister_id=canister_id,
        timeout_seconds=cfg.REQUEST_TIMEOUT_SECONDS,
        chunk_size=cfg.HASH_CHUNK_SIZE,
    )
    return service, client


def get_service(request: Request) -> RegistryService:
    return request.app.state.service


def create_app(service: RegistryService | None = None, cfg: Settings = settings) -> FastAPI:
    """
    Build the HTTP app. With no `service`, the lifespan wires the real ledger
    client (fetching the root key if configured) and closes it on shutdown;
    any failure there aborts startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        client: AiohttpLedgerClient | None = None
        if service is None:
            app.state.service, client = build_service(cfg)
        try:
            if client is not None:
                if cfg.FETCH_ROOT_KEY:
                    await client.fetch_root_key()
                LOG.info(
                    "gateway.ready",
                    extra={"extra": {"host": cfg.LEDGER_HOST_URL, "canister": cfg.CANISTER_ID}},
                )
            yield
        finally:
            if client is not None:
                await client.close()

    app = FastAPI(title="hash-ledger-gateway", lifespan=lifespan)
    if service is not None:
        app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        level = logging.WARNING if exc.http_status < 500 else logging.ERROR
        LOG.log(
            level,
            "request.failed",
            extra={"extra": {"path": request.url.path, "error": type(exc).__name__, "detail": exc.message}},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        LOG.warning("request.invalid", extra={"extra": {"path": request.url.path, "errors": exc.errors()}})
        return JSONResponse(status_code=400, content={"error": "Invalid request format"})

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        LOG.error(
            "request.crashed",
            extra={"extra": {"path": request.url.path, "error": type(exc).__name__}},
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/register")
    async def register(
        file: UploadFile | None = File(default=None),
        svc: RegistryService = Depends(get_service),
    ) -> dict:
        if file is None:
            raise InputError("file is required")
        LOG.info("register.received", extra={"extra": {"filename": file.filename}})
        fingerprint = await svc.register(file.file)
        return {"message": "Hash registered successfully", "hash": fingerprint}

    @app.post("/verify")
    async def verify(payload: VerifyRequestModel, svc: RegistryService = Depends(get_service)):
        result = await svc.verify(payload.hash)
        if isinstance(result, NotFound):
            return JSONResponse(status_code=404, content={"error": "Hash not found"})
        return result.value.as_dict()

    @app.post("/verify-file")
    async def verify_file(
        file: UploadFile | None = File(default=None),
        svc: RegistryService = Depends(get_service),
    ):
        if file is None:
            raise InputError("File is required")
        fingerprint, result = await svc.verify_content(file.file)
        if isinstance(result, NotFound):
            return JSONResponse(
                status_code=404,
                content={"verified": False, "message": "File not verified", "hash": fingerprint},
            )
        return {"verified": True, "message": "File is verified", "hash": fingerprint, **result.value.as_dict()}

    return app


app = create_app()
