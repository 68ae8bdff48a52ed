# /ledger_gateway/__main__.py
from __future__ import annotations

import uvicorn

from ledger_gateway.config import settings


def main() -> None:
    uvicorn.run(
        "ledger_gateway.adapters.api.fastapi_app:app",
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,  # keep the JSON handler installed by configure_logger
    )


if __name__ == "__main__":
    main()
