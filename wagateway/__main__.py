"""Executable entrypoint for the WhatsApp session gateway."""

from __future__ import annotations

import logging
import os

import uvicorn

from config import gateway_config


def main() -> None:
    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    cfg = gateway_config()
    uvicorn.run(
        "wagateway.api:create_app",
        host="0.0.0.0",
        port=cfg.port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
