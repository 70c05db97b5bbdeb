from __future__ import annotations

import logging

from anonrelay.core.config import get_settings


def configure_logging(level: str | None = None) -> None:
    # Apply the configured level once for scripts and the bot process.
    settings = get_settings()
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Keep per-request httpx lines out of INFO logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
