from __future__ import annotations

import logging

from verticalguard.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    root.setLevel(resolved)
    # SQL echo is noisy at INFO; keep it behind DEBUG.
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if resolved == "DEBUG" else logging.WARNING
    )
