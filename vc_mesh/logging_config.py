from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the client.

    aiortc and aioice are chatty at DEBUG; they stay at WARNING unless
    VC_MESH_LOG_NATIVE is set.
    """

    effective_level = (level or os.environ.get("VC_MESH_LOG_LEVEL") or os.environ.get("VC_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    if not os.environ.get("VC_MESH_LOG_NATIVE"):
        for name in ("aiortc", "aioice"):
            logging.getLogger(name).setLevel(logging.WARNING)
