from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DROP_CACHES_PATH = Path("/proc/sys/vm/drop_caches")


def drop_caches(path: Path = DROP_CACHES_PATH) -> bool:
    """Flush dirty pages and evict the page cache. Needs root; failure is only logged."""
    try:
        os.sync()
        path.write_text("3\n")
    except OSError as e:
        logger.warning("drop_caches failed (%s); continuing with a warm cache", e)
        return False
    return True
