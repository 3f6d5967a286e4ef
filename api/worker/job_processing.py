from __future__ import annotations

import logging
import time
from typing import Any

from ml.dedupe import dedupe_insights
from ml.insights import ReconcileReadError, ReconcileWriteError, recompute_insights

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500


def _error_text(exc: BaseException) -> str:
    return str(exc)[:MAX_ERROR_CHARS]

# the scheduler's run callable: outcomes go to the log, never back to the trigger caller
def process_insight_refresh() -> dict[str, Any]:
    started = time.monotonic()
    try:
        result = recompute_insights()
    except ReconcileReadError as exc:
        logger.exception("Insight refresh aborted: evidence scan failed")
        return {
            "status": "read_failed",
            "error": _error_text(exc),
            "duration_ms": round((time.monotonic() - started) * 1000.0, 1),
        }
    except ReconcileWriteError as exc:
        logger.exception("Insight refresh rolled back: commit failed")
        return {
            "status": "write_failed",
            "error": _error_text(exc),
            "duration_ms": round((time.monotonic() - started) * 1000.0, 1),
        }

    outcome: dict[str, Any] = {
        "status": "ok",
        **result,
        "duration_ms": round((time.monotonic() - started) * 1000.0, 1),
    }
    logger.info("Insight refresh complete", extra={"outcome": outcome})
    return outcome


def process_insight_dedupe() -> dict[str, Any]:
    started = time.monotonic()
    result = dedupe_insights()
    return {
        "status": "ok",
        **result,
        "duration_ms": round((time.monotonic() - started) * 1000.0, 1),
    }
