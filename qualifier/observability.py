"""
Lightweight observability utilities.

Why this exists
---------------
An interview turn crosses three unreliable boundaries:
- the extraction call to the Language Service
- the follow-up generation call
- the session store read/write

When a respondent reports a slow or odd turn, the turn log has to show
which boundary was slow and which one degraded to its fallback.

Every critical operation is wrapped in ``trace_span`` so it produces a
structured latency record, and the span can carry an outcome flag set
from inside the block.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager

logger = logging.getLogger("qualifier.trace")


@contextmanager
def trace_span(name: str, **metadata):
    """
    Measure execution duration of a critical operation.

    Wraps:
    - language service extraction / generation calls
    - session store reads and writes
    - a whole ``process_response`` turn

    The yielded dict is merged into the log line, so callers can record
    what happened inside the span:

        with trace_span("extract", session=sid) as span:
            ...
            span["fallback"] = True

    Example log:
    [TRACE] extract duration_ms=843.10 session=abc step=1 fallback=True

    Guarantees
    ----------
    - Always logs completion (even if exception occurs)
    - Never suppresses exceptions
    - Produces structured key=value logs
    """
    start = time.perf_counter()
    outcome: dict = {}
    try:
        yield outcome
    finally:
        duration_ms = (time.perf_counter() - start) * 1000

        meta = " ".join(f"{k}={v}" for k, v in {**metadata, **outcome}.items())
        logger.info("[TRACE] %s duration_ms=%.2f %s", name, duration_ms, meta)
