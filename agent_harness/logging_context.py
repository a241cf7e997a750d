"""Per-test correlation IDs for log output.

Workers run many test cases concurrently on one event loop. Each test
runs inside ``correlated(run_id, test_id)``, which stores
``run_id/test_id`` in a ``ContextVar``; asyncio tasks copy their context,
so a worker only ever sees its own ID. ``CorrelationIdFilter`` copies the
ID onto log records as ``test_id``. It is installed on the console handler
built by ``correlated_handler()``, so records from third-party loggers
(httpx, openai) carry the ID too.

Usage:
    with correlated("RUN-1a2b", "GOAL-HAPPY-001"):
        logger.info("Sending initial message")
    # 2026-01-05 09:12:01 [RUN-1a2b/GOAL-HAPPY-001] [agent_harness.runner] INFO: ...
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

NO_TEST_ID = "-"

_test_id: ContextVar[str] = ContextVar("test_id", default=NO_TEST_ID)


def correlation_id(run_id: str, test_id: str) -> str:
    return f"{run_id}/{test_id}"


def set_test_id(test_id: str) -> Token:
    return _test_id.set(test_id)


def get_test_id() -> str:
    return _test_id.get()


@contextmanager
def correlated(run_id: str, test_id: str) -> Iterator[str]:
    """Tag every log record emitted inside the block with ``run_id/test_id``."""
    token = set_test_id(correlation_id(run_id, test_id))
    try:
        yield _test_id.get()
    finally:
        _test_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "test_id"):
            record.test_id = _test_id.get()  # type: ignore[attr-defined]
        return True


def correlated_handler() -> logging.Handler:
    """Console handler whose records always carry ``test_id``."""
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    return handler


def get_test_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    return logger
