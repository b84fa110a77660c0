"""
Query execution with bounded retries.

:class:`ResilientQueryExecutor` runs one query on one pooled connection.  Connection-class failures
(refused, lost, administrator shutdown) are retried with a linearly growing wait; every other
failure is raised at once.  The connection is acquired as part of the first attempt, held across
retries and handed back to the pool exactly once, whatever the outcome.
"""

import asyncio
import logging
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from querybridge.core.schema import (
    AttemptOutcome,
    QueryAttempt,
    QueryResult,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

# SQLSTATE codes that mean "the connection went away", not "the query is wrong".
RETRYABLE_SQLSTATES = frozenset(
    {
        "08001",  # sqlclient_unable_to_establish_sqlconnection
        "08003",  # connection_does_not_exist
        "08006",  # connection_failure
        "57P01",  # admin_shutdown
    }
)
RETRYABLE_OS_ERRORS = (ConnectionRefusedError, ConnectionResetError)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class QueryError(RuntimeError):
    """Base class for errors raised by the executor."""

    def __init__(self, message: str, *, sql: str, attempts: int, code: Optional[str] = None):
        super().__init__(message)
        self.sql = sql
        self.attempts = attempts
        self.code = code


class FatalQueryError(QueryError):
    """The query failed for a reason retrying cannot fix (syntax, permission, constraint...)."""


class TransientConnectivityError(QueryError):
    """A connection-class failure (refused, lost or administrator-killed connection)."""


class ExhaustedRetriesError(TransientConnectivityError):
    """The query kept failing with connection errors until the retry budget ran out."""


def error_code(exc: BaseException) -> Optional[str]:
    """Return the SQLSTATE (or errno name) carried by a driver exception, if any."""
    code = getattr(exc, "sqlstate", None)
    if code:
        return str(code)
    if isinstance(exc, ConnectionRefusedError):
        return "ECONNREFUSED"
    if isinstance(exc, ConnectionResetError):
        return "ECONNRESET"
    return None


def is_retryable(exc: BaseException) -> bool:
    """True when *exc* belongs to the connection-failure class."""
    if isinstance(exc, RETRYABLE_OS_ERRORS):
        return True
    return error_code(exc) in RETRYABLE_SQLSTATES


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------
class ResilientQueryExecutor:
    """
    Execute SQL against an asyncpg-compatible pool.

    Parameters
    ----------
    pool:
        Object exposing ``acquire()`` and ``release(conn)`` coroutines, e.g. ``asyncpg.Pool``.
    policy:
        Retry settings, fixed for the lifetime of the executor.
    read_only:
        If *True*, every query runs inside a read-only transaction.
    """

    def __init__(self, pool: Any, policy: RetryPolicy | None = None, read_only: bool = True):
        self._pool = pool
        self.policy = policy or RetryPolicy()
        self.read_only = read_only

    async def _run(self, conn: Any, sql: str, params: tuple) -> List[Dict[str, Any]]:
        if self.read_only:
            async with conn.transaction(readonly=True):
                records = await conn.fetch(sql, *params)
        else:
            records = await conn.fetch(sql, *params)
        return [dict(record) for record in records]

    async def execute(self, sql: str, *params: Any) -> QueryResult:
        """
        Run *sql* with positional *params* and return every row.

        Raises
        ------
        FatalQueryError
            On the first failure that is not connection-related.
        ExhaustedRetriesError
            When all ``policy.max_attempts`` tries failed with connection errors.
        """
        max_attempts = self.policy.max_attempts
        attempts: List[QueryAttempt] = []
        conn = None
        try:
            for attempt in range(1, max_attempts + 1):
                logger.info("Executing query (attempt %d/%d): %s", attempt, max_attempts, sql)
                try:
                    if conn is None:
                        conn = await self._pool.acquire()
                    rows = await self._run(conn, sql, params)
                except Exception as exc:  # noqa: BLE001
                    code = error_code(exc)
                    logger.error(
                        "Query error (attempt %d/%d): %s", attempt, max_attempts, exc
                    )
                    if not is_retryable(exc):
                        attempts.append(
                            QueryAttempt(
                                attempt=attempt,
                                sql=sql,
                                outcome=AttemptOutcome.FATAL,
                                error=str(exc),
                                code=code,
                            )
                        )
                        raise FatalQueryError(
                            f"Query failed: {exc}", sql=sql, attempts=attempt, code=code
                        ) from exc

                    attempts.append(
                        QueryAttempt(
                            attempt=attempt,
                            sql=sql,
                            outcome=AttemptOutcome.RETRYABLE,
                            error=str(exc),
                            code=code,
                        )
                    )
                    if attempt >= max_attempts:
                        raise ExhaustedRetriesError(
                            f"Query failed after {attempt} attempts: {exc}",
                            sql=sql,
                            attempts=attempt,
                            code=code,
                        ) from exc

                    delay = self.policy.backoff_base * attempt
                    logger.warning(
                        "Connection error %s, retrying in %.1f seconds", code, delay
                    )
                    await asyncio.sleep(delay)
                    continue

                attempts.append(
                    QueryAttempt(attempt=attempt, sql=sql, outcome=AttemptOutcome.SUCCESS)
                )
                logger.debug("Query returned %d rows", len(rows))
                return QueryResult(rows=rows, attempts=attempts)
        finally:
            if conn is not None:
                await self._pool.release(conn)

        # RetryPolicy enforces max_attempts >= 1, so the loop above always returns or raises.
        raise AssertionError("unreachable")  # pragma: no cover
