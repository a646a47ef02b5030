from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from botocore.exceptions import ClientError, ConnectionClosedError, EndpointConnectionError

from app.core.aws import ddb_client
from app.core.errors import MessagingError, RETRYABLE, Transient
from app.core.settings import S

R = TypeVar("R")

TRANSIENT_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
    "TransactionInProgressException",
}


def error_code(exc: ClientError) -> str:
    return (exc.response or {}).get("Error", {}).get("Code", "")


def is_conditional_failure(exc: Exception) -> bool:
    return isinstance(exc, ClientError) and error_code(exc) == "ConditionalCheckFailedException"


def cancellation_codes(exc: Exception) -> List[str]:
    """Per-item reason codes of a cancelled transaction ("None" for items that passed)."""
    if not isinstance(exc, ClientError) or error_code(exc) != "TransactionCanceledException":
        return []
    reasons = (exc.response or {}).get("CancellationReasons") or []
    return [str(r.get("Code", "None")) for r in reasons]


def is_transaction_condition_failure(exc: Exception) -> bool:
    return "ConditionalCheckFailed" in cancellation_codes(exc)


def classify_client_error(exc: Exception) -> MessagingError:
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError)):
        return Transient(f"store unreachable: {exc}")
    if isinstance(exc, ClientError):
        code = error_code(exc)
        if code in TRANSIENT_CODES:
            return Transient(f"store busy: {code}")
        if code == "TransactionCanceledException":
            codes = set(cancellation_codes(exc))
            if codes & {"TransactionConflict", "ThrottlingError", "ProvisionedThroughputExceeded"}:
                return Transient(f"transaction cancelled: {','.join(sorted(codes))}")
        status = int((exc.response or {}).get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
        if status >= 500:
            return Transient(f"store error: {code}")
        return MessagingError(f"store rejected request: {code}")
    return Transient(str(exc))


def transact_write(items: Iterable[Dict[str, Dict[str, Any]]]) -> None:
    """Commit Put/Update/Delete/ConditionCheck entries atomically.

    Entries use plain Python values (``{"Put": {"TableName": ..., "Item": {...}}}``);
    the resource-bound client applies the DynamoDB type transformation.
    """
    ddb_client().transact_write_items(TransactItems=list(items))


BATCH_GET_LIMIT = 100


def batch_get(table_name: str, keys: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Fetch many items by key; order of the result is not guaranteed."""
    out: List[Dict[str, Any]] = []
    for i in range(0, len(keys), BATCH_GET_LIMIT):
        request: Dict[str, Any] = {table_name: {"Keys": keys[i : i + BATCH_GET_LIMIT]}}
        while request:
            resp = ddb_client().batch_get_item(RequestItems=request)
            out.extend(resp.get("Responses", {}).get(table_name, []))
            request = resp.get("UnprocessedKeys") or {}
    return out


def query_all(table, **kwargs) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    while True:
        resp = table.query(**kwargs)
        out.extend(resp.get("Items", []))
        lek = resp.get("LastEvaluatedKey")
        if not lek:
            return out
        kwargs["ExclusiveStartKey"] = lek


def count_all(table, **kwargs) -> int:
    kwargs["Select"] = "COUNT"
    total = 0
    while True:
        resp = table.query(**kwargs)
        total += int(resp.get("Count", 0) or 0)
        lek = resp.get("LastEvaluatedKey")
        if not lek:
            return total
        kwargs["ExclusiveStartKey"] = lek


def _delay(attempt: int, base: float) -> float:
    return base * (2 ** attempt) * (0.5 + random.random() / 2)


def with_backoff(
    fn: Callable[[], R],
    *,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> R:
    """Retry ``fn`` on Transient errors. Only for idempotent operations."""
    n = attempts or S.retry_attempts
    base = S.retry_base_delay if base_delay is None else base_delay
    for attempt in range(n):
        try:
            return fn()
        except RETRYABLE:
            if attempt == n - 1:
                raise
            sleep(_delay(attempt, base))
    raise Transient("retry budget exhausted")


async def awith_backoff(
    fn: Callable[[], Awaitable[R]],
    *,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> R:
    n = attempts or S.retry_attempts
    base = S.retry_base_delay if base_delay is None else base_delay
    for attempt in range(n):
        try:
            return await fn()
        except RETRYABLE:
            if attempt == n - 1:
                raise
            await asyncio.sleep(_delay(attempt, base))
    raise Transient("retry budget exhausted")
