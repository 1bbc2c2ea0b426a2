from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any

DEATH_HEADER = "x-death"


class RetryDecision(str, Enum):
    ACK = "ack"
    RETRY_REPUBLISH = "retry_republish"
    DEAD_LETTER = "dead_letter"


def decide(*, succeeded: bool, attempt_count: int, retry_limit: int) -> RetryDecision:
    if succeeded:
        return RetryDecision.ACK
    if attempt_count >= retry_limit:
        return RetryDecision.DEAD_LETTER
    return RetryDecision.RETRY_REPUBLISH


def attempt_count_from_headers(headers: Mapping[str, Any] | None) -> int:
    """Return how often the broker has dead-lettered this message back to the work queue.

    RabbitMQ keeps one ``x-death`` entry per (queue, reason) pair with the most recent
    first; the retry loop only ever produces one, so the first entry's ``count`` is used.
    """

    if not headers:
        return 0

    deaths = headers.get(DEATH_HEADER)
    if not isinstance(deaths, (list, tuple)) or not deaths:
        return 0

    first = deaths[0]
    if not isinstance(first, Mapping):
        return 0

    count = first.get("count")
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        return 0
    return count
