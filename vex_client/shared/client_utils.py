import random
import re
import secrets
import time
from datetime import datetime, timezone

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    The orchestrator keeps one and the dashboard reads it.
    Keys: events_received, normalization_errors, reconnect_count,
          poll_cycles, last_event_at, created_at.
    """
    return {
        "events_received": 0,
        "normalization_errors": 0,
        "reconnect_count": 0,
        "poll_cycles": 0,
        "last_event_at": None,
        "created_at": datetime.now(timezone.utc).isoformat()
    }


def backoff_delay(
    attempt: int,
    base_delay_s: float,
    max_delay_s: float,
    multiplier: float = 2.0,
    jitter: float = 0.0,
) -> float:
    """
    min(base * multiplier**attempt, max) stretched by up to `jitter` (a fraction).
    `attempt` is the exponent, so callers that count from 1 pass `attempt - 1`.
    The exponent stops growing once the cap is reached, so any attempt count is safe.
    """
    delay = base_delay_s
    for _ in range(max(attempt, 0)):
        if delay >= max_delay_s:
            break
        delay *= multiplier
    delay = min(delay, max_delay_s)
    if jitter:
        delay += random.uniform(0, delay * jitter)
    return delay


def parse_int(value: object) -> int:
    """
    Integer prefix of a decimal string ("1700000000" -> 1700000000, "12ab" -> 12).
    Anything unparseable gives 0.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if not isinstance(value, str):
        return 0
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else 0


def new_operation_id() -> str:
    return f"q_{int(time.time() * 1000)}_{secrets.token_hex(4)[:7]}"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
