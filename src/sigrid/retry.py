# sigrid: Rate-limit aware retry around one upstream call. Only UpstreamRateLimit (HTTP 429) is retried.

import logging
import random
import re
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import UpstreamRateLimit
from .models import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESET_TOKENS_HEADER = "x-ratelimit-reset-tokens"
REMAINING_TOKENS_HEADER = "x-ratelimit-remaining-tokens"
# Reset hints are usable only strictly inside this window (seconds)
MAX_RESET_HINT = 300.0

_RESET_RE = re.compile(r"(?:(\d+)m)?(\d+(?:\.\d+)?)s")


def parse_reset_hint(value: Optional[str]) -> Optional[float]:
    """Parse hints like '3m0.088s' or '12.5s' into seconds; None when absent or malformed."""
    if not value:
        return None
    m = _RESET_RE.fullmatch(value.strip())
    if not m:
        return None
    return int(m.group(1) or 0) * 60 + float(m.group(2))


def compute_delay(attempt: int, config: RetryConfig, error: UpstreamRateLimit) -> float:
    """Server reset hint when inside (0, 300) seconds, else base * 2^(attempt-1) * (1 + U[0, 0.25]); capped by max_delay."""
    hint = parse_reset_hint(error.headers.get(RESET_TOKENS_HEADER))
    if hint is not None and 0 < hint < MAX_RESET_HINT:
        delay = hint
    else:
        delay = config.base_delay * (2 ** (attempt - 1)) * (1 + random.uniform(0, 0.25))
    return min(delay, config.max_delay)


def call_with_retry(fn: Callable[[], T], config: Optional[RetryConfig] = None) -> T:
    """
    Invoke fn, retrying on UpstreamRateLimit up to config.max_retries times.

    Any other exception propagates immediately. When retries are exhausted the
    last rate-limit error is re-raised.
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return fn()
        except UpstreamRateLimit as e:
            attempt += 1
            if not config.enabled or attempt > config.max_retries:
                raise
            delay = compute_delay(attempt, config, e)
            logger.warning(
                "Rate limited (429); retry %d/%d in %.2fs (remaining tokens: %s)",
                attempt, config.max_retries, delay, e.headers.get(REMAINING_TOKENS_HEADER),
            )
            time.sleep(delay)
            if config.on_retry is not None:
                info: Dict[str, Any] = {
                    "attempt": attempt,
                    "delay": delay,
                    "error": e,
                    "remaining_tokens": e.headers.get(REMAINING_TOKENS_HEADER),
                    "reset_time": e.headers.get(RESET_TOKENS_HEADER),
                }
                config.on_retry(info)
