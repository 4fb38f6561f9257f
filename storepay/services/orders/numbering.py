"""Order number issuance: prefix + yymmdd + zero-padded daily sequence.

The sequence is "one past the highest number already issued for the date".
Scanning alone races under concurrent checkouts, so the scan only seeds an
atomic counter and every issue goes through the counter.
"""

from datetime import datetime, timezone
from typing import Callable, Protocol

import redis

SEQUENCE_WIDTH = 4
# Counters only need to outlive the day they number.
COUNTER_TTL_SECONDS = 3 * 86400


class SequenceCounter(Protocol):
    def next_value(self, key: str, seed: Callable[[], int]) -> int:
        """Atomically return the next value for `key`.

        `seed` is consulted only when the key has never been used and returns the
        highest value already taken.
        """


class RedisSequenceCounter:
    """Per-key counter on Redis `SET NX` + `INCR`."""

    def __init__(self, rdb: redis.Redis, namespace: str = "storepay:order-seq") -> None:
        self.rdb = rdb
        self.namespace = namespace

    def next_value(self, key: str, seed: Callable[[], int]) -> int:
        redis_key = f"{self.namespace}:{key}"
        if not self.rdb.exists(redis_key):
            # Losing the NX race is fine: the winner's seed came from the same scan.
            self.rdb.set(redis_key, seed(), nx=True, ex=COUNTER_TTL_SECONDS)
        return int(self.rdb.incr(redis_key))


class OrderNumberGenerator:
    """Issues globally unique, human-readable order numbers."""

    def __init__(
        self,
        counter: SequenceCounter,
        issued_max: Callable[[str], int],
        prefix: str = "GF",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.counter = counter
        self.issued_max = issued_max
        self.prefix = prefix
        self.clock = clock

    def date_prefix(self) -> str:
        return f"{self.prefix}{self.clock():%y%m%d}"

    def next_order_number(self) -> str:
        date_prefix = self.date_prefix()
        sequence = self.counter.next_value(date_prefix, lambda: self.issued_max(date_prefix))
        return f"{date_prefix}{sequence:0{SEQUENCE_WIDTH}d}"
