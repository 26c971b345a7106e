"""TTL cache for condition results on duplicate or resubmitted messages."""

import hashlib
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from rule_arbiter.models import Message, Rule

DEFAULT_CONDITION_TTL = timedelta(minutes=5)


def make_cache_key(user_id: str, rule: Rule, message: Message) -> str:
    """
    Stable key for a condition evaluated against a message.

    The key covers the user, the condition (type and expression) and the
    message's normalized content (sender, subject, body and recipients), so
    identical content resubmitted under a new message id still hits.
    """
    condition_type = rule.condition_type.value if rule.condition_type else ""
    raw = "\x1e".join(
        (user_id, condition_type, rule.condition_expression or "", message.fingerprint)
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class ConditionCacheEntry:
    value: bool
    stored_at: datetime


class ConditionResultCache:
    """Boolean condition results with lazy TTL expiry.

    Safe to clear at any time: only performance depends on it.
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_CONDITION_TTL,
        max_entries: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize the cache.

        Args:
            ttl: Age after which an entry counts as a miss.
            max_entries: Optional size cap; oldest entries are evicted first.
            clock: Time source, injectable for tests.
        """
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries: OrderedDict[str, ConditionCacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> tuple[bool, bool]:
        """
        Look up a condition result.

        Returns:
            (value, hit). On a miss the value is False and any expired entry
            has been evicted.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return False, False
            if self.clock() - entry.stored_at >= self.ttl:
                del self._entries[key]
                self.misses += 1
                return False, False
            self.hits += 1
            return entry.value, True

    def set(self, key: str, value: bool) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = ConditionCacheEntry(value=value, stored_at=self.clock())
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now - e.stored_at >= self.ttl]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from cache."""
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
