"""Cache entry model.

Entries are stored as JSON text under their own key in the key-value store.
Expiry is evaluated lazily on read; nothing sweeps expired entries.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class CacheEntry:
    """A cached resource with optional expiry.

    Fresh iff ``ttl_ms`` is None or the entry is younger than ``ttl_ms``.
    Stale entries remain readable as a fallback.
    """
    key: str
    payload: Any
    stored_at: float = field(default_factory=time.time)  # epoch seconds
    ttl_ms: Optional[int] = None

    def age_ms(self, now: Optional[float] = None) -> float:
        """Milliseconds since the entry was written."""
        now = time.time() if now is None else now
        return (now - self.stored_at) * 1000

    def is_fresh(self, now: Optional[float] = None, ttl_override: Optional[int] = None) -> bool:
        """Check freshness against the stored ttl, or an override when given."""
        ttl = ttl_override if ttl_override is not None else self.ttl_ms
        if ttl is None:
            return True
        return self.age_ms(now) < ttl

    @property
    def item_count(self) -> int:
        if isinstance(self.payload, (list, dict)):
            return len(self.payload)
        return 0 if self.payload is None else 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "key": self.key,
            "payload": self.payload,
            "stored_at": self.stored_at,
            "ttl_ms": self.ttl_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Create from dict."""
        return cls(
            key=data["key"],
            payload=data.get("payload"),
            stored_at=data["stored_at"],
            ttl_ms=data.get("ttl_ms"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        return cls.from_dict(json.loads(raw))
