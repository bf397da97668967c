"""
Record layout for the key-value store.

Defines the key families and the rate window record format. Each family is
keyed and lifecycled independently of the others.
"""

import json
from dataclasses import dataclass
from typing import Optional


SETTLED_MARKER = "1"
PRICE_IN_KEY = "meta:price_in"
PRICE_OUT_KEY = "meta:price_out"


def balance_key(account: str) -> str:
    return f"balance:{account}"


def consumed_key(work_id: str) -> str:
    return f"consumed:{work_id}"


def rate_key(account: str) -> str:
    return f"rate:{account}"


@dataclass(frozen=True)
class RateWindow:
    """Allowed-request count since ``start`` (epoch seconds)."""
    count: int
    start: int

    def to_json(self) -> str:
        return json.dumps({"count": self.count, "start": self.start})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["RateWindow"]:
        """Decode a stored window; malformed records decode to None."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return cls(count=int(data["count"]), start=int(data["start"]))
        except (ValueError, TypeError, KeyError):
            return None
