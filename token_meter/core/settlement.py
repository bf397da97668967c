"""
Idempotent consumption markers.

A work id is billed at most once: the marker is written after the debit and
checked before it.
"""

from token_meter.storage.kv import KeyValueStore
from token_meter.storage.models import SETTLED_MARKER, consumed_key


class ConsumptionGuard:
    """Settlement markers keyed by work id.

    ``mark_settled`` must only follow a successful debit. A marker written
    first would block a legitimate retry of a debit that then failed.
    The converse gap remains: if the process dies after the debit but before
    the marker lands, a retry with the same work id debits again.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def is_settled(self, work_id: str) -> bool:
        return self.store.get(consumed_key(work_id)) is not None

    def mark_settled(self, work_id: str) -> None:
        # No TTL: markers must outlive any possible retry of the work id
        self.store.put(consumed_key(work_id), SETTLED_MARKER)
