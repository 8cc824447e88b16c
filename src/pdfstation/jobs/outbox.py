"""Relay of committed outbox rows onto the event exchange."""

import logging

from .backends import EventExchange, JobStore

logger = logging.getLogger(__name__)


class OutboxRelay:
    """Publishes events that a store transaction has already committed.

    Each entry is marked published right after the exchange accepts it. An
    entry is published under the dedup key `outbox:<id>`, so a crash (or a
    second relay) between publish and mark cannot append it twice.
    """

    def __init__(self, store: JobStore, exchange: EventExchange, batch_size: int = 100):
        self.store = store
        self.exchange = exchange
        self.batch_size = batch_size

    def flush(self) -> int:
        """Publish every pending entry. Returns the number published."""
        published = 0
        while True:
            entries = self.store.pending_outbox(limit=self.batch_size)
            if not entries:
                return published

            for entry in entries:
                self.exchange.publish(
                    entry.topic, entry.key, entry.payload, dedup_key=f"outbox:{entry.id}"
                )
                self.store.mark_outbox_published([entry.id])
                published += 1
                logger.debug("Relayed outbox entry %s to %s (key=%s)", entry.id, entry.topic, entry.key)
