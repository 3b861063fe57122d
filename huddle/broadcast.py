"""Fan-out to everyone but the sender. No history, no acks, no retries."""
import logging
from typing import Optional

from huddle.events import encode_frame
from huddle.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class BroadcastRelay:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    def publish(self, sender_id: Optional[str], event_type: str, data: Optional[dict] = None) -> int:
        """Queue the event for every live connection except sender_id.

        Returns how many recipients it was queued for. A connection that
        joins later never sees it.
        """
        frame = encode_frame(event_type, data)
        sent = 0
        for peer in self.registry.live_ids():
            if peer == sender_id:
                continue
            if self.registry.deliver(peer, frame):
                sent += 1
        logger.debug('%s from %s -> %d peers', event_type, sender_id, sent)
        return sent

    def publish_all(self, event_type: str, data: Optional[dict] = None) -> int:
        return self.publish(None, event_type, data)
