"""Relay activity metrics.

In-memory counters for connection churn, room admission and relayed traffic,
exposed as JSON through the ``/metrics/summary`` health endpoint.

All updates happen on the event loop thread, so no locking is needed.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RelayMetrics:
    """Relay performance and activity metrics."""

    # Connection churn
    connections_opened: int = 0
    connections_closed: int = 0

    # Room admission
    joins_accepted: int = 0
    joins_rejected: Counter[str] = field(default_factory=Counter)  # error code → count
    leaves: int = 0

    # Relayed traffic
    binary_frames_relayed: int = 0
    binary_bytes_relayed: int = 0
    text_messages_relayed: int = 0
    messages_dropped_no_room: int = 0
    deliveries_failed: int = 0

    started_ts: float = field(default_factory=time.monotonic)

    @property
    def active_connections(self) -> int:
        return self.connections_opened - self.connections_closed

    def record_connection_opened(self) -> None:
        self.connections_opened += 1

    def record_connection_closed(self) -> None:
        self.connections_closed += 1

    def record_join(self) -> None:
        self.joins_accepted += 1

    def record_join_rejected(self, code: str) -> None:
        self.joins_rejected[code] += 1

    def record_leave(self) -> None:
        self.leaves += 1

    def record_relay(self, size: int, is_binary: bool, delivered: int, targets: int) -> None:
        """Record one fan-out.

        Args:
            size: Payload size in bytes (characters for text)
            is_binary: Whether the payload was an audio frame
            delivered: Number of successful deliveries
            targets: Number of deliveries attempted
        """
        if is_binary:
            self.binary_frames_relayed += delivered
            self.binary_bytes_relayed += size * delivered
        else:
            self.text_messages_relayed += delivered
        self.deliveries_failed += targets - delivered

    def record_dropped(self) -> None:
        self.messages_dropped_no_room += 1

    def get_summary(self) -> dict[str, int | float | dict[str, int]]:
        """Get metrics summary for logging/monitoring.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "active_connections": self.active_connections,
            "connections_opened": self.connections_opened,
            "connections_closed": self.connections_closed,
            "joins_accepted": self.joins_accepted,
            "joins_rejected": dict(self.joins_rejected),
            "leaves": self.leaves,
            "binary_frames_relayed": self.binary_frames_relayed,
            "binary_bytes_relayed": self.binary_bytes_relayed,
            "text_messages_relayed": self.text_messages_relayed,
            "messages_dropped_no_room": self.messages_dropped_no_room,
            "deliveries_failed": self.deliveries_failed,
            "uptime_s": time.monotonic() - self.started_ts,
        }
