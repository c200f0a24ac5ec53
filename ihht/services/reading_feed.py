"""
In-process reading source.

Bridges any transport (HTTP ingestion, simulator, test code) to the
IReadingSource protocol consumed by the session controller.
"""

from typing import List, Optional, Tuple

import structlog

from ihht.domain.models.reading import Reading
from ihht.services.protocols import DisconnectCallback, ReadingCallback, Unsubscribe

log = structlog.get_logger(__name__)


class ReadingFeed:
    """
    Push-based reading source.

    Usage:
        feed = ReadingFeed()
        unsubscribe = feed.subscribe(on_reading, on_disconnect)
        feed.publish(Reading(spo2=92, heart_rate=70))
        feed.signal_disconnect()
    """

    def __init__(self):
        self._subscribers: List[Tuple[ReadingCallback, DisconnectCallback]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        on_reading: ReadingCallback,
        on_disconnect: DisconnectCallback,
    ) -> Unsubscribe:
        entry = (on_reading, on_disconnect)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, reading: Reading) -> int:
        """
        Deliver a reading to all subscribers.

        Returns:
            Number of subscribers notified
        """
        subscribers = list(self._subscribers)
        for on_reading, _ in subscribers:
            try:
                on_reading(reading)
            except Exception as e:
                log.error("reading_callback_failed", error=str(e), exc_info=True)
        return len(subscribers)

    def signal_disconnect(self, error: Optional[Exception] = None) -> int:
        """Notify subscribers that the sensor feed was lost."""
        subscribers = list(self._subscribers)
        log.warning(
            "sensor_disconnect_signalled",
            subscribers=len(subscribers),
            error=str(error) if error else None,
        )
        for _, on_disconnect in subscribers:
            try:
                on_disconnect(error)
            except Exception as e:
                log.error("disconnect_callback_failed", error=str(e), exc_info=True)
        return len(subscribers)
