from abc import ABC, abstractmethod
from typing import Any, Dict, List, Set

from services.twitch.models.events import normalize_channel
from shared.logging.logger import get_logger

log = get_logger("core.router")


class Subscriber(ABC):
    """
    A downstream connection as seen by the router.

    `emit` must not block: implementations enqueue the frame and drain
    it from their own writer so per-connection order is kept.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    def emit(self, event: str, payload: Any) -> None:
        ...


class FanoutRouter:
    """
    Channel -> set of subscribed connections.

    A channel event is only ever handed to connections subscribed to
    that channel. Subscriber sets are kept when they become empty so the
    channel stays known until its lease decides otherwise.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[Subscriber]] = {}

    def subscribe(self, channel: str, subscriber: Subscriber) -> bool:
        channel = normalize_channel(channel)
        room = self._rooms.setdefault(channel, set())
        if subscriber in room:
            return False
        room.add(subscriber)
        log.debug(f"[#{channel}] {subscriber.id} subscribed ({len(room)} total)")
        return True

    def unsubscribe_all(self, subscriber: Subscriber) -> List[str]:
        removed = []
        for channel, room in self._rooms.items():
            if subscriber in room:
                room.discard(subscriber)
                removed.append(channel)
        if removed:
            log.debug(f"{subscriber.id} unsubscribed from {len(removed)} channel(s)")
        return sorted(removed)

    def deliver(self, channel: str, event: str, payload: Any) -> int:
        room = self._rooms.get(normalize_channel(channel))
        if not room:
            return 0

        delivered = 0
        for subscriber in list(room):
            if subscriber.closed:
                continue
            try:
                subscriber.emit(event, payload)
                delivered += 1
            except Exception as e:
                log.error(f"Failed to emit '{event}' to {subscriber.id}: {e}")
        return delivered

    def subscribers(self, channel: str) -> Set[Subscriber]:
        return set(self._rooms.get(normalize_channel(channel), ()))

    def channels_for(self, subscriber: Subscriber) -> List[str]:
        return sorted(channel for channel, room in self._rooms.items() if subscriber in room)

    def channels(self) -> List[str]:
        return sorted(self._rooms)


__all__ = ["Subscriber", "FanoutRouter"]
