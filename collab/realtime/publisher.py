"""Single exit point for socket events and push jobs.

Services never emit directly. They fill an :class:`EventBundle` while their
transaction is open and hand it to :meth:`Publisher.publish` after commit,
still inside the conversation lock, so each room sees events in commit
order. Delivery failures are logged and never raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from collab.realtime.hub import (
    RealtimeHub,
    conversation_room,
    global_room,
    hub,
    user_room,
)
from collab.realtime.push import PushDispatcher, dispatcher

logger = logging.getLogger(__name__)


@dataclass
class OutboundEvent:
    room: str
    event: str
    data: dict[str, Any]


@dataclass
class PushJob:
    receiver_id: int
    conversation_id: int
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class EventBundle:
    events: list[OutboundEvent] = field(default_factory=list)
    pushes: list[PushJob] = field(default_factory=list)

    def _add(self, rooms: list[str], event: str, data: dict[str, Any]) -> None:
        for room in rooms:
            self.events.append(OutboundEvent(room, event, data))

    def chat_new(self, conversation_id: int, message: dict) -> None:
        self._add([conversation_room(conversation_id)], "chat:new", {"message": message})

    def notification(self, receiver_id: int, type: str, data: dict) -> None:
        self._add([user_room(receiver_id)], "notification", {"type": type, "data": data})

    def conversation_list_updated(self, parties: tuple[int, int], payload: dict) -> None:
        a, b = parties
        self._add(
            [user_room(a), user_room(b), global_room(a), global_room(b)],
            "conversation_list_updated",
            payload,
        )

    def unread_count_updated(
        self, receiver_id: int, parties: tuple[int, int], payload: dict,
    ) -> None:
        self._add(
            [user_room(receiver_id)] + [global_room(p) for p in parties],
            "unread_count_updated",
            payload,
        )

    def message_seen(self, conversation_id: int, parties: tuple[int, int], payload: dict) -> None:
        self._add(
            [conversation_room(conversation_id)] + [global_room(p) for p in parties],
            "message_seen",
            payload,
        )

    def user_typing(self, conversation_id: int, parties: tuple[int, int], payload: dict) -> None:
        self._add(
            [conversation_room(conversation_id)] + [global_room(p) for p in parties],
            "user_typing",
            payload,
        )

    def conversation_state_changed(self, conversation_id: int, payload: dict) -> None:
        self._add(
            [conversation_room(conversation_id)], "conversation_state_changed", payload,
        )

    def push(
        self,
        receiver_id: int,
        conversation_id: int,
        title: str,
        body: str,
        data: dict | None = None,
    ) -> None:
        self.pushes.append(PushJob(receiver_id, conversation_id, title, body, data or {}))

    def extend(self, other: "EventBundle") -> None:
        self.events.extend(other.events)
        self.pushes.extend(other.pushes)

    def __bool__(self) -> bool:
        return bool(self.events or self.pushes)


class Publisher:
    def __init__(
        self, presence: RealtimeHub | None = None, push: PushDispatcher | None = None,
    ) -> None:
        self.presence = presence or hub
        self.push = push or dispatcher

    async def publish(self, bundle: EventBundle) -> None:
        for item in bundle.events:
            try:
                await self.presence.emit(item.room, item.event, item.data)
            except Exception:
                logger.exception("Failed to emit %s to %s", item.event, item.room)
        for job in bundle.pushes:
            try:
                self.push.dispatch(
                    job.receiver_id, job.conversation_id, job.title, job.body, job.data,
                )
            except Exception:
                logger.exception("Failed to dispatch push to user %s", job.receiver_id)


publisher = Publisher()
