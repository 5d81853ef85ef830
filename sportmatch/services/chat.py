"""Chat over the realtime transport.

Topics (per signed-in user):
- /user/{id}/queue/messages -> MessageReceived
- /user/{id}/queue/matches  -> MatchFound

Destinations:
- /app/chat.send  {conversationId, content, messageType}
- /app/chat.join  conversationId
"""

import logging

from pydantic import ValidationError

from sportmatch.schemas.chat import Message
from sportmatch.services.realtime import InboundMessage, RealtimeTransport, Subscription
from sportmatch.services.signals import MatchFound, MessageReceived, SignalBus

logger = logging.getLogger("sportmatch")

SEND_DESTINATION = "/app/chat.send"
JOIN_DESTINATION = "/app/chat.join"


def messages_topic(user_id: int) -> str:
    return f"/user/{user_id}/queue/messages"


def matches_topic(user_id: int) -> str:
    return f"/user/{user_id}/queue/matches"


class ChatChannel:
    def __init__(self, transport: RealtimeTransport, bus: SignalBus):
        self.transport = transport
        self.bus = bus
        self._subscriptions: list[Subscription] = []

    @property
    def attached(self) -> bool:
        return bool(self._subscriptions)

    async def attach(self, user_id: int) -> None:
        """Subscribe the user's private queues. Re-attaching replaces them."""
        await self.detach()
        self._subscriptions = [
            await self.transport.subscribe(messages_topic(user_id), self._on_message),
            await self.transport.subscribe(matches_topic(user_id), self._on_match),
        ]

    async def detach(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await self.transport.unsubscribe(subscription)

    async def send_message(self, conversation_id: int, content: str) -> None:
        await self.transport.publish(
            SEND_DESTINATION,
            {"conversationId": conversation_id, "content": content, "messageType": "TEXT"},
        )

    async def join_conversation(self, conversation_id: int) -> None:
        await self.transport.publish(JOIN_DESTINATION, conversation_id)

    def _on_message(self, inbound: InboundMessage) -> None:
        try:
            message = Message.model_validate_json(inbound.body)
        except ValidationError as e:
            logger.error(f"Error parsing realtime message on {inbound.topic}: {e}")
            return
        self.bus.emit(MessageReceived(message=message))

    def _on_match(self, inbound: InboundMessage) -> None:
        try:
            payload = inbound.json()
        except ValueError as e:
            logger.error(f"Error parsing match notification on {inbound.topic}: {e}")
            return
        if not isinstance(payload, dict):
            payload = {"value": payload}
        self.bus.emit(MatchFound(payload=payload, source="realtime"))
