"""
Realtime chat hub.

One ``ChatConsumer`` instance per WebSocket connection. A connection is
authenticated at the handshake (see ``people.authentication``) and joins:

* ``chat_user_<id>``: every connection of that user, used to deliver
  messages to the participants of a conversation;
* ``chat_broadcast``: every live connection, used for presence events and
  for messages posted to the global conversation;
* ``conversation_<id>``: rooms joined explicitly by the client, used to
  scope read receipts to the screens showing that conversation.

Clients invoke hub methods with
``{"invocation_id": ..., "target": "SendMessage", "arguments": [...]}``
and get a ``completion`` frame back; server pushes arrive as ``event``
frames.
"""
import inspect
import json
import logging

from django.db import DatabaseError
from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer

from . import services
from .exceptions import ChatError, InvalidRequest, Transient, Unauthenticated
from .presence import presence
from .serializers import MessageSerializer

logger = logging.getLogger(__name__)

BROADCAST_GROUP = "chat_broadcast"


def user_group(user_id) -> str:
    return f"chat_user_{user_id}"


def conversation_group(conversation_id) -> str:
    return f"conversation_{conversation_id}"


def parse_conversation_id(value) -> int:
    # Only whole ids: JSON floats and bools are rejected, never truncated.
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidRequest("Invalid conversation id.")
    return value


@database_sync_to_async
def store_message(conversation_id: int, sender_id: int, content):
    """
    Persist a message and work out who it goes to. Recipients is None for
    the global conversation, meaning every live connection.
    """
    message = services.append_message(conversation_id, sender_id, content)
    payload = dict(MessageSerializer(message).data)
    if message.conversation.is_global:
        return payload, None
    return payload, services.participant_user_ids(conversation_id)


class ChatConsumer(AsyncWebsocketConsumer):
    targets = {
        "SendMessage": "send_message",
        "JoinConversation": "join_conversation",
        "LeaveConversation": "leave_conversation",
        "MarkAsRead": "mark_as_read",
        "GetOnlineUsers": "get_online_users",
    }

    user_id = None

    async def connect(self):
        user = self.scope["user"]  # type: ignore
        if not user.is_authenticated:  # type: ignore
            await self.close(code=4401)
            return

        self.user_id = user.pk
        self.rooms = set()
        await self.channel_layer.group_add(user_group(self.user_id), self.channel_name)
        await self.channel_layer.group_add(BROADCAST_GROUP, self.channel_name)
        await self.accept()

        if presence.register(self.user_id, self.channel_name):
            await self._broadcast_presence("UserOnline")

    async def disconnect(self, code):
        if self.user_id is None:
            return

        went_offline = presence.unregister(self.user_id, self.channel_name)

        groups = [*self.rooms, user_group(self.user_id), BROADCAST_GROUP]
        self.rooms.clear()
        for group in groups:
            try:
                await self.channel_layer.group_discard(group, self.channel_name)
            except Exception:
                logger.warning("Could not leave %s for user %s", group, self.user_id, exc_info=True)

        if went_offline:
            try:
                await database_sync_to_async(services.touch_last_seen)(self.user_id)
            except DatabaseError:
                logger.warning("Could not update last seen for user %s", self.user_id, exc_info=True)
            await self._broadcast_presence("UserOffline")

    async def receive(self, text_data=None, bytes_data=None):
        try:
            frame = json.loads(text_data or "{}")
        except json.JSONDecodeError:
            frame = None
        if not isinstance(frame, dict):
            await self._send_completion(None, error=InvalidRequest("Malformed frame."))
            return

        invocation_id = frame.get("invocation_id")
        method_name = self.targets.get(frame.get("target"))
        arguments = frame.get("arguments") or []
        if not isinstance(arguments, list):
            await self._send_completion(invocation_id, error=InvalidRequest("Arguments must be a list."))
            return
        if method_name is None:
            await self._send_completion(
                invocation_id, error=InvalidRequest(f"Unknown target {frame.get('target')!r}.")
            )
            return

        method = getattr(self, method_name)
        try:
            inspect.signature(method).bind(*arguments)
        except TypeError:
            await self._send_completion(
                invocation_id, error=InvalidRequest(f"Wrong arguments for {frame['target']}.")
            )
            return

        try:
            result = await method(*arguments)
        except ChatError as exc:
            await self._send_completion(invocation_id, error=exc)
            return
        except DatabaseError:
            logger.exception("Hub invocation %s failed", frame["target"])
            await self._send_completion(invocation_id, error=Transient())
            return
        await self._send_completion(invocation_id, result=result)

    # ============ Hub methods ===================
    async def send_message(self, conversation_id, content):
        if self.user_id is None:
            raise Unauthenticated()

        conversation_id = parse_conversation_id(conversation_id)
        payload, recipients = await store_message(conversation_id, self.user_id, content)

        if recipients is None:
            groups = [BROADCAST_GROUP]
        else:
            groups = [user_group(user_id) for user_id in recipients]
        for group in groups:
            # The message is already stored; a failed delivery is picked up
            # by the recipient's next history fetch.
            try:
                await self.channel_layer.group_send(group, {
                    "type": "chat_message",
                    "message": payload,
                })
            except Exception:
                logger.warning("Could not deliver message %s to %s", payload["id"], group, exc_info=True)
        return payload

    async def join_conversation(self, conversation_id):
        room = conversation_group(parse_conversation_id(conversation_id))
        await self.channel_layer.group_add(room, self.channel_name)
        self.rooms.add(room)

    async def leave_conversation(self, conversation_id):
        room = conversation_group(parse_conversation_id(conversation_id))
        await self.channel_layer.group_discard(room, self.channel_name)
        self.rooms.discard(room)

    async def mark_as_read(self, conversation_id):
        if self.user_id is None:
            return

        try:
            conversation_id = parse_conversation_id(conversation_id)
            participant = await database_sync_to_async(services.mark_read)(conversation_id, self.user_id)
        except ChatError as exc:
            logger.debug("Ignoring read receipt from user %s: %s", self.user_id, exc.detail)
            return
        except DatabaseError:
            logger.warning("Could not mark conversation %s read", conversation_id, exc_info=True)
            return

        try:
            await self.channel_layer.group_send(conversation_group(conversation_id), {
                "type": "read_receipt",
                "conversation_id": conversation_id,
                "user_id": self.user_id,
                "read_at": participant.last_read_at.isoformat(),
            })
        except Exception:
            logger.warning("Could not publish read receipt for conversation %s", conversation_id, exc_info=True)

    async def get_online_users(self):
        return presence.online_users()

    # ============ Channel layer events ===================
    async def chat_message(self, event):
        await self._send_event("ReceiveMessage", event["message"])

    async def presence_event(self, event):
        if event["sender"] == self.channel_name:
            return
        await self._send_event(event["event"], event["user_id"])

    async def read_receipt(self, event):
        await self._send_event("MessagesRead", {
            "conversation_id": event["conversation_id"],
            "user_id": event["user_id"],
            "read_at": event["read_at"],
        })

    # ============ Helpers ===================
    async def _broadcast_presence(self, event_name):
        try:
            await self.channel_layer.group_send(BROADCAST_GROUP, {
                "type": "presence_event",
                "event": event_name,
                "user_id": self.user_id,
                "sender": self.channel_name,
            })
        except Exception:
            logger.warning("Could not broadcast %s for user %s", event_name, self.user_id, exc_info=True)

    async def _send_event(self, name, data):
        await self.send(text_data=json.dumps({"type": "event", "event": name, "data": data}))

    async def _send_completion(self, invocation_id, result=None, error=None):
        frame = {"type": "completion", "invocation_id": invocation_id}
        if error is not None:
            frame["error"] = {"code": error.default_code, "detail": error.detail}
        else:
            frame["result"] = result
        await self.send(text_data=json.dumps(frame))
