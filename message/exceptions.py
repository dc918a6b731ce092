"""
Failures raised by the conversation store and surfaced by both the REST
views (through DRF's exception handler) and the chat consumer (as an
invocation error sent back to the calling connection).
"""
from rest_framework import status
from rest_framework.exceptions import APIException


class ChatError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Chat request failed."
    default_code = "chat_error"


class Unauthenticated(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "User not authenticated."
    default_code = "unauthenticated"


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You do not have access to this resource."
    default_code = "forbidden"


class NotParticipant(Forbidden):
    default_detail = "User is not a participant of this conversation."
    default_code = "not_participant"


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."
    default_code = "not_found"


class InvalidRequest(ChatError):
    default_detail = "Invalid request."
    default_code = "invalid_request"


class Conflict(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conversation already exists."
    default_code = "conflict"


class Transient(ChatError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "A server error occurred."
    default_code = "transient"
