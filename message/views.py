from django.conf import settings
from django.contrib.auth import get_user_model
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response
from rest_framework.views import APIView
from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema

from . import services
from .exceptions import InvalidRequest, NotFound
from .serializers import (
    ConversationDetailSerializer,
    ConversationListItemSerializer,
    CreateConversationSerializer,
    MessagePageQuerySerializer,
    MessageSerializer,
    UserSearchSerializer,
)


User = get_user_model()


# ============ Conversations ===================
class ConversationListView(APIView):

    def get(self, request):
        services.ensure_global_participant(request.user.pk)
        conversations = services.list_conversations_for_user(request.user.pk)
        return Response(ConversationListItemSerializer(conversations, many=True).data)

    @swagger_auto_schema(request_body=CreateConversationSerializer)
    def post(self, request):
        serializer = CreateConversationSerializer(data=request.data)
        if not serializer.is_valid():
            raise InvalidRequest(serializer.errors)

        other = User.objects.find_by_email(serializer.validated_data["participant_email"])
        if other is None:
            raise NotFound("User not found.")

        conversation, created = services.find_or_create_conversation(request.user.pk, other.pk)
        return Response(
            {"conversation_id": conversation.pk, "created": created},
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class ConversationDetailView(APIView):

    def get(self, request, id: int):
        participant = services.require_participant(id, request.user.pk)
        messages = services.page_messages(participant)
        return Response(ConversationDetailSerializer({
            "participant": participant,
            "messages": messages,
        }).data)

    def delete(self, request, id: int):
        services.delete_conversation(id, request.user.pk)
        return Response({"message": "Conversation deleted"})


class ConversationMessagesView(APIView):

    @swagger_auto_schema(
        manual_parameters=[
            openapi.Parameter("before_message_id", openapi.IN_QUERY, type=openapi.TYPE_INTEGER, description="Return messages older than this one"),
            openapi.Parameter("count", openapi.IN_QUERY, type=openapi.TYPE_INTEGER, description="Page size"),
        ]
    )
    def get(self, request, id: int):
        query = MessagePageQuerySerializer(data=request.query_params)
        if not query.is_valid():
            raise InvalidRequest(query.errors)

        messages = services.list_messages(
            id,
            request.user.pk,
            before_message_id=query.validated_data.get("before_message_id"),
            count=query.validated_data.get("count"),
        )
        return Response(MessageSerializer(messages, many=True).data)

    def delete(self, request, id: int):
        services.clear_history(id, request.user.pk)
        return Response({"message": "History cleared"})


@api_view(["PUT"])
def mark_read(request, id: int):
    services.mark_read(id, request.user.pk)
    return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(["POST"])
def block(request, id: int):
    services.set_blocked(id, request.user.pk, True)
    return Response({"message": "User blocked"})


@api_view(["POST"])
def unblock(request, id: int):
    services.set_blocked(id, request.user.pk, False)
    return Response({"message": "User unblocked"})


@api_view(["DELETE"])
def delete_message(request, message_id: int):
    services.delete_message(message_id, request.user.pk)
    return Response({"message": "Message deleted"})


# ============ Users ===================
@swagger_auto_schema(
    method="GET",
    manual_parameters=[
        openapi.Parameter("query", openapi.IN_QUERY, type=openapi.TYPE_STRING, description="Search by name or email"),
    ]
)
@api_view(["GET"])
def search_users(request):
    query = request.GET.get("query", "").strip()
    if not query:
        raise InvalidRequest("Search query is required.")

    users = User.objects.search(query, exclude=request.user)[:settings.CHAT_USER_SEARCH_LIMIT]
    return Response(UserSearchSerializer(users, many=True).data)
