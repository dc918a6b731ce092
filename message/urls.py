from django.urls import path

from .views import (
    ConversationDetailView,
    ConversationListView,
    ConversationMessagesView,
    block,
    delete_message,
    mark_read,
    search_users,
    unblock,
)
from .consumers import ChatConsumer

urlpatterns = [
    path("conversations", ConversationListView.as_view(), name="conversations"),
    path("conversations/<int:id>", ConversationDetailView.as_view(), name="conversation"),
    path("conversations/<int:id>/messages", ConversationMessagesView.as_view(), name="conversation_messages"),
    path("conversations/<int:id>/read", mark_read, name="conversation_read"),
    path("conversations/<int:id>/block", block, name="conversation_block"),
    path("conversations/<int:id>/unblock", unblock, name="conversation_unblock"),
    path("search-users", search_users, name="search_users"),
    path("<int:message_id>", delete_message, name="delete_message"),
]

websocket_urlpatterns = [
    path("ws/chat/", ChatConsumer.as_asgi(), name="chat"), # type: ignore
]
