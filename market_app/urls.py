from django.urls import path
from . import views

app_name = "market_app"

urlpatterns = [
    path("listings", views.listings, name="listings"),
    path("listings/<str:listing_id>", views.listing_detail, name="listing_detail"),
    path("conversations", views.start_conversation, name="start_conversation"),
    path("conversations/<str:user_id>", views.user_conversations, name="user_conversations"),
    path("messages", views.send_message, name="send_message"),
    path(
        "messages/<str:conversation_id>",
        views.conversation_messages,
        name="conversation_messages",
    ),
    path("users", views.sync_user, name="sync_user"),
]
