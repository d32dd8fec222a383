from django.contrib import admin
from .models import (
    UserProfile,
    Listing,
    ListingImage,
    Conversation,
    Message,
)


# Register your models here.
@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ["uid", "email", "display_name", "college_domain", "created_at", "updated_at"]
    search_fields = ["uid", "email", "display_name"]
    list_filter = ["college_domain", "created_at"]
    readonly_fields = ["created_at", "updated_at"]


class ListingImageInline(admin.TabularInline):
    model = ListingImage
    extra = 0
    ordering = ["order"]


@admin.register(Listing)
class ListingAdmin(admin.ModelAdmin):
    list_display = ["title", "price", "category", "condition", "seller_name", "status", "created_at", "expires_at"]
    list_filter = ["status", "category", "condition", "created_at"]
    search_fields = ["title", "description", "seller_name", "seller_id"]
    inlines = [ListingImageInline]


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ['id', 'get_participants', 'listing_title', 'last_message_timestamp', 'created_at', 'message_count']
    list_filter = ['created_at', 'last_message_timestamp']
    search_fields = ['participant_low_id', 'participant_high_id', 'participant_low_name', 'participant_high_name', 'listing_title']
    readonly_fields = ['created_at', 'updated_at', 'last_message_text', 'last_message_sender_id', 'last_message_timestamp']

    def get_participants(self, obj):
        return ', '.join(p["displayName"] or p["uid"] for p in obj.participants)
    get_participants.short_description = 'Participants'

    def message_count(self, obj):
        return obj.messages.count()
    message_count.short_description = 'Messages'


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ['id', 'conversation', 'sender_id', 'content_preview', 'timestamp']
    list_filter = ['timestamp']
    search_fields = ['text', 'sender_id']
    readonly_fields = ['conversation', 'sender_id', 'text', 'timestamp']
    date_hierarchy = 'timestamp'

    def content_preview(self, obj):
        return obj.text[:50] + '...' if len(obj.text) > 50 else obj.text
    content_preview.short_description = 'Text'

    def has_change_permission(self, request, obj=None):
        # Messages are append-only
        return False


admin.site.site_header = "Campus Marketplace Admin"
admin.site.site_title = "Campus Marketplace Admin Portal"
admin.site.index_title = "Welcome to Campus Marketplace Admin Portal"
