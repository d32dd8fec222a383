# market_app/views.py
import json
import logging

from django.core.exceptions import ValidationError
from django.db import DatabaseError
from django.http import JsonResponse
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from .forms import ConversationForm, ListingForm, MessageForm, UserSyncForm
from .models import Conversation, Listing, UserProfile
from .utils.chat_utils import append_message, list_conversations, list_messages

logger = logging.getLogger(__name__)

MAX_MESSAGE_PAGE = 500


# --- Serialization -----------------------------------------------------------


def _isoformat(value):
    return value.isoformat() if value else None


def serialize_user(profile):
    return {
        "uid": profile.uid,
        "email": profile.email,
        "displayName": profile.display_name,
        "photoURL": profile.photo_url,
        "collegeDomain": profile.college_domain,
        "createdAt": _isoformat(profile.created_at),
        "updatedAt": _isoformat(profile.updated_at),
    }


def serialize_listing(listing, request):
    primary = listing.primary_image
    return {
        "id": str(listing.id),
        "title": listing.title,
        "description": listing.description,
        "price": float(listing.price),
        "category": listing.category,
        "condition": listing.condition,
        "images": [request.build_absolute_uri(img.image.url) for img in listing.images.all()],
        "primaryImage": request.build_absolute_uri(primary.url) if primary else None,
        "sellerId": listing.seller_id,
        "sellerName": listing.seller_name,
        "sellerPhoto": listing.seller_photo,
        "collegeDomain": listing.college_domain,
        "status": listing.status,
        "createdAt": _isoformat(listing.created_at),
        "expiresAt": _isoformat(listing.expires_at),
    }


def serialize_conversation(conversation):
    return {
        "id": str(conversation.id),
        "participants": conversation.participants,
        "participantIds": conversation.participant_ids,
        "listingId": conversation.listing_id,
        "listingTitle": conversation.listing_title,
        "lastMessageText": conversation.last_message_text,
        "lastMessageSenderId": conversation.last_message_sender_id,
        "lastMessageTimestamp": _isoformat(conversation.last_message_timestamp),
        "createdAt": _isoformat(conversation.created_at),
    }


def serialize_message(message):
    return {
        "id": str(message.id),
        "conversationId": str(message.conversation_id),
        "senderId": message.sender_id,
        "text": message.text,
        "timestamp": _isoformat(message.timestamp),
    }


# --- Helpers -----------------------------------------------------------------


def _payload(request):
    """Request body as a mapping: parsed JSON, or the POST form data."""
    if request.content_type == "application/json":
        try:
            data = json.loads(request.body or b"{}")
        except ValueError:
            raise ValidationError("Request body is not valid JSON.") from None
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        return data
    return request.POST


def _error(message, status, errors=None):
    body = {"message": message}
    if errors:
        body["errors"] = errors
    return JsonResponse(body, status=status)


def _form_error(form):
    errors = {field: [str(m) for m in messages] for field, messages in form.errors.items()}
    first = next(iter(errors.values()))[0]
    return _error(first, 400, errors)


def _validation_error(e):
    return _error(e.messages[0], 400)


def _get_listing(listing_id):
    try:
        return Listing.objects.prefetch_related("images").get(pk=int(listing_id))
    except (TypeError, ValueError):
        raise Listing.DoesNotExist(f"Listing {listing_id!r} not found") from None


# --- Listings ----------------------------------------------------------------


@csrf_exempt
@require_http_methods(["GET", "POST"])
def listings(request):
    if request.method == "POST":
        return create_listing(request)
    return list_listings(request)


def create_listing(request):
    """Create a listing from a multipart form with up to MAX_LISTING_IMAGES images"""
    try:
        form = ListingForm.from_payload(_payload(request), images=request.FILES.getlist("images"))
    except ValidationError as e:
        return _validation_error(e)

    if not form.is_valid():
        return _form_error(form)

    try:
        listing = form.save()
    except DatabaseError as e:
        logger.error(f"Error creating listing: {str(e)}", exc_info=True)
        return _error("Failed to create listing. Please try again.", 500)

    logger.info(f"Listing {listing.id} created by seller {listing.seller_id}")
    return JsonResponse(serialize_listing(listing, request), status=201)


def list_listings(request):
    category = request.GET.get("category") or None
    sort = request.GET.get("sort") or "newest"
    try:
        qs = Listing.active(category=category, sort=sort).prefetch_related("images")
        data = [serialize_listing(listing, request) for listing in qs]
    except DatabaseError as e:
        logger.warning(f"Error fetching listings: {str(e)}")
        data = []
    return JsonResponse(data, safe=False)


@csrf_exempt
@require_http_methods(["GET", "DELETE"])
def listing_detail(request, listing_id):
    try:
        listing = _get_listing(listing_id)
    except Listing.DoesNotExist:
        return _error("Listing not found", 404)

    if request.method == "DELETE":
        # TODO: restrict deletion to the seller once requests carry an authenticated user id
        try:
            listing.delete()
        except DatabaseError as e:
            logger.error(f"Error deleting listing {listing_id}: {str(e)}", exc_info=True)
            return _error("Failed to delete listing. Please try again.", 500)
        logger.info(f"Listing {listing_id} deleted")
        return JsonResponse({"message": "Deleted successfully"})

    return JsonResponse(serialize_listing(listing, request))


# --- Conversations -----------------------------------------------------------


@csrf_exempt
@require_POST
def start_conversation(request):
    """Find the conversation between two users, creating it on first contact"""
    try:
        form = ConversationForm.from_payload(_payload(request))
    except ValidationError as e:
        return _validation_error(e)

    if not form.is_valid():
        return _form_error(form)

    try:
        conversation, created = Conversation.find_or_create(**form.cleaned_data)
    except ValidationError as e:
        return _validation_error(e)
    except DatabaseError as e:
        logger.error(f"Error starting conversation: {str(e)}", exc_info=True)
        return _error("Failed to start conversation. Please try again.", 500)

    logger.info(
        f"Conversation {conversation.id} {'created' if created else 'retrieved'} for users "
        f"{form.cleaned_data['sender_id']} and {form.cleaned_data['receiver_id']}"
    )
    return JsonResponse(serialize_conversation(conversation), status=201 if created else 200)


@require_GET
def user_conversations(request, user_id):
    """Conversations of a user, most recent activity first"""
    try:
        data = [serialize_conversation(c) for c in list_conversations(user_id)]
    except DatabaseError as e:
        logger.warning(f"Error fetching conversations for user {user_id}: {str(e)}")
        data = []
    return JsonResponse(data, safe=False)


# --- Messages ----------------------------------------------------------------


@csrf_exempt
@require_POST
def send_message(request):
    try:
        form = MessageForm.from_payload(_payload(request))
    except ValidationError as e:
        return _validation_error(e)

    if not form.is_valid():
        return _form_error(form)

    cd = form.cleaned_data
    try:
        message = append_message(cd["conversation_id"], cd["sender_id"], cd["text"])
    except Conversation.DoesNotExist:
        return _error("Conversation not found", 404)
    except ValidationError as e:
        return _validation_error(e)
    except DatabaseError as e:
        logger.error(f"Error sending message: {str(e)}", exc_info=True)
        return _error("Failed to send message. Please try again.", 500)

    return JsonResponse(serialize_message(message), status=201)


@require_GET
def conversation_messages(request, conversation_id):
    """
    Messages of a conversation, oldest first.

    Optional keyset pagination: ?after=<ISO timestamp>&afterId=<id>&limit=<n>
    afterId is only accepted together with after; limit must be at least 1.
    """
    after = request.GET.get("after")
    after_id = request.GET.get("afterId")
    limit = request.GET.get("limit")

    after_timestamp = None
    try:
        if after:
            after_timestamp = parse_datetime(after)
            if after_timestamp is None:
                raise ValueError(after)
        if after_id and after_timestamp is None:
            raise ValueError("afterId requires after")
        after_id = int(after_id) if after_id else None
        if limit is not None:
            limit = int(limit)
            if limit < 1:
                raise ValueError(limit)
            limit = min(limit, MAX_MESSAGE_PAGE)
    except ValueError:
        return _error("Invalid pagination parameters", 400)

    try:
        messages = list_messages(
            conversation_id, after_timestamp=after_timestamp, after_id=after_id, limit=limit
        )
    except Conversation.DoesNotExist:
        return _error("Conversation not found", 404)
    except ValidationError as e:
        return _validation_error(e)
    except DatabaseError as e:
        logger.warning(f"Error fetching messages for conversation {conversation_id}: {str(e)}")
        messages = []

    return JsonResponse([serialize_message(m) for m in messages], safe=False)


# --- Users -------------------------------------------------------------------


@csrf_exempt
@require_POST
def sync_user(request):
    """Create or update the profile of a user who just signed in"""
    try:
        form = UserSyncForm.from_payload(_payload(request))
    except ValidationError as e:
        return _validation_error(e)

    if not form.is_valid():
        return _form_error(form)

    try:
        profile, created = UserProfile.upsert(**form.cleaned_data)
    except DatabaseError as e:
        logger.error(f"Error syncing user: {str(e)}", exc_info=True)
        return _error("Failed to sync user. Please try again.", 500)

    logger.info(f"User {profile.uid} {'created' if created else 'updated'}")
    return JsonResponse(serialize_user(profile), status=201 if created else 200)
