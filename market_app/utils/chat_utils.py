# utils/chat_utils.py
from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models import Q
from django.utils import timezone
from ..models import Conversation, Message
import logging

logger = logging.getLogger(__name__)


def get_conversation(conversation_id):
    """
    Fetch a conversation by id. Malformed ids are treated like unknown ones
    and raise Conversation.DoesNotExist.
    """
    try:
        return Conversation.objects.get(pk=int(conversation_id))
    except (TypeError, ValueError):
        raise Conversation.DoesNotExist(f"Conversation {conversation_id!r} not found") from None


def append_message(conversation_id, sender_id, text):
    """
    Append a message to a conversation and refresh the conversation summary.

    The summary update runs in its own savepoint: if it fails the message is
    still committed and the summary catches up on the next message.
    """
    text = (text or "").strip()
    sender_id = (sender_id or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty.")
    if not sender_id:
        raise ValidationError("senderId is required.")

    conversation = get_conversation(conversation_id)
    if not conversation.has_participant(sender_id):
        raise ValidationError("Sender is not a participant in this conversation.")

    with transaction.atomic():
        message = Message.objects.create(
            conversation=conversation,
            sender_id=sender_id,
            text=text,
            timestamp=timezone.now(),
        )
        try:
            with transaction.atomic():
                Conversation.apply_message_summary(
                    conversation.pk, message.text, message.sender_id, message.timestamp
                )
        except DatabaseError as e:
            logger.warning(
                f"Message {message.id} sent but summary of conversation {conversation.pk} was not updated: {str(e)}"
            )

    logger.info(f"Message {message.id} appended to conversation {conversation.pk}")
    return message


def list_messages(conversation_id, after_timestamp=None, after_id=None, limit=None):
    """
    Messages of a conversation, oldest first.

    (after_timestamp, after_id) is a keyset cursor: only messages strictly after
    that position are returned; after_id needs after_timestamp. Without a
    cursor or limit the whole log is returned.
    """
    if limit is not None and limit < 1:
        raise ValidationError("limit must be at least 1.")
    if after_id is not None and after_timestamp is None:
        raise ValidationError("after_id requires after_timestamp.")

    conversation = get_conversation(conversation_id)
    qs = conversation.messages.order_by("timestamp", "id")
    if after_timestamp is not None:
        if after_id is None:
            qs = qs.filter(timestamp__gt=after_timestamp)
        else:
            qs = qs.filter(
                Q(timestamp__gt=after_timestamp)
                | Q(timestamp=after_timestamp, id__gt=after_id)
            )
    if limit is not None:
        qs = qs[:limit]
    return list(qs)


def list_conversations(user_id):
    """Conversations of a user, most recent activity first"""
    return list(Conversation.for_user(user_id))
