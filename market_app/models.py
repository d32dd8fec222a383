from datetime import timedelta
from decimal import Decimal
import logging

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import IntegrityError, models, transaction
from django.db.models import Q
from django.db.models.functions import Coalesce
from django.utils import timezone

logger = logging.getLogger(__name__)


class UserProfile(models.Model):
    """Profile of a user as reported by the campus identity provider."""

    # Stable id from the identity provider
    uid = models.CharField(max_length=128, unique=True)

    email = models.EmailField(max_length=254)
    display_name = models.CharField(max_length=150, blank=True)
    photo_url = models.CharField(max_length=500, blank=True)
    college_domain = models.CharField(max_length=100, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.email} Profile"

    @classmethod
    def upsert(cls, uid, email, display_name="", photo_url="", college_domain=""):
        """
        Create the profile on first login, update it in place afterwards.
        Returns (profile, created).
        """
        with transaction.atomic():
            profile, created = cls.objects.update_or_create(
                uid=uid,
                defaults={
                    "email": email,
                    "display_name": display_name or "",
                    "photo_url": photo_url or "",
                    "college_domain": college_domain or settings.CAMPUS_EMAIL_DOMAIN,
                },
            )
        return profile, created


def default_listing_expiry():
    return timezone.now() + timedelta(days=settings.LISTING_RETENTION_DAYS)


class Listing(models.Model):
    class Category(models.TextChoices):
        ELECTRONICS = "Electronics", "Electronics"
        BOOKS = "Books", "Books"
        FURNITURE = "Furniture", "Furniture"
        CLOTHING = "Clothing", "Clothing"
        SPORTS = "Sports", "Sports"
        OTHER = "Other", "Other"

    class Condition(models.TextChoices):
        NEW = "New", "New"
        LIKE_NEW = "Used - Like New", "Used - Like New"
        GOOD = "Used - Good", "Used - Good"
        FAIR = "Used - Fair", "Used - Fair"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        EXPIRED = "expired", "Expired"

    SORT_ORDERINGS = {
        "newest": ("-created_at", "-id"),
        "price_low": ("price", "-created_at", "-id"),
        "price_high": ("-price", "-created_at", "-id"),
    }

    title = models.CharField(max_length=120)
    description = models.TextField(blank=True, default="")
    price = models.DecimalField(
        default=Decimal("0.00"),
        decimal_places=2,
        max_digits=10,
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    category = models.CharField(
        max_length=20, choices=Category.choices, default=Category.OTHER
    )
    condition = models.CharField(
        max_length=20, choices=Condition.choices, default=Condition.GOOD
    )

    # Seller snapshot taken when the listing is posted
    seller_id = models.CharField(max_length=128, db_index=True)
    seller_name = models.CharField(max_length=150, blank=True)
    seller_photo = models.CharField(max_length=500, blank=True)

    college_domain = models.CharField(max_length=100, blank=True)
    status = models.CharField(
        max_length=10, choices=Status.choices, default=Status.ACTIVE, db_index=True
    )
    created_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(default=default_listing_expiry)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status", "category"], name="listing_status_category_idx"),
            models.Index(fields=["status", "expires_at"], name="listing_status_expires_idx"),
        ]

    def __str__(self):
        return self.title

    @property
    def primary_image(self):
        """First image by display order, or None"""
        first_image = self.images.first()
        return first_image.image if first_image else None

    @classmethod
    def active(cls, category=None, sort="newest"):
        """Active listings, optionally narrowed to a category, in the requested order."""
        qs = cls.objects.filter(status=cls.Status.ACTIVE)
        if category:
            qs = qs.filter(category=category)
        ordering = cls.SORT_ORDERINGS.get(sort, cls.SORT_ORDERINGS["newest"])
        return qs.order_by(*ordering)

    @classmethod
    def overdue(cls, now=None):
        now = now or timezone.now()
        return cls.objects.filter(status=cls.Status.ACTIVE, expires_at__lt=now)


class ListingImage(models.Model):
    """Ordered photos of a listing (order 0 is the primary image)"""

    listing = models.ForeignKey(Listing, on_delete=models.CASCADE, related_name="images")
    image = models.ImageField(upload_to="uploads/listings/")
    order = models.IntegerField(default=0, help_text="Order of image display (0 = primary)")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["order", "created_at"]
        verbose_name = "Listing Image"
        verbose_name_plural = "Listing Images"

    def __str__(self):
        return f"Image {self.order} for {self.listing.title}"


class Conversation(models.Model):
    """
    A chat thread between exactly two users.

    The pair is stored sorted (low, high) under a unique constraint, so there is
    at most one conversation per unordered pair no matter how many listings the
    two users talk about. The listing context follows the latest contact.
    """

    participant_low_id = models.CharField(max_length=128)
    participant_low_name = models.CharField(max_length=150, blank=True)
    participant_low_photo = models.CharField(max_length=500, blank=True)
    participant_high_id = models.CharField(max_length=128, db_index=True)
    participant_high_name = models.CharField(max_length=150, blank=True)
    participant_high_photo = models.CharField(max_length=500, blank=True)

    listing_id = models.CharField(max_length=64, blank=True)
    listing_title = models.CharField(max_length=200, blank=True)

    # Summary of the most recent message
    last_message_text = models.TextField(blank=True, default="")
    last_message_sender_id = models.CharField(max_length=128, blank=True)
    last_message_timestamp = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["participant_low_id", "participant_high_id"],
                name="unique_conversation_pair",
            ),
        ]

    def __str__(self):
        return f"Conversation between {self.participant_low_id} and {self.participant_high_id}"

    @staticmethod
    def pair_key(user_a, user_b):
        return tuple(sorted((user_a, user_b)))

    @property
    def participant_ids(self):
        return [self.participant_low_id, self.participant_high_id]

    @property
    def participants(self):
        return [
            {
                "uid": self.participant_low_id,
                "displayName": self.participant_low_name,
                "photoURL": self.participant_low_photo,
            },
            {
                "uid": self.participant_high_id,
                "displayName": self.participant_high_name,
                "photoURL": self.participant_high_photo,
            },
        ]

    def has_participant(self, user_id):
        return user_id in self.participant_ids

    @classmethod
    def for_user(cls, user_id):
        """Conversations of user_id, most recently active first."""
        return (
            cls.objects.filter(
                Q(participant_low_id=user_id) | Q(participant_high_id=user_id)
            )
            .annotate(activity_at=Coalesce("last_message_timestamp", "created_at"))
            .order_by("-activity_at", "-id")
        )

    @classmethod
    def find_or_create(
        cls,
        sender_id,
        receiver_id,
        listing_id="",
        listing_title="",
        sender_name="",
        sender_photo="",
        receiver_name="",
        receiver_photo="",
    ):
        """
        Get the conversation between two users, creating it on first contact.

        An existing conversation is moved to the requested listing when the
        request carries one. Returns (conversation, created).
        """
        sender_id = (sender_id or "").strip()
        receiver_id = (receiver_id or "").strip()
        if not sender_id or not receiver_id:
            raise ValidationError("Both senderId and receiverId are required.")
        if sender_id == receiver_id:
            raise ValidationError("You cannot start a conversation with yourself.")

        listing_id = str(listing_id or "")
        listing_title = listing_title or ""
        low_id, high_id = cls.pair_key(sender_id, receiver_id)

        conversation = cls.objects.filter(
            participant_low_id=low_id, participant_high_id=high_id
        ).first()
        if conversation is None:
            snapshots = {
                sender_id: (sender_name or "", sender_photo or ""),
                receiver_id: (receiver_name or "", receiver_photo or ""),
            }
            try:
                with transaction.atomic():
                    conversation = cls.objects.create(
                        participant_low_id=low_id,
                        participant_low_name=snapshots[low_id][0],
                        participant_low_photo=snapshots[low_id][1],
                        participant_high_id=high_id,
                        participant_high_name=snapshots[high_id][0],
                        participant_high_photo=snapshots[high_id][1],
                        listing_id=listing_id,
                        listing_title=listing_title,
                    )
                return conversation, True
            except IntegrityError:
                # Lost a first-contact race; the other request's row is the conversation
                logger.info(
                    f"Conversation for users {low_id} and {high_id} was created concurrently, reusing it"
                )
                conversation = cls.objects.get(
                    participant_low_id=low_id, participant_high_id=high_id
                )

        if listing_id and (
            conversation.listing_id != listing_id
            or conversation.listing_title != listing_title
        ):
            cls.objects.filter(pk=conversation.pk).update(
                listing_id=listing_id,
                listing_title=listing_title,
                updated_at=timezone.now(),
            )
            conversation.listing_id = listing_id
            conversation.listing_title = listing_title

        return conversation, False

    @classmethod
    def apply_message_summary(cls, conversation_id, text, sender_id, timestamp):
        """
        Point the summary fields at a newly appended message.

        The update only lands if it is not older than the stored summary, so a
        late write from a concurrent append cannot roll the summary back.
        Returns True when the summary changed.
        """
        updated = (
            cls.objects.filter(pk=conversation_id)
            .filter(
                Q(last_message_timestamp__isnull=True)
                | Q(last_message_timestamp__lte=timestamp)
            )
            .update(
                last_message_text=text,
                last_message_sender_id=sender_id,
                last_message_timestamp=timestamp,
                updated_at=timezone.now(),
            )
        )
        return updated > 0


class Message(models.Model):
    """An immutable chat message; the log is append-only."""

    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name="messages"
    )
    sender_id = models.CharField(max_length=128)
    text = models.TextField()
    # Assigned by the server; clients never supply it
    timestamp = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["timestamp", "id"]
        indexes = [
            models.Index(fields=["conversation", "timestamp", "id"], name="message_conv_timestamp_idx"),
        ]

    def __str__(self):
        return f"Message from {self.sender_id} in conversation {self.conversation_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Messages are immutable once created.")
        super().save(*args, **kwargs)
