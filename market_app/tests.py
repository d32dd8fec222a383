import json
import shutil
import tempfile
import threading
from datetime import timedelta
from decimal import Decimal
from io import BytesIO, StringIO
from unittest import mock

import requests
from django.core.exceptions import ValidationError
from django.core.files.storage import default_storage
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import call_command
from django.db import DatabaseError, IntegrityError, transaction
from django.test import Client, SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from PIL import Image

from .models import Conversation, Listing, ListingImage, Message, UserProfile
from .sync import (
    ChatSync,
    MarketplaceClient,
    Poller,
    SyncError,
    ThreadState,
    should_autoscroll,
)
from .utils.chat_utils import append_message, list_conversations, list_messages

MEDIA_ROOT = tempfile.mkdtemp(prefix="campus-market-tests-")


def tearDownModule():
    shutil.rmtree(MEDIA_ROOT, ignore_errors=True)


def create_test_image(name="test.png", size=(100, 100), color="red", fmt="PNG"):
    """Helper function to create a test image file"""
    file = BytesIO()
    image = Image.new("RGB", size, color)
    image.save(file, fmt)
    file.seek(0)
    return SimpleUploadedFile(name, file.read(), content_type=f"image/{fmt.lower()}")


def make_listing(title="Desk Lamp", price="25.00", **kwargs):
    defaults = {
        "description": "Barely used",
        "category": Listing.Category.FURNITURE,
        "condition": Listing.Condition.GOOD,
        "seller_id": "seller-1",
        "seller_name": "Sam Seller",
    }
    defaults.update(kwargs)
    return Listing.objects.create(title=title, price=Decimal(price), **defaults)


def post_json(client, url, payload):
    return client.post(url, data=json.dumps(payload), content_type="application/json")


# --- Conversation Registry -----------------------------------------------------


class ConversationRegistryTests(TestCase):
    """Tests for Conversation.find_or_create and the per-user listing"""

    def test_find_or_create_creates_new_conversation(self):
        """First contact creates a conversation with empty summary fields"""
        conversation, created = Conversation.find_or_create(
            "u1", "u2", listing_id="L1", listing_title="Bike",
            sender_name="Uma", sender_photo="uma.png",
            receiver_name="Victor", receiver_photo="victor.png",
        )

        self.assertTrue(created)
        self.assertEqual(conversation.listing_id, "L1")
        self.assertEqual(conversation.listing_title, "Bike")
        self.assertEqual(conversation.last_message_text, "")
        self.assertEqual(conversation.last_message_sender_id, "")
        self.assertIsNone(conversation.last_message_timestamp)
        self.assertCountEqual(conversation.participant_ids, ["u1", "u2"])

    def test_participant_snapshots_follow_their_user(self):
        """Names and photos stay attached to the right uid after sorting the pair"""
        conversation, _ = Conversation.find_or_create(
            "zed", "amy", sender_name="Zed", sender_photo="z.png",
            receiver_name="Amy", receiver_photo="a.png",
        )

        by_uid = {p["uid"]: p for p in conversation.participants}
        self.assertEqual(by_uid["zed"]["displayName"], "Zed")
        self.assertEqual(by_uid["zed"]["photoURL"], "z.png")
        self.assertEqual(by_uid["amy"]["displayName"], "Amy")
        self.assertEqual(by_uid["amy"]["photoURL"], "a.png")

    def test_same_pair_reuses_conversation_and_follows_listing(self):
        """U1 contacting U2 about L1 then L2 keeps one conversation, now about L2"""
        first, created1 = Conversation.find_or_create("U1", "U2", listing_id="L1", listing_title="Lamp")
        second, created2 = Conversation.find_or_create("U1", "U2", listing_id="L2", listing_title="Desk")

        self.assertTrue(created1)
        self.assertFalse(created2)
        self.assertEqual(first.id, second.id)
        self.assertEqual(Conversation.objects.count(), 1)

        first.refresh_from_db()
        self.assertEqual(first.listing_id, "L2")
        self.assertEqual(first.listing_title, "Desk")

    def test_pair_lookup_is_order_independent(self):
        """The receiver starting the conversation finds the same one"""
        first, _ = Conversation.find_or_create("U1", "U2", listing_id="L1")
        second, created = Conversation.find_or_create("U2", "U1", listing_id="L3", listing_title="Chair")

        self.assertFalse(created)
        self.assertEqual(first.id, second.id)
        self.assertEqual(second.listing_id, "L3")

    def test_repeated_calls_track_most_recent_listing(self):
        """Across many calls the stored listing is always the latest one"""
        ids = set()
        for i in range(5):
            conversation, _ = Conversation.find_or_create(
                "U1", "U2", listing_id=f"L{i}", listing_title=f"Item {i}"
            )
            ids.add(conversation.id)
            stored = Conversation.objects.get(pk=conversation.id)
            self.assertEqual(stored.listing_id, f"L{i}")
            self.assertEqual(stored.listing_title, f"Item {i}")
        self.assertEqual(len(ids), 1)

    def test_missing_listing_keeps_existing_context(self):
        """Contact without a listing does not wipe the listing context"""
        Conversation.find_or_create("U1", "U2", listing_id="L1", listing_title="Lamp")
        conversation, _ = Conversation.find_or_create("U1", "U2")

        conversation.refresh_from_db()
        self.assertEqual(conversation.listing_id, "L1")

    def test_cannot_start_conversation_with_self(self):
        with self.assertRaises(ValidationError):
            Conversation.find_or_create("U1", "U1")
        self.assertEqual(Conversation.objects.count(), 0)

    def test_blank_participant_rejected(self):
        with self.assertRaises(ValidationError):
            Conversation.find_or_create("U1", "  ")
        with self.assertRaises(ValidationError):
            Conversation.find_or_create("", "U2")

    def test_unique_pair_constraint(self):
        """The storage layer refuses a second row for the same pair"""
        Conversation.objects.create(participant_low_id="a", participant_high_id="b")
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Conversation.objects.create(participant_low_id="a", participant_high_id="b")

    def test_concurrent_first_contact_reuses_winner(self):
        """Losing the create race returns the row the other request inserted"""
        existing = Conversation.objects.create(
            participant_low_id="U1", participant_high_id="U2", listing_id="L1"
        )

        # Simulate the lookup happening before the other request committed
        with mock.patch("django.db.models.query.QuerySet.first", return_value=None):
            conversation, created = Conversation.find_or_create(
                "U2", "U1", listing_id="L9", listing_title="Lamp"
            )

        self.assertFalse(created)
        self.assertEqual(conversation.id, existing.id)
        self.assertEqual(Conversation.objects.count(), 1)
        existing.refresh_from_db()
        self.assertEqual(existing.listing_id, "L9")

    def test_list_for_user_orders_by_activity(self):
        """Unmessaged conversations rank by creation time among messaged ones"""
        now = timezone.now()
        messaged_recent = Conversation.objects.create(
            participant_low_id="U1", participant_high_id="U2",
            created_at=now - timedelta(hours=5),
            last_message_timestamp=now - timedelta(minutes=1),
        )
        unmessaged = Conversation.objects.create(
            participant_low_id="U1", participant_high_id="U3",
            created_at=now - timedelta(hours=2),
        )
        messaged_old = Conversation.objects.create(
            participant_low_id="U1", participant_high_id="U4",
            created_at=now - timedelta(hours=6),
            last_message_timestamp=now - timedelta(hours=3),
        )
        Conversation.objects.create(participant_low_id="U5", participant_high_id="U6")

        ids = [c.id for c in list_conversations("U1")]

        self.assertEqual(ids, [messaged_recent.id, unmessaged.id, messaged_old.id])
        self.assertEqual(list_messages(unmessaged.id), [])

    def test_list_for_user_matches_either_side_of_pair(self):
        low, _ = Conversation.find_or_create("a", "m")
        high, _ = Conversation.find_or_create("m", "z")

        self.assertCountEqual([c.id for c in list_conversations("m")], [low.id, high.id])
        self.assertEqual([c.id for c in list_conversations("a")], [low.id])
        self.assertEqual(list_conversations("nobody"), [])

    def test_list_for_user_is_idempotent(self):
        for other in ("U2", "U3", "U4"):
            conversation, _ = Conversation.find_or_create("U1", other)
            append_message(conversation.id, "U1", f"hi {other}")

        first = [(c.id, c.last_message_text) for c in list_conversations("U1")]
        second = [(c.id, c.last_message_text) for c in list_conversations("U1")]

        self.assertEqual(first, second)

    def test_apply_message_summary_ignores_older_message(self):
        """A late summary write for an older message cannot roll the summary back"""
        conversation, _ = Conversation.find_or_create("U1", "U2")
        now = timezone.now()

        self.assertTrue(Conversation.apply_message_summary(conversation.id, "newer", "U2", now))
        self.assertFalse(
            Conversation.apply_message_summary(conversation.id, "older", "U1", now - timedelta(seconds=1))
        )

        conversation.refresh_from_db()
        self.assertEqual(conversation.last_message_text, "newer")
        self.assertEqual(conversation.last_message_sender_id, "U2")
        self.assertEqual(conversation.last_message_timestamp, now)


# --- Message Log ---------------------------------------------------------------


class MessageLogTests(TestCase):
    """Tests for appending to and reading the message log"""

    def setUp(self):
        self.conversation, _ = Conversation.find_or_create("U1", "U2", listing_id="L1")

    def test_append_then_list_round_trip(self):
        message = append_message(self.conversation.id, "U1", "hello")

        messages = list_messages(self.conversation.id)
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0].id, message.id)
        self.assertEqual(messages[0].text, "hello")
        self.assertEqual(messages[0].sender_id, "U1")

    def test_append_updates_summary_to_last_message(self):
        last = None
        for i, sender in enumerate(["U1", "U2", "U1", "U2"]):
            last = append_message(self.conversation.id, sender, f"message {i}")

        self.conversation.refresh_from_db()
        self.assertEqual(self.conversation.last_message_text, last.text)
        self.assertEqual(self.conversation.last_message_sender_id, last.sender_id)
        self.assertEqual(self.conversation.last_message_timestamp, last.timestamp)

    def test_messages_listed_in_non_decreasing_timestamp_order(self):
        for i in range(6):
            append_message(self.conversation.id, "U1" if i % 2 else "U2", f"m{i}")

        messages = list_messages(self.conversation.id)
        timestamps = [m.timestamp for m in messages]
        self.assertEqual(timestamps, sorted(timestamps))
        self.assertEqual([m.text for m in messages], [f"m{i}" for i in range(6)])

    def test_equal_timestamps_keep_insertion_order(self):
        moment = timezone.now()
        first = Message.objects.create(conversation=self.conversation, sender_id="U1", text="a", timestamp=moment)
        second = Message.objects.create(conversation=self.conversation, sender_id="U2", text="b", timestamp=moment)
        earlier = Message.objects.create(
            conversation=self.conversation, sender_id="U1", text="c", timestamp=moment - timedelta(seconds=5)
        )

        ids = [m.id for m in list_messages(self.conversation.id)]
        self.assertEqual(ids, [earlier.id, first.id, second.id])

    def test_text_is_trimmed(self):
        message = append_message(self.conversation.id, "U1", "  hi there \n")
        self.assertEqual(message.text, "hi there")

    def test_empty_or_whitespace_text_rejected(self):
        append_message(self.conversation.id, "U2", "first")
        self.conversation.refresh_from_db()
        summary = (
            self.conversation.last_message_text,
            self.conversation.last_message_sender_id,
            self.conversation.last_message_timestamp,
        )

        for text in ["", "   ", "\n\t", None]:
            with self.assertRaises(ValidationError):
                append_message(self.conversation.id, "U1", text)

        self.assertEqual(Message.objects.count(), 1)
        self.conversation.refresh_from_db()
        self.assertEqual(
            (
                self.conversation.last_message_text,
                self.conversation.last_message_sender_id,
                self.conversation.last_message_timestamp,
            ),
            summary,
        )

    def test_unknown_conversation_is_not_found(self):
        with self.assertRaises(Conversation.DoesNotExist):
            append_message(99999, "U1", "hello")
        with self.assertRaises(Conversation.DoesNotExist):
            append_message("not-an-id", "U1", "hello")
        with self.assertRaises(Conversation.DoesNotExist):
            list_messages(99999)

    def test_non_participant_cannot_send(self):
        with self.assertRaises(ValidationError):
            append_message(self.conversation.id, "U3", "let me in")
        self.assertEqual(Message.objects.count(), 0)

    def test_timestamp_is_assigned_by_server(self):
        before = timezone.now()
        message = append_message(self.conversation.id, "U1", "hello")
        after = timezone.now()

        self.assertTrue(before <= message.timestamp <= after)

    def test_summary_failure_does_not_lose_message(self):
        """The message stays sent when the summary update fails"""
        with mock.patch.object(
            Conversation, "apply_message_summary", side_effect=DatabaseError("write failed")
        ):
            with self.assertLogs("market_app.utils.chat_utils", level="WARNING"):
                message = append_message(self.conversation.id, "U1", "still sent")

        self.assertTrue(Message.objects.filter(pk=message.pk).exists())
        self.conversation.refresh_from_db()
        self.assertEqual(self.conversation.last_message_text, "")
        self.assertIsNone(self.conversation.last_message_timestamp)

    def test_messages_are_immutable(self):
        message = append_message(self.conversation.id, "U1", "original")
        message.text = "edited"

        with self.assertRaises(ValueError):
            message.save()

        message.refresh_from_db()
        self.assertEqual(message.text, "original")

    def test_keyset_pagination(self):
        messages = [append_message(self.conversation.id, "U1", f"m{i}") for i in range(5)]
        cursor = messages[1]

        page = list_messages(
            self.conversation.id, after_timestamp=cursor.timestamp, after_id=cursor.id, limit=2
        )

        self.assertEqual([m.id for m in page], [messages[2].id, messages[3].id])

    def test_pagination_arguments_validated(self):
        message = append_message(self.conversation.id, "U1", "hello")

        for limit in [0, -1]:
            with self.assertRaises(ValidationError):
                list_messages(self.conversation.id, limit=limit)
        with self.assertRaises(ValidationError):
            list_messages(self.conversation.id, after_id=message.id)


# --- Chat API ------------------------------------------------------------------


class ConversationApiTests(TestCase):
    """Tests for /api/conversations"""

    def setUp(self):
        self.client = Client()
        self.url = reverse("market_app:start_conversation")

    def payload(self, **overrides):
        data = {
            "senderId": "U1",
            "senderName": "Uma",
            "senderPhoto": "https://example.com/uma.png",
            "receiverId": "U2",
            "receiverName": "Victor",
            "receiverPhoto": "https://example.com/victor.png",
            "listingId": "L1",
            "listingTitle": "Mountain bike",
        }
        data.update(overrides)
        return data

    def test_start_conversation_creates_new(self):
        response = post_json(self.client, self.url, self.payload())

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["listingId"], "L1")
        self.assertEqual(data["listingTitle"], "Mountain bike")
        self.assertEqual(data["lastMessageText"], "")
        self.assertIsNone(data["lastMessageTimestamp"])
        self.assertCountEqual(data["participantIds"], ["U1", "U2"])
        self.assertEqual(Conversation.objects.count(), 1)

    def test_start_conversation_reuses_existing(self):
        first = post_json(self.client, self.url, self.payload()).json()
        response = post_json(
            self.client, self.url, self.payload(listingId="L2", listingTitle="Textbook")
        )

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["id"], first["id"])
        self.assertEqual(data["listingId"], "L2")
        self.assertEqual(data["listingTitle"], "Textbook")
        self.assertEqual(Conversation.objects.count(), 1)

    def test_start_conversation_accepts_form_encoded_body(self):
        response = self.client.post(self.url, self.payload())
        self.assertEqual(response.status_code, 201)

    def test_cannot_start_conversation_with_self(self):
        response = post_json(self.client, self.url, self.payload(receiverId="U1"))

        self.assertEqual(response.status_code, 400)
        self.assertIn("yourself", response.json()["message"])
        self.assertEqual(Conversation.objects.count(), 0)

    def test_missing_receiver_rejected(self):
        payload = self.payload()
        del payload["receiverId"]

        response = post_json(self.client, self.url, payload)

        self.assertEqual(response.status_code, 400)
        self.assertIn("receiver_id", response.json()["errors"])

    def test_invalid_json_rejected(self):
        response = self.client.post(self.url, data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_get_requires_user_path(self):
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, 405)

    def test_user_conversations_sorted_by_last_message(self):
        older, _ = Conversation.find_or_create("U1", "U2")
        newer, _ = Conversation.find_or_create("U1", "U3")
        append_message(older.id, "U2", "first")
        append_message(newer.id, "U3", "second")

        response = self.client.get(reverse("market_app:user_conversations", args=["U1"]))

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual([c["id"] for c in data], [str(newer.id), str(older.id)])
        self.assertEqual(data[0]["lastMessageText"], "second")
        self.assertEqual(data[0]["lastMessageSenderId"], "U3")

    def test_user_conversations_twice_is_identical(self):
        conversation, _ = Conversation.find_or_create("U1", "U2")
        append_message(conversation.id, "U1", "ping")
        url = reverse("market_app:user_conversations", args=["U1"])

        self.assertEqual(self.client.get(url).json(), self.client.get(url).json())

    def test_user_conversations_unknown_user_is_empty(self):
        response = self.client.get(reverse("market_app:user_conversations", args=["ghost"]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])

    def test_user_conversations_storage_failure_degrades_to_empty(self):
        Conversation.find_or_create("U1", "U2")

        with mock.patch("market_app.views.list_conversations", side_effect=DatabaseError("down")):
            with self.assertLogs("market_app.views", level="WARNING"):
                response = self.client.get(reverse("market_app:user_conversations", args=["U1"]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])


class MessageApiTests(TestCase):
    """Tests for /api/messages"""

    def setUp(self):
        self.client = Client()
        self.conversation, _ = Conversation.find_or_create("U1", "U2", listing_id="L1")
        self.send_url = reverse("market_app:send_message")
        self.list_url = reverse("market_app:conversation_messages", args=[self.conversation.id])

    def send(self, text, sender="U1", conversation_id=None):
        return post_json(
            self.client,
            self.send_url,
            {
                "conversationId": conversation_id or self.conversation.id,
                "senderId": sender,
                "text": text,
            },
        )

    def test_send_message(self):
        response = self.send("Is the bike still available?")

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["text"], "Is the bike still available?")
        self.assertEqual(data["senderId"], "U1")
        self.assertEqual(data["conversationId"], str(self.conversation.id))
        self.assertIsNotNone(data["timestamp"])

        self.conversation.refresh_from_db()
        self.assertEqual(self.conversation.last_message_text, "Is the bike still available?")
        self.assertEqual(self.conversation.last_message_sender_id, "U1")

    def test_client_timestamp_ignored(self):
        response = post_json(
            self.client,
            self.send_url,
            {
                "conversationId": self.conversation.id,
                "senderId": "U1",
                "text": "hello",
                "timestamp": "2001-01-01T00:00:00Z",
            },
        )

        self.assertEqual(response.status_code, 201)
        self.assertFalse(response.json()["timestamp"].startswith("2001"))

    def test_cannot_send_empty_message(self):
        for text in ["", "    "]:
            response = self.send(text)
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["message"], "Message cannot be empty.")

        self.assertEqual(Message.objects.count(), 0)
        self.conversation.refresh_from_db()
        self.assertIsNone(self.conversation.last_message_timestamp)

    def test_send_to_unknown_conversation_returns_404(self):
        response = self.send("hello", conversation_id=99999)
        self.assertEqual(response.status_code, 404)

    def test_non_participant_cannot_send(self):
        response = self.send("hello", sender="U3")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Message.objects.count(), 0)

    def test_send_storage_failure_is_reported(self):
        with mock.patch("market_app.views.append_message", side_effect=DatabaseError("down")):
            with self.assertLogs("market_app.views", level="ERROR"):
                response = self.send("hello")

        self.assertEqual(response.status_code, 500)
        self.assertIn("Failed to send message", response.json()["message"])

    def test_list_messages_oldest_first(self):
        self.send("one", sender="U1")
        self.send("two", sender="U2")
        self.send("three", sender="U1")

        response = self.client.get(self.list_url)

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual([m["text"] for m in data], ["one", "two", "three"])
        self.assertEqual([m["senderId"] for m in data], ["U1", "U2", "U1"])

    def test_list_messages_empty_conversation(self):
        response = self.client.get(self.list_url)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])

    def test_list_messages_unknown_conversation_returns_404(self):
        response = self.client.get(reverse("market_app:conversation_messages", args=[99999]))
        self.assertEqual(response.status_code, 404)

    def test_list_messages_paginates_after_cursor(self):
        sent = [self.send(f"m{i}").json() for i in range(4)]

        response = self.client.get(
            self.list_url,
            {"after": sent[0]["timestamp"], "afterId": sent[0]["id"], "limit": 2},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual([m["text"] for m in response.json()], ["m1", "m2"])

    def test_list_messages_invalid_cursor(self):
        response = self.client.get(self.list_url, {"after": "yesterday"})
        self.assertEqual(response.status_code, 400)

    def test_list_messages_rejects_non_positive_limit(self):
        """A zero or negative limit is a bad request, not a server error"""
        self.send("hello")

        for limit in ["-1", "0", "abc"]:
            response = self.client.get(self.list_url, {"limit": limit})
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["message"], "Invalid pagination parameters")

        response = self.client.get(self.list_url, {"limit": "1"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual([m["text"] for m in response.json()], ["hello"])

    def test_list_messages_after_id_requires_after(self):
        """afterId alone is rejected instead of silently returning the whole log"""
        sent = self.send("hello").json()

        response = self.client.get(self.list_url, {"afterId": sent["id"]})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Invalid pagination parameters")

    def test_list_messages_storage_failure_degrades_to_empty(self):
        self.send("hello")

        with mock.patch("market_app.views.list_messages", side_effect=DatabaseError("down")):
            with self.assertLogs("market_app.views", level="WARNING"):
                response = self.client.get(self.list_url)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])


# --- Listings ------------------------------------------------------------------


@override_settings(MEDIA_ROOT=MEDIA_ROOT)
class CreateListingTests(TestCase):
    """Tests for POST /api/listings"""

    def setUp(self):
        self.client = Client()
        self.url = reverse("market_app:listings")
        self.data = {
            "title": "Calculus textbook",
            "description": "8th edition, some highlighting",
            "price": "35.50",
            "category": "Books",
            "condition": "Used - Good",
            "sellerId": "seller-1",
            "sellerName": "Sam Seller",
            "sellerPhoto": "https://example.com/sam.png",
        }

    def test_create_listing_success(self):
        response = self.client.post(self.url, self.data)

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Listing.objects.count(), 1)

        listing = Listing.objects.first()
        self.assertEqual(listing.title, "Calculus textbook")
        self.assertEqual(listing.price, Decimal("35.50"))
        self.assertEqual(listing.category, Listing.Category.BOOKS)
        self.assertEqual(listing.condition, Listing.Condition.GOOD)
        self.assertEqual(listing.seller_id, "seller-1")
        self.assertEqual(listing.status, Listing.Status.ACTIVE)

        data = response.json()
        self.assertEqual(data["id"], str(listing.id))
        self.assertEqual(data["price"], 35.5)
        self.assertEqual(data["sellerName"], "Sam Seller")
        self.assertEqual(data["images"], [])
        self.assertIsNone(data["primaryImage"])

    def test_listing_expires_after_retention_period(self):
        self.client.post(self.url, self.data)

        listing = Listing.objects.get()
        self.assertAlmostEqual(
            (listing.expires_at - listing.created_at).total_seconds(),
            timedelta(days=30).total_seconds(),
            delta=5,
        )

    def test_create_listing_with_multiple_images(self):
        images = [create_test_image(f"photo{i}.png") for i in range(3)]

        response = self.client.post(self.url, {**self.data, "images": images})

        self.assertEqual(response.status_code, 201)
        listing = Listing.objects.get()
        self.assertEqual(listing.images.count(), 3)
        self.assertEqual([img.order for img in listing.images.all()], [0, 1, 2])
        self.assertEqual(len(response.json()["images"]), 3)
        self.assertTrue(response.json()["images"][0].startswith("http://testserver/media/"))
        self.assertEqual(response.json()["primaryImage"], response.json()["images"][0])

    def test_create_listing_rejects_more_than_five_images(self):
        images = [create_test_image(f"photo{i}.png") for i in range(6)]

        response = self.client.post(self.url, {**self.data, "images": images})

        self.assertEqual(response.status_code, 400)
        self.assertIn("maximum of 5 images", response.json()["message"])
        self.assertEqual(Listing.objects.count(), 0)
        self.assertEqual(ListingImage.objects.count(), 0)

    def test_create_listing_rejects_disallowed_image_format(self):
        image = create_test_image("anim.gif", fmt="GIF")

        response = self.client.post(self.url, {**self.data, "images": image})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Listing.objects.count(), 0)

    def test_create_listing_rejects_non_image_upload(self):
        upload = SimpleUploadedFile("notes.png", b"definitely not a png", content_type="image/png")

        response = self.client.post(self.url, {**self.data, "images": upload})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Listing.objects.count(), 0)

    def test_title_required(self):
        for title in ["", "   "]:
            response = self.client.post(self.url, {**self.data, "title": title})
            self.assertEqual(response.status_code, 400)
            self.assertIn("title", response.json()["errors"])
        self.assertEqual(Listing.objects.count(), 0)

    def test_price_required(self):
        data = dict(self.data)
        del data["price"]

        response = self.client.post(self.url, data)

        self.assertEqual(response.status_code, 400)
        self.assertIn("price", response.json()["errors"])

    def test_negative_price_rejected(self):
        response = self.client.post(self.url, {**self.data, "price": "-1.00"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Listing.objects.count(), 0)

    def test_zero_price_allowed(self):
        response = self.client.post(self.url, {**self.data, "price": "0"})
        self.assertEqual(response.status_code, 201)

    def test_invalid_category_rejected(self):
        response = self.client.post(self.url, {**self.data, "category": "Weapons"})

        self.assertEqual(response.status_code, 400)
        self.assertIn("category", response.json()["errors"])

    def test_invalid_condition_rejected(self):
        response = self.client.post(self.url, {**self.data, "condition": "Broken"})
        self.assertEqual(response.status_code, 400)

    def test_storage_failure_is_reported(self):
        with mock.patch("market_app.forms.ListingForm.save", side_effect=DatabaseError("down")):
            with self.assertLogs("market_app.views", level="ERROR"):
                response = self.client.post(self.url, self.data)

        self.assertEqual(response.status_code, 500)


class ListListingsTests(TestCase):
    """Tests for GET /api/listings"""

    def setUp(self):
        self.client = Client()
        self.url = reverse("market_app:listings")
        now = timezone.now()
        self.mid = make_listing("Bike", "500", category=Listing.Category.SPORTS, created_at=now - timedelta(days=2))
        self.cheap = make_listing("Pen", "100", category=Listing.Category.OTHER, created_at=now - timedelta(days=1))
        self.newest = make_listing("Desk", "300", category=Listing.Category.FURNITURE, created_at=now)

    def titles(self, response):
        return [item["title"] for item in response.json()]

    def test_sort_price_low(self):
        response = self.client.get(self.url, {"sort": "price_low"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["price"] for item in response.json()], [100, 300, 500])

    def test_sort_price_high(self):
        response = self.client.get(self.url, {"sort": "price_high"})
        self.assertEqual([item["price"] for item in response.json()], [500, 300, 100])

    def test_default_sort_is_newest(self):
        self.assertEqual(self.titles(self.client.get(self.url)), ["Desk", "Pen", "Bike"])
        self.assertEqual(
            self.titles(self.client.get(self.url, {"sort": "bogus"})), ["Desk", "Pen", "Bike"]
        )

    def test_filter_by_category(self):
        response = self.client.get(self.url, {"category": "Sports"})
        self.assertEqual(self.titles(response), ["Bike"])

    def test_expired_listings_hidden(self):
        self.cheap.status = Listing.Status.EXPIRED
        self.cheap.save()

        self.assertEqual(self.titles(self.client.get(self.url)), ["Desk", "Bike"])

    def test_storage_failure_degrades_to_empty(self):
        with mock.patch("market_app.views.Listing.active", side_effect=DatabaseError("down")):
            with self.assertLogs("market_app.views", level="WARNING"):
                response = self.client.get(self.url)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])

    def test_requests_are_timed(self):
        with self.assertLogs("market_app.middleware", level="INFO") as logs:
            self.client.get(self.url)

        self.assertTrue(any("/api/listings" in line and "LOAD" in line for line in logs.output))


@override_settings(MEDIA_ROOT=MEDIA_ROOT)
class ListingDetailTests(TestCase):
    """Tests for GET/DELETE /api/listings/:id"""

    def setUp(self):
        self.client = Client()
        self.listing = make_listing("Lamp", "12.00")
        self.url = reverse("market_app:listing_detail", args=[self.listing.id])

    def test_get_listing(self):
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["title"], "Lamp")
        self.assertEqual(response.json()["price"], 12.0)

    def test_get_unknown_listing_returns_404(self):
        for listing_id in ["99999", "abc"]:
            response = self.client.get(reverse("market_app:listing_detail", args=[listing_id]))
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["message"], "Listing not found")

    def test_delete_listing(self):
        response = self.client.delete(self.url)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Deleted successfully")
        self.assertFalse(Listing.objects.filter(pk=self.listing.pk).exists())

    def test_delete_removes_stored_images(self):
        image = ListingImage.objects.create(
            listing=self.listing, image=create_test_image("lamp.png"), order=0
        )
        name = image.image.name
        self.assertTrue(default_storage.exists(name))

        self.client.delete(self.url)

        self.assertEqual(ListingImage.objects.count(), 0)
        self.assertFalse(default_storage.exists(name))

    def test_delete_unknown_listing_returns_404(self):
        response = self.client.delete(reverse("market_app:listing_detail", args=[99999]))
        self.assertEqual(response.status_code, 404)

    def test_primary_image(self):
        self.assertIsNone(self.listing.primary_image)

        ListingImage.objects.create(listing=self.listing, image=create_test_image("b.png"), order=1)
        first = ListingImage.objects.create(listing=self.listing, image=create_test_image("a.png"), order=0)

        self.assertEqual(self.listing.primary_image.name, first.image.name)


class ExpireListingsCommandTests(TestCase):
    """Tests for the expire_listings management command"""

    def setUp(self):
        now = timezone.now()
        self.overdue = make_listing("Old chair", expires_at=now - timedelta(days=1))
        self.fresh = make_listing("New chair", expires_at=now + timedelta(days=10))

    def test_expires_overdue_listings(self):
        out = StringIO()
        call_command("expire_listings", stdout=out)

        self.overdue.refresh_from_db()
        self.fresh.refresh_from_db()
        self.assertEqual(self.overdue.status, Listing.Status.EXPIRED)
        self.assertEqual(self.fresh.status, Listing.Status.ACTIVE)
        self.assertIn("Expired 1 listing(s).", out.getvalue())

    def test_dry_run_changes_nothing(self):
        out = StringIO()
        call_command("expire_listings", "--dry-run", stdout=out)

        self.overdue.refresh_from_db()
        self.assertEqual(self.overdue.status, Listing.Status.ACTIVE)
        self.assertIn("Old chair", out.getvalue())

    def test_nothing_to_expire(self):
        Listing.objects.filter(pk=self.overdue.pk).update(status=Listing.Status.EXPIRED)
        out = StringIO()

        call_command("expire_listings", stdout=out)

        self.assertIn("No overdue listings found.", out.getvalue())


# --- Users ---------------------------------------------------------------------


@override_settings(CAMPUS_EMAIL_DOMAIN="vjcet.org")
class UserSyncTests(TestCase):
    """Tests for POST /api/users"""

    def setUp(self):
        self.client = Client()
        self.url = reverse("market_app:sync_user")
        self.payload = {
            "uid": "firebase-uid-1",
            "email": "Student@vjcet.org",
            "displayName": "Stu Dent",
            "photoURL": "https://example.com/stu.png",
        }

    def test_first_login_creates_profile(self):
        response = post_json(self.client, self.url, self.payload)

        self.assertEqual(response.status_code, 201)
        profile = UserProfile.objects.get(uid="firebase-uid-1")
        self.assertEqual(profile.email, "student@vjcet.org")
        self.assertEqual(profile.display_name, "Stu Dent")
        self.assertEqual(profile.college_domain, "vjcet.org")

    def test_later_login_updates_in_place(self):
        post_json(self.client, self.url, self.payload)
        created_at = UserProfile.objects.get().created_at

        response = post_json(
            self.client, self.url, {**self.payload, "displayName": "Stu D.", "photoURL": "new.png"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(UserProfile.objects.count(), 1)
        profile = UserProfile.objects.get()
        self.assertEqual(profile.display_name, "Stu D.")
        self.assertEqual(profile.photo_url, "new.png")
        self.assertEqual(profile.created_at, created_at)
        self.assertEqual(response.json()["displayName"], "Stu D.")

    def test_requires_institution_email(self):
        response = post_json(self.client, self.url, {**self.payload, "email": "someone@gmail.com"})

        self.assertEqual(response.status_code, 400)
        self.assertIn("vjcet.org", response.json()["message"])
        self.assertFalse(UserProfile.objects.exists())

    def test_uid_required(self):
        payload = dict(self.payload)
        del payload["uid"]

        response = post_json(self.client, self.url, payload)

        self.assertEqual(response.status_code, 400)
        self.assertIn("uid", response.json()["errors"])


# --- Polling sync client -------------------------------------------------------


def msg(message_id, sender="U1", text=None):
    return {"id": str(message_id), "senderId": sender, "text": text or f"m{message_id}"}


class FakeClient:
    """In-memory stand-in for MarketplaceClient"""

    def __init__(self, conversations=None, messages=None):
        self.conversation_list = conversations or []
        self.threads = messages or {}
        self.sent = []
        self.on_send = None
        self.fail_reads = False

    def conversations(self, user_id):
        return None if self.fail_reads else list(self.conversation_list)

    def messages(self, conversation_id):
        return None if self.fail_reads else list(self.threads.get(conversation_id, []))

    def send_message(self, conversation_id, sender_id, text):
        if self.on_send:
            self.on_send()
        message = msg(len(self.threads.get(conversation_id, [])) + 1, sender_id, text)
        self.threads.setdefault(conversation_id, []).append(message)
        self.sent.append((conversation_id, sender_id, text))
        return message


class ThreadStateTests(SimpleTestCase):
    """Tests for the content-aware merge and optimistic send"""

    def test_unchanged_fetch_keeps_reference(self):
        state = ThreadState("c1")
        state.merge([msg(1), msg(2)])
        current = state.messages

        changed = state.merge([msg(1), msg(2)])

        self.assertFalse(changed)
        self.assertIs(state.messages, current)

    def test_appended_message_replaces_state(self):
        state = ThreadState("c1")
        state.merge([msg(1)])

        changed = state.merge([msg(1), msg(2)])

        self.assertTrue(changed)
        self.assertEqual(len(state.messages), 2)

    def test_changed_content_with_same_length_replaces_state(self):
        state = ThreadState("c1")
        state.merge([msg(1, text="old")])

        self.assertTrue(state.merge([msg(1, text="new")]))
        self.assertEqual(state.messages[0]["text"], "new")

    def test_send_clears_draft_before_request(self):
        client = FakeClient()
        state = ThreadState("c1")
        state.draft = "  hello  "
        drafts_seen = []
        client.on_send = lambda: drafts_seen.append(state.draft)

        state.send(client, "U1")

        self.assertEqual(drafts_seen, [""])
        self.assertEqual(client.sent, [("c1", "U1", "hello")])
        # The bubble only appears once a fetch returns it
        self.assertEqual(state.messages, [])

    def test_send_blank_draft_does_nothing(self):
        client = FakeClient()
        state = ThreadState("c1")
        state.draft = "   "

        self.assertIsNone(state.send(client, "U1"))
        self.assertEqual(client.sent, [])

    def test_send_failure_propagates(self):
        client = mock.Mock()
        client.send_message.side_effect = SyncError("Failed to send message")
        state = ThreadState("c1")
        state.draft = "hello"

        with self.assertRaises(SyncError):
            state.send(client, "U1")
        self.assertEqual(state.draft, "")


class AutoscrollTests(SimpleTestCase):
    """Tests for should_autoscroll"""

    def test_scrolls_for_own_message(self):
        self.assertTrue(should_autoscroll("U1", [msg(1, "U2")], [msg(1, "U2"), msg(2, "U1")], 5000))

    def test_scrolls_when_near_bottom(self):
        self.assertTrue(should_autoscroll("U1", [msg(1)], [msg(1), msg(2, "U2")], 150))
        self.assertTrue(should_autoscroll("U1", [msg(1)], [msg(1), msg(2, "U2")], 200))

    def test_does_not_interrupt_reading_history(self):
        self.assertFalse(should_autoscroll("U1", [msg(1)], [msg(1), msg(2, "U2")], 201))

    def test_no_scroll_without_new_message(self):
        self.assertFalse(should_autoscroll("U1", [msg(1)], [msg(1, text="edited")], 0))

    def test_custom_threshold(self):
        self.assertTrue(should_autoscroll("U1", [], [msg(1, "U2")], 300, threshold=400))


class ChatSyncTests(SimpleTestCase):
    """Tests for ChatSync refresh and send behaviour"""

    def setUp(self):
        self.client = FakeClient(
            conversations=[{"id": "c1", "lastMessageText": ""}],
            messages={"c1": [msg(1, "U2")]},
        )
        self.sync = ChatSync(self.client, "U1")
        self.sync.thread = ThreadState("c1")

    def test_refresh_conversations_notifies_on_change_only(self):
        seen = []
        self.sync.on_conversations = seen.append

        self.assertTrue(self.sync.refresh_conversations())
        self.assertFalse(self.sync.refresh_conversations())
        self.assertEqual(len(seen), 1)

    def test_refresh_messages_reports_previous_and_current(self):
        calls = []
        self.sync.on_messages = lambda previous, current: calls.append((previous, current))

        self.sync.refresh_messages()
        self.sync.refresh_messages()

        self.assertEqual(calls, [([], [msg(1, "U2")])])

    def test_failed_fetch_keeps_last_state(self):
        self.sync.refresh_messages()
        self.sync.refresh_conversations()
        messages, conversations = self.sync.thread.messages, self.sync.conversations

        self.client.fail_reads = True

        self.assertFalse(self.sync.refresh_messages())
        self.assertFalse(self.sync.refresh_conversations())
        self.assertIs(self.sync.thread.messages, messages)
        self.assertIs(self.sync.conversations, conversations)

    def test_send_refetches_thread(self):
        self.sync.refresh_messages()

        self.sync.send("deal!")

        self.assertEqual(self.client.sent, [("c1", "U1", "deal!")])
        self.assertEqual([m["text"] for m in self.sync.thread.messages], ["m1", "deal!"])
        self.assertEqual(self.sync.thread.draft, "")

    def test_switching_conversation_discards_in_flight_fetch(self):
        original_messages = self.client.messages

        def switch_then_fetch(conversation_id):
            self.sync.thread = ThreadState("c2")
            return original_messages(conversation_id)

        self.client.messages = switch_then_fetch

        self.assertFalse(self.sync.refresh_messages())
        self.assertEqual(self.sync.thread.messages, [])

    def test_no_open_conversation(self):
        self.sync.thread = ThreadState()
        self.assertFalse(self.sync.refresh_messages())

    def test_start_fetches_eagerly_and_stop_ends_polling(self):
        fetched = threading.Event()
        sync = ChatSync(
            self.client,
            "U1",
            on_conversations=lambda conversations: fetched.set(),
            conversation_interval=60,
            message_interval=60,
        )

        sync.start()
        try:
            self.assertTrue(fetched.wait(2))
        finally:
            sync.stop()

        self.assertFalse(sync._conversation_poller.running)

    def test_open_conversation_polls_messages(self):
        fetched = threading.Event()
        sync = ChatSync(
            self.client,
            "U1",
            on_messages=lambda previous, current: fetched.set(),
            conversation_interval=60,
            message_interval=60,
        )

        sync.open_conversation("c1")
        try:
            self.assertTrue(fetched.wait(2))
            self.assertEqual(sync.thread.conversation_id, "c1")
        finally:
            sync.stop()

        self.assertIsNone(sync._message_poller)


class PollerTests(SimpleTestCase):
    """Tests for the Poller thread"""

    def test_failing_tick_does_not_stop_polling(self):
        calls = []
        done = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            done.set()

        poller = Poller(0.01, tick, name="test-poller")
        with self.assertLogs("market_app.sync", level="ERROR"):
            poller.start()
            try:
                self.assertTrue(done.wait(2))
            finally:
                poller.stop(timeout=2)

        self.assertFalse(poller.running)
        self.assertGreaterEqual(len(calls), 2)

    def test_start_twice_runs_one_thread(self):
        started = threading.Event()
        poller = Poller(60, started.set)

        poller.start()
        thread = poller._thread
        poller.start()
        try:
            self.assertTrue(started.wait(2))
            self.assertIs(poller._thread, thread)
        finally:
            poller.stop(timeout=2)


class MarketplaceClientTests(SimpleTestCase):
    """Tests for the HTTP client, with the requests session mocked out"""

    def setUp(self):
        self.session = mock.Mock()
        self.client = MarketplaceClient("http://market.test/", session=self.session)

    def response(self, status=200, payload=None):
        response = mock.Mock()
        response.status_code = status
        response.json.return_value = payload
        if status >= 400:
            response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
        return response

    def test_fetch_messages(self):
        self.session.get.return_value = self.response(payload=[msg(1)])

        self.assertEqual(self.client.messages("c1"), [msg(1)])
        self.session.get.assert_called_once_with(
            "http://market.test/api/messages/c1", timeout=self.client.timeout
        )

    def test_fetch_failure_returns_none(self):
        self.session.get.side_effect = requests.ConnectionError("offline")

        with self.assertLogs("market_app.sync", level="WARNING"):
            self.assertIsNone(self.client.conversations("U1"))

    def test_fetch_http_error_returns_none(self):
        self.session.get.return_value = self.response(status=404, payload={"message": "Conversation not found"})

        with self.assertLogs("market_app.sync", level="WARNING"):
            self.assertIsNone(self.client.messages("missing"))

    def test_send_message(self):
        self.session.post.return_value = self.response(status=201, payload=msg(7, "U1", "hi"))

        result = self.client.send_message("c1", "U1", "hi")

        self.assertEqual(result["id"], "7")
        self.session.post.assert_called_once_with(
            "http://market.test/api/messages",
            json={"conversationId": "c1", "senderId": "U1", "text": "hi"},
            timeout=self.client.timeout,
        )

    def test_send_rejected_raises_sync_error(self):
        self.session.post.return_value = self.response(
            status=400, payload={"message": "Message cannot be empty."}
        )

        with self.assertRaisesMessage(SyncError, "Message cannot be empty."):
            self.client.send_message("c1", "U1", " ")

    def test_send_transport_failure_raises_sync_error(self):
        self.session.post.side_effect = requests.Timeout("slow")

        with self.assertRaises(SyncError):
            self.client.send_message("c1", "U1", "hi")

    def test_start_conversation_uses_wire_names(self):
        self.session.post.return_value = self.response(status=201, payload={"id": "c1"})

        self.client.start_conversation("U1", "U2", listing_id="L1", listing_title="Bike")

        payload = self.session.post.call_args.kwargs["json"]
        self.assertEqual(payload["senderId"], "U1")
        self.assertEqual(payload["receiverId"], "U2")
        self.assertEqual(payload["listingId"], "L1")
        self.assertEqual(payload["listingTitle"], "Bike")
