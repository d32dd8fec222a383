"""
Polling sync client for the marketplace chat API.

There is no push channel, so a chat surface stays approximately up to date by
re-fetching on fixed intervals:

- the viewer's conversation list every CONVERSATION_POLL_INTERVAL seconds,
  fetched once eagerly when the surface opens;
- the open conversation's messages every MESSAGE_POLL_INTERVAL seconds.

Fetched state is merged content-aware: an unchanged result keeps the previous
list object, so consumers comparing by identity do not re-render. Sending
clears the draft before the request goes out but never inserts the message
locally; it shows up once the follow-up fetch returns it.
"""

import logging
import threading

import requests

logger = logging.getLogger(__name__)

CONVERSATION_POLL_INTERVAL = 5.0
MESSAGE_POLL_INTERVAL = 3.0
AUTOSCROLL_THRESHOLD = 200
DEFAULT_TIMEOUT = 10


class SyncError(Exception):
    """A write to the marketplace API failed; the user has to resubmit."""


class MarketplaceClient:
    """Thin wrapper around the chat endpoints of the marketplace REST API."""

    def __init__(self, base_url, session=None, timeout=DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path):
        return f"{self.base_url}/api/{path}"

    def _fetch_list(self, path):
        """GET a list resource. Returns None (after logging) when the fetch fails."""
        try:
            response = self.session.get(self._url(path), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Error fetching {path}: {str(e)}")
            return None
        if not isinstance(data, list):
            logger.warning(f"Unexpected payload for {path}: {type(data).__name__}")
            return None
        return data

    def _post(self, path, payload):
        try:
            response = self.session.post(self._url(path), json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise SyncError(f"Request to {path} failed: {str(e)}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = response.text
            raise SyncError(detail or f"{path} returned HTTP {response.status_code}")
        return response.json()

    def conversations(self, user_id):
        return self._fetch_list(f"conversations/{user_id}")

    def messages(self, conversation_id):
        return self._fetch_list(f"messages/{conversation_id}")

    def send_message(self, conversation_id, sender_id, text):
        return self._post(
            "messages",
            {"conversationId": conversation_id, "senderId": sender_id, "text": text},
        )

    def start_conversation(self, sender_id, receiver_id, listing_id="", listing_title="",
                           sender_name="", sender_photo="", receiver_name="", receiver_photo=""):
        return self._post(
            "conversations",
            {
                "senderId": sender_id,
                "senderName": sender_name,
                "senderPhoto": sender_photo,
                "receiverId": receiver_id,
                "receiverName": receiver_name,
                "receiverPhoto": receiver_photo,
                "listingId": listing_id,
                "listingTitle": listing_title,
            },
        )


def should_autoscroll(viewer_id, previous, current, distance_from_bottom,
                      threshold=AUTOSCROLL_THRESHOLD):
    """
    Whether the thread view should jump to the newest message after an update.

    Only appends scroll. The view follows when the viewer sent the newest
    message, or was already within ``threshold`` of the bottom; otherwise a
    user reading history is left where they are.
    """
    if len(current) <= len(previous):
        return False
    if current[-1].get("senderId") == viewer_id:
        return True
    return distance_from_bottom <= threshold


class ThreadState:
    """Messages and draft input of the conversation being viewed."""

    def __init__(self, conversation_id=None):
        self.conversation_id = conversation_id
        self.messages = []
        self.draft = ""

    def merge(self, fetched):
        """
        Adopt a fetched message list. Returns True if the state changed.

        Same length and same content keeps the existing list object.
        """
        if len(fetched) == len(self.messages) and fetched == self.messages:
            return False
        self.messages = fetched
        return True

    def send(self, client, sender_id):
        """
        Send the draft. The draft is cleared before the request is made; the
        message itself is not added to ``messages`` here.
        """
        text = self.draft.strip()
        if not text or self.conversation_id is None:
            return None
        self.draft = ""
        return client.send_message(self.conversation_id, sender_id, text)


class Poller:
    """Call ``callback`` once immediately, then every ``interval`` seconds until stopped."""

    def __init__(self, interval, callback, name="poller"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name=self.name, daemon=True
        )
        self._thread.start()

    def stop(self, timeout=None):
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self, stop_event):
        while not stop_event.is_set():
            try:
                self.callback()
            except Exception as e:
                # A failing tick must not end the polling loop
                logger.error(f"Error in {self.name} tick: {str(e)}", exc_info=True)
            if stop_event.wait(self.interval):
                break


class ChatSync:
    """
    Keeps a user's conversation list and open thread in sync by polling.

    ``on_conversations(conversations)`` and ``on_messages(previous, current)``
    are called from the polling threads whenever the state actually changes.
    """

    def __init__(self, client, user_id, on_conversations=None, on_messages=None,
                 conversation_interval=CONVERSATION_POLL_INTERVAL,
                 message_interval=MESSAGE_POLL_INTERVAL):
        self.client = client
        self.user_id = user_id
        self.on_conversations = on_conversations
        self.on_messages = on_messages
        self.message_interval = message_interval
        self.conversations = []
        self.thread = ThreadState()
        self._lock = threading.Lock()
        self._conversation_poller = Poller(
            conversation_interval, self.refresh_conversations, name="conversation-poller"
        )
        self._message_poller = None

    def start(self):
        self._conversation_poller.start()
        if self.thread.conversation_id is not None:
            self._start_message_poller()

    def stop(self):
        self._conversation_poller.stop()
        self._stop_message_poller()

    def open_conversation(self, conversation_id):
        """Switch the active thread and start polling its messages."""
        self._stop_message_poller()
        with self._lock:
            self.thread = ThreadState(conversation_id)
        self._start_message_poller()

    def refresh_conversations(self):
        fetched = self.client.conversations(self.user_id)
        if fetched is None:
            return False
        with self._lock:
            if fetched == self.conversations:
                return False
            self.conversations = fetched
        if self.on_conversations:
            self.on_conversations(fetched)
        return True

    def refresh_messages(self):
        thread = self.thread
        if thread.conversation_id is None:
            return False
        fetched = self.client.messages(thread.conversation_id)
        if fetched is None:
            return False
        with self._lock:
            if thread is not self.thread:
                # The viewer switched conversations while this fetch was in flight
                return False
            previous = thread.messages
            changed = thread.merge(fetched)
        if changed and self.on_messages:
            self.on_messages(previous, thread.messages)
        return changed

    def send(self, text=None):
        """
        Send ``text`` (or the current draft) to the open conversation, then
        re-fetch the thread so the new message shows up.
        """
        if text is not None:
            self.thread.draft = text
        result = self.thread.send(self.client, self.user_id)
        if result is not None:
            self.refresh_messages()
        return result

    def _start_message_poller(self):
        self._message_poller = Poller(
            self.message_interval, self.refresh_messages, name="message-poller"
        )
        self._message_poller.start()

    def _stop_message_poller(self):
        if self._message_poller is not None:
            self._message_poller.stop()
            self._message_poller = None
