from django import forms
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import FileExtensionValidator
from django.db import transaction

from .models import Listing, ListingImage


class WirePayloadMixin:
    """
    Build a form from an API payload whose keys use the client's camelCase
    names (``sellerId``) instead of the form's field names (``seller_id``).
    """

    wire_fields = {}

    @classmethod
    def from_payload(cls, payload, **kwargs):
        data = {}
        for wire_name, field_name in cls.wire_fields.items():
            value = payload.get(wire_name)
            if value is not None:
                data[field_name] = value
        return cls(data=data, **kwargs)


class UserSyncForm(WirePayloadMixin, forms.Form):
    wire_fields = {
        "uid": "uid",
        "email": "email",
        "displayName": "display_name",
        "photoURL": "photo_url",
        "collegeDomain": "college_domain",
    }

    uid = forms.CharField(max_length=128)
    email = forms.EmailField(max_length=254)
    display_name = forms.CharField(max_length=150, required=False)
    photo_url = forms.CharField(max_length=500, required=False)
    college_domain = forms.CharField(max_length=100, required=False)

    def clean_email(self):
        email = self.cleaned_data["email"].strip().lower()
        domain = settings.CAMPUS_EMAIL_DOMAIN
        if not email.endswith(f"@{domain}"):
            raise ValidationError(f"Only @{domain} emails are allowed.")
        return email


class ListingForm(WirePayloadMixin, forms.ModelForm):
    wire_fields = {
        "title": "title",
        "description": "description",
        "price": "price",
        "category": "category",
        "condition": "condition",
        "sellerId": "seller_id",
        "sellerName": "seller_name",
        "sellerPhoto": "seller_photo",
    }

    class Meta:
        model = Listing
        fields = [
            "title",
            "description",
            "price",
            "category",
            "condition",
            "seller_id",
            "seller_name",
            "seller_photo",
        ]

    def __init__(self, *args, images=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.images = list(images or [])

    def clean_title(self):
        title = self.cleaned_data["title"].strip()
        if not title:
            raise ValidationError("Title is required.")
        return title

    def clean(self):
        cleaned_data = super().clean()

        max_images = settings.MAX_LISTING_IMAGES
        if len(self.images) > max_images:
            self.add_error(None, f"You can upload a maximum of {max_images} images.")
            return cleaned_data

        image_field = forms.ImageField(
            validators=[FileExtensionValidator(settings.ALLOWED_IMAGE_EXTENSIONS)]
        )
        for upload in self.images:
            try:
                image_field.clean(upload)
            except ValidationError as e:
                for message in e.messages:
                    self.add_error(None, f"{upload.name}: {message}")
        return cleaned_data

    def save(self, commit=True):
        listing = super().save(commit=False)
        listing.college_domain = settings.CAMPUS_EMAIL_DOMAIN
        listing.status = Listing.Status.ACTIVE
        if commit:
            with transaction.atomic():
                listing.save()
                for order, upload in enumerate(self.images):
                    ListingImage.objects.create(listing=listing, image=upload, order=order)
        return listing


class ConversationForm(WirePayloadMixin, forms.Form):
    wire_fields = {
        "senderId": "sender_id",
        "senderName": "sender_name",
        "senderPhoto": "sender_photo",
        "receiverId": "receiver_id",
        "receiverName": "receiver_name",
        "receiverPhoto": "receiver_photo",
        "listingId": "listing_id",
        "listingTitle": "listing_title",
    }

    sender_id = forms.CharField(max_length=128)
    sender_name = forms.CharField(max_length=150, required=False)
    sender_photo = forms.CharField(max_length=500, required=False)
    receiver_id = forms.CharField(max_length=128)
    receiver_name = forms.CharField(max_length=150, required=False)
    receiver_photo = forms.CharField(max_length=500, required=False)
    listing_id = forms.CharField(max_length=64, required=False)
    listing_title = forms.CharField(max_length=200, required=False)

    def clean(self):
        cd = super().clean()
        if cd.get("sender_id") and cd.get("sender_id") == cd.get("receiver_id"):
            self.add_error("receiver_id", "You cannot start a conversation with yourself.")
        return cd


class MessageForm(WirePayloadMixin, forms.Form):
    wire_fields = {
        "conversationId": "conversation_id",
        "senderId": "sender_id",
        "text": "text",
    }

    conversation_id = forms.CharField(max_length=64)
    sender_id = forms.CharField(max_length=128)
    text = forms.CharField(error_messages={"required": "Message cannot be empty."})
