from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

import market_app.models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="UserProfile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("uid", models.CharField(max_length=128, unique=True)),
                ("email", models.EmailField(max_length=254)),
                ("display_name", models.CharField(blank=True, max_length=150)),
                ("photo_url", models.CharField(blank=True, max_length=500)),
                ("college_domain", models.CharField(blank=True, max_length=100)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="Listing",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=120)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "price",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=10,
                        validators=[django.core.validators.MinValueValidator(Decimal("0.00"))],
                    ),
                ),
                (
                    "category",
                    models.CharField(
                        choices=[
                            ("Electronics", "Electronics"),
                            ("Books", "Books"),
                            ("Furniture", "Furniture"),
                            ("Clothing", "Clothing"),
                            ("Sports", "Sports"),
                            ("Other", "Other"),
                        ],
                        default="Other",
                        max_length=20,
                    ),
                ),
                (
                    "condition",
                    models.CharField(
                        choices=[
                            ("New", "New"),
                            ("Used - Like New", "Used - Like New"),
                            ("Used - Good", "Used - Good"),
                            ("Used - Fair", "Used - Fair"),
                        ],
                        default="Used - Good",
                        max_length=20,
                    ),
                ),
                ("seller_id", models.CharField(db_index=True, max_length=128)),
                ("seller_name", models.CharField(blank=True, max_length=150)),
                ("seller_photo", models.CharField(blank=True, max_length=500)),
                ("college_domain", models.CharField(blank=True, max_length=100)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("expired", "Expired")],
                        db_index=True,
                        default="active",
                        max_length=10,
                    ),
                ),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("expires_at", models.DateTimeField(default=market_app.models.default_listing_expiry)),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["status", "category"], name="listing_status_category_idx"),
                    models.Index(fields=["status", "expires_at"], name="listing_status_expires_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ListingImage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("image", models.ImageField(upload_to="uploads/listings/")),
                ("order", models.IntegerField(default=0, help_text="Order of image display (0 = primary)")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "listing",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="images",
                        to="market_app.listing",
                    ),
                ),
            ],
            options={
                "verbose_name": "Listing Image",
                "verbose_name_plural": "Listing Images",
                "ordering": ["order", "created_at"],
            },
        ),
        migrations.CreateModel(
            name="Conversation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("participant_low_id", models.CharField(max_length=128)),
                ("participant_low_name", models.CharField(blank=True, max_length=150)),
                ("participant_low_photo", models.CharField(blank=True, max_length=500)),
                ("participant_high_id", models.CharField(db_index=True, max_length=128)),
                ("participant_high_name", models.CharField(blank=True, max_length=150)),
                ("participant_high_photo", models.CharField(blank=True, max_length=500)),
                ("listing_id", models.CharField(blank=True, max_length=64)),
                ("listing_title", models.CharField(blank=True, max_length=200)),
                ("last_message_text", models.TextField(blank=True, default="")),
                ("last_message_sender_id", models.CharField(blank=True, max_length=128)),
                ("last_message_timestamp", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(
                        fields=("participant_low_id", "participant_high_id"),
                        name="unique_conversation_pair",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Message",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("sender_id", models.CharField(max_length=128)),
                ("text", models.TextField()),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "conversation",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="messages",
                        to="market_app.conversation",
                    ),
                ),
            ],
            options={
                "ordering": ["timestamp", "id"],
                "indexes": [
                    models.Index(
                        fields=["conversation", "timestamp", "id"],
                        name="message_conv_timestamp_idx",
                    )
                ],
            },
        ),
    ]
