from django.core.management.base import BaseCommand
from django.utils import timezone

from market_app.models import Listing


class Command(BaseCommand):
    help = (
        "Mark active listings whose retention period has passed as expired. "
        "Run periodically (e.g., daily at midnight via cron)."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List listings that would be expired without changing them.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=500,
            help="Max listings to expire in one run (default: 500).",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        ids = list(
            Listing.overdue(now)
            .order_by("expires_at")
            .values_list("id", flat=True)[: options["limit"]]
        )

        count = len(ids)
        if count == 0:
            self.stdout.write(self.style.SUCCESS("No overdue listings found."))
            return

        self.stdout.write(f"Found {count} overdue listing(s).")
        for listing in Listing.objects.filter(id__in=ids).order_by("expires_at"):
            self.stdout.write(
                f"- {listing.title} (seller: {listing.seller_id}, expired: {listing.expires_at}, id={listing.id})"
            )

        if options["dry_run"]:
            self.stdout.write(self.style.WARNING("Dry run enabled; no listings expired."))
            return

        # Re-check status so a listing touched since the read is not flipped twice
        expired = Listing.objects.filter(
            id__in=ids, status=Listing.Status.ACTIVE
        ).update(status=Listing.Status.EXPIRED)

        self.stdout.write(self.style.SUCCESS(f"Expired {expired} listing(s)."))
