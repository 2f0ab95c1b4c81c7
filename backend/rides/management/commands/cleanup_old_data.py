from django.conf import settings
from django.core.management.base import BaseCommand
from django.utils import timezone
from datetime import timedelta
from rides.models import ChatMessage, CallSession, RideRequest
import logging

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Clean up completed/cancelled rides and any leftover chat or call state."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=settings.RIDE_RETENTION_DAYS,
            help="Delete finished rides older than this many days (default: RIDE_RETENTION_DAYS).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be deleted without actually deleting.",
        )

    def handle(self, *args, **options):
        days = options["days"]
        dry_run = options["dry_run"]
        cutoff = timezone.now() - timedelta(days=days)

        # Chat and call rows must not outlive an active ride
        stale_messages = ChatMessage.objects.filter(ride__status__in=RideRequest.TERMINAL_STATUSES)
        stale_calls = CallSession.objects.filter(ride__status__in=RideRequest.TERMINAL_STATUSES)
        messages_count = stale_messages.count()
        calls_count = stale_calls.count()

        # Clean up old completed/cancelled rides
        old_rides = RideRequest.objects.filter(
            created_at__lt=cutoff,
            status__in=RideRequest.TERMINAL_STATUSES,
        )
        rides_count = old_rides.count()

        if dry_run:
            self.stdout.write(
                self.style.WARNING(
                    f"DRY RUN: Would delete {rides_count} rides older than {days} days, "
                    f"{messages_count} stale chat messages and {calls_count} stale calls."
                )
            )
        else:
            stale_messages.delete()
            stale_calls.delete()
            old_rides.delete()
            logger.info(f"Cleaned up {rides_count} old rides, {messages_count} messages, {calls_count} calls")
            self.stdout.write(
                self.style.SUCCESS(
                    f"Deleted {rides_count} old rides older than {days} days, "
                    f"{messages_count} stale chat messages and {calls_count} stale calls."
                )
            )
