from django.core.management.base import BaseCommand

from drivers.services import seed_demo_fleet, DEMO_FLEET


class Command(BaseCommand):
    help = "Create the demo driver fleet (idempotent)."

    def handle(self, *args, **options):
        created = seed_demo_fleet()
        self.stdout.write(
            self.style.SUCCESS(
                f"Seeded {created} new drivers ({len(DEMO_FLEET) - created} already present)."
            )
        )
