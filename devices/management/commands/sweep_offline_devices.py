import logging
import time

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db import DatabaseError, close_old_connections

from devices.liveness import sweep_offline_devices

logger = logging.getLogger("devices.liveness")


class Command(BaseCommand):
    help = "Mark online devices as offline once they have been silent longer than the threshold."

    def add_arguments(self, parser):
        parser.add_argument(
            "--threshold",
            type=int,
            default=None,
            help="Silence threshold in seconds (default: DEVICE_OFFLINE_THRESHOLD_SECONDS).",
        )
        parser.add_argument(
            "--interval",
            type=int,
            default=None,
            help="Seconds between sweeps when looping (default: LIVENESS_SWEEP_INTERVAL_SECONDS).",
        )
        parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
        parser.add_argument(
            "--max-ticks",
            type=int,
            default=None,
            help="Stop after this many sweeps (default: run until interrupted).",
        )

    def handle(self, *args, **options):
        threshold = options.get("threshold") or settings.DEVICE_OFFLINE_THRESHOLD_SECONDS
        interval = max(options.get("interval") or settings.LIVENESS_SWEEP_INTERVAL_SECONDS, 1)

        if options["once"]:
            count = sweep_offline_devices(threshold)
            self.stdout.write(self.style.SUCCESS(f"Marked {count} device(s) offline."))
            return

        max_ticks = options.get("max_ticks")
        ticks = 0
        self.stdout.write(f"Sweeping every {interval}s with a {threshold}s silence threshold.")
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            close_old_connections()
            try:
                count = sweep_offline_devices(threshold)
            except DatabaseError:
                # The next tick still catches every stale device.
                logger.exception("liveness_sweep_failed")
            else:
                if count:
                    self.stdout.write(f"Marked {count} device(s) offline.")
            if max_ticks is None or ticks < max_ticks:
                time.sleep(interval)
