import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from devices.models import Device

logger = logging.getLogger("devices.liveness")


def offline_threshold(seconds=None):
    if seconds is None:
        seconds = settings.DEVICE_OFFLINE_THRESHOLD_SECONDS
    if isinstance(seconds, timedelta):
        return seconds
    return timedelta(seconds=seconds)


def sweep_offline_devices(threshold=None, *, now=None):
    """Demote online devices that have been silent longer than ``threshold``.

    The staleness filter is part of the UPDATE itself, so a heartbeat that
    lands between selection and write keeps its device online. Devices that
    never connected stay ``waiting``.
    """
    threshold = offline_threshold(threshold)
    now = now or timezone.now()
    cutoff = now - threshold

    count = Device.objects.filter(
        state=Device.State.ONLINE,
        last_seen_at__lt=cutoff,
    ).update(state=Device.State.OFFLINE, updated_at=now)

    if count:
        logger.info(
            "devices_marked_offline",
            extra={"count": count, "threshold_seconds": int(threshold.total_seconds())},
        )
    return count
