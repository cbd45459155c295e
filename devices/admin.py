from django.contrib import admin

from devices.models import Device, HeartbeatRecord


@admin.register(Device)
class DeviceAdmin(admin.ModelAdmin):
    list_display = ("composite_id", "display_name", "owner", "state", "last_seen_at")
    list_filter = ("state",)
    search_fields = ("composite_id", "display_name", "owner__username", "owner__email")
    readonly_fields = ("composite_id", "auth_secret_hash", "state", "last_seen_at", "created_at", "updated_at")


@admin.register(HeartbeatRecord)
class HeartbeatRecordAdmin(admin.ModelAdmin):
    list_display = ("composite_id", "received_at", "signal_strength", "firmware_version")
    search_fields = ("composite_id",)
    readonly_fields = ("device", "composite_id", "received_at", "signal_strength", "reported_address", "firmware_version")
    ordering = ("-received_at",)
