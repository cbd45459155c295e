from django.contrib import admin

from legacy.models import MigrationAuditEntry


@admin.register(MigrationAuditEntry)
class MigrationAuditEntryAdmin(admin.ModelAdmin):
    list_display = ("legacy_id", "new_composite_id", "status", "started_at", "completed_at")
    list_filter = ("status",)
    search_fields = ("legacy_id", "new_composite_id")
    readonly_fields = (
        "device_internal_id",
        "device",
        "legacy_id",
        "new_composite_id",
        "status",
        "started_at",
        "completed_at",
        "error",
    )
