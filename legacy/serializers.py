from rest_framework import serializers

from legacy.models import MigrationAuditEntry


class MigrationAuditEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = MigrationAuditEntry
        fields = [
            "id",
            "device_internal_id",
            "device",
            "legacy_id",
            "new_composite_id",
            "status",
            "started_at",
            "completed_at",
            "error",
        ]
        read_only_fields = fields
