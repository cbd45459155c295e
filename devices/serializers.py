from rest_framework import serializers

from devices.identifiers import MAX_SLOT, MIN_SLOT
from devices.models import Device


class DeviceSerializer(serializers.ModelSerializer):
    project_code = serializers.CharField(source="project.code", read_only=True, default=None)

    class Meta:
        model = Device
        fields = [
            "id",
            "composite_id",
            "project_code",
            "slot",
            "display_name",
            "state",
            "last_seen_at",
            "firmware_version",
            "hostname",
            "created_at",
        ]
        read_only_fields = fields


class DeviceRegistrationSerializer(serializers.Serializer):
    slot = serializers.IntegerField(min_value=MIN_SLOT, max_value=MAX_SLOT)
    display_name = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")


class HeartbeatTelemetrySerializer(serializers.Serializer):
    rssi = serializers.IntegerField(required=False, allow_null=True, min_value=-150, max_value=0)
    ip_address = serializers.IPAddressField(required=False, allow_null=True, allow_blank=True)
    fw_version = serializers.CharField(required=False, allow_null=True, allow_blank=True, max_length=32)
    device_hostname = serializers.CharField(required=False, allow_null=True, allow_blank=True, max_length=64)
