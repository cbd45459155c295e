from rest_framework import serializers

from projects.models import Project


class ProjectSerializer(serializers.ModelSerializer):
    device_count = serializers.IntegerField(read_only=True, default=0)

    class Meta:
        model = Project
        fields = ["id", "code", "name", "description", "is_legacy", "device_count", "created_at", "updated_at"]
        read_only_fields = ["id", "code", "is_legacy", "device_count", "created_at", "updated_at"]


class ProjectCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")


class SlotSerializer(serializers.Serializer):
    slot = serializers.IntegerField()
    composite_id = serializers.CharField()
    available = serializers.BooleanField()
