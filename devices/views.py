import logging

from rest_framework import mixins, status, viewsets
from rest_framework.exceptions import ParseError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.exceptions import DeviceNotFound, MalformedIdentifier
from devices.heartbeat import Telemetry, process_heartbeat
from devices.identifiers import parse_composite_id
from devices.serializers import DeviceSerializer, HeartbeatTelemetrySerializer
from devices.services import delete_device, list_devices_for_owner

logger = logging.getLogger(__name__)

COMPOSITE_DEVICE_ID_HEADER = "X-Composite-Device-Id"
LEGACY_DEVICE_UUID_HEADER = "X-Device-Uuid"
DEVICE_KEY_HEADER = "X-Device-Key"


class DeviceViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.DestroyModelMixin, viewsets.GenericViewSet):
    serializer_class = DeviceSerializer
    permission_classes = [IsAuthenticated]
    lookup_field = "composite_id"
    lookup_value_regex = r"[^/]+"

    def get_queryset(self):
        return list_devices_for_owner(self.request.user, self.request.query_params.get("project"))

    def get_object(self):
        composite_id = self.kwargs[self.lookup_field]
        parse_composite_id(composite_id)
        device = self.get_queryset().filter(composite_id=composite_id).first()
        if device is None:
            raise DeviceNotFound()
        return device

    def destroy(self, request, *args, **kwargs):
        device = self.get_object()
        snapshot = self.get_serializer(device).data
        delete_device(device.composite_id, request.user)
        create_audit_log_from_request(
            request,
            action="device.delete",
            entity="device",
            entity_id=device.id,
            entity_ref=snapshot["composite_id"],
            before_snapshot=snapshot,
        )
        return Response(status=status.HTTP_204_NO_CONTENT)


class HeartbeatView(APIView):
    """Heartbeat ingress for physical devices; authenticated by device key, not JWT."""

    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = []

    def post(self, request):
        identifier = request.headers.get(COMPOSITE_DEVICE_ID_HEADER) or request.headers.get(LEGACY_DEVICE_UUID_HEADER)
        identifier = (identifier or "").strip()
        if not identifier:
            raise MalformedIdentifier(
                f"Provide either {COMPOSITE_DEVICE_ID_HEADER} or {LEGACY_DEVICE_UUID_HEADER} header."
            )

        result = process_heartbeat(
            identifier,
            request.headers.get(DEVICE_KEY_HEADER, ""),
            self._telemetry(request),
        )
        return Response(
            {
                "success": True,
                "device_id": result.identifier,
                "status": result.state,
                "timestamp": result.received_at.isoformat(),
            }
        )

    def _telemetry(self, request):
        # Telemetry is optional; malformed fields are dropped, never fatal.
        try:
            data = request.data
        except ParseError:
            data = {}
        if not hasattr(data, "items"):
            data = {}

        serializer = HeartbeatTelemetrySerializer(data=dict(data.items()))
        if not serializer.is_valid():
            logger.debug("heartbeat_telemetry_dropped fields=%s", sorted(serializer.errors))
            cleaned = {key: value for key, value in data.items() if key not in serializer.errors}
            serializer = HeartbeatTelemetrySerializer(data=cleaned)
            serializer.is_valid()

        values = serializer.validated_data
        return Telemetry(
            signal_strength=values.get("rssi"),
            reported_address=values.get("ip_address") or None,
            firmware_version=values.get("fw_version") or None,
            hostname=values.get("device_hostname") or None,
        )

