from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from devices.serializers import DeviceRegistrationSerializer, DeviceSerializer
from devices.services import list_available_slots, register_device
from projects.serializers import ProjectCreateSerializer, ProjectSerializer, SlotSerializer
from projects.services import create_project, delete_project, get_owned_project, list_projects_for_owner


class ProjectViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = ProjectSerializer
    permission_classes = [IsAuthenticated]
    lookup_field = "code"
    lookup_value_regex = r"[^/]+"

    def get_queryset(self):
        return list_projects_for_owner(self.request.user)

    def get_object(self):
        project = get_owned_project(self.kwargs[self.lookup_field], self.request.user)
        return self.get_queryset().get(pk=project.pk)

    def create(self, request, *args, **kwargs):
        serializer = ProjectCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        project = create_project(
            name=serializer.validated_data["name"],
            description=serializer.validated_data.get("description", ""),
            owner=request.user,
        )
        payload = ProjectSerializer(project).data
        create_audit_log_from_request(
            request,
            action="project.create",
            entity="project",
            entity_id=project.id,
            entity_ref=project.code,
            after_snapshot=payload,
        )
        return Response(payload, status=status.HTTP_201_CREATED)

    def destroy(self, request, *args, **kwargs):
        project = self.get_object()
        snapshot = self.get_serializer(project).data
        delete_project(project.code, request.user)
        create_audit_log_from_request(
            request,
            action="project.delete",
            entity="project",
            entity_id=project.id,
            entity_ref=project.code,
            before_snapshot=snapshot,
        )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["get"], url_path="slots")
    def slots(self, request, code=None):
        slots = list_available_slots(code, request.user)
        return Response(SlotSerializer(slots, many=True).data)

    @action(detail=True, methods=["post"], url_path="devices")
    def register(self, request, code=None):
        serializer = DeviceRegistrationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        registration = register_device(
            project_code=code,
            owner=request.user,
            slot=serializer.validated_data["slot"],
            display_name=serializer.validated_data.get("display_name", ""),
        )
        device_payload = DeviceSerializer(registration.device).data
        create_audit_log_from_request(
            request,
            action="device.register",
            entity="device",
            entity_id=registration.device.id,
            entity_ref=registration.composite_id,
            after_snapshot=device_payload,
        )
        # The plain secret is only ever returned here.
        return Response(
            {
                "composite_id": registration.composite_id,
                "secret": registration.secret,
                "device": device_payload,
            },
            status=status.HTTP_201_CREATED,
        )
