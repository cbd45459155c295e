from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from legacy.models import MigrationAuditEntry
from legacy.serializers import MigrationAuditEntrySerializer
from legacy.services import summarize_audit_entries


class MigrationAuditEntryViewSet(viewsets.ReadOnlyModelViewSet):
    """Operator view of the legacy identifier migration trail."""

    queryset = MigrationAuditEntry.objects.all()
    serializer_class = MigrationAuditEntrySerializer
    permission_classes = [IsAuthenticated, IsAdminUser]

    def get_queryset(self):
        qs = self.queryset.order_by("started_at", "legacy_id")
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    @action(detail=False, methods=["get"])
    def summary(self, request):
        return Response(summarize_audit_entries())
