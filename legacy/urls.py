from rest_framework.routers import SimpleRouter

from legacy.views import MigrationAuditEntryViewSet

router = SimpleRouter()
router.register(r"admin/legacy-migration", MigrationAuditEntryViewSet, basename="legacy-migration")

urlpatterns = router.urls
