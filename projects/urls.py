from rest_framework.routers import SimpleRouter

from projects.views import ProjectViewSet

router = SimpleRouter()
router.register(r"projects", ProjectViewSet, basename="project")

urlpatterns = router.urls
