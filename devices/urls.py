from django.urls import path
from rest_framework.routers import SimpleRouter

from devices.views import DeviceViewSet, HeartbeatView

router = SimpleRouter()
router.register(r"devices", DeviceViewSet, basename="device")

urlpatterns = [
    path("devices/heartbeat", HeartbeatView.as_view(), name="device-heartbeat"),
] + router.urls
