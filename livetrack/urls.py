from django.urls import path
from .views import (
    EventLogAPIView, OutboxFlushView, RenderStateAPIView, SimulationView,
    SubscribeRouteView, ViewSettingsView,
)

app_name = "livetrack"

urlpatterns = [
    path("api/render/", RenderStateAPIView.as_view(), name="render-state"),
    path("api/events/", EventLogAPIView.as_view(), name="event-log"),
    path("api/view/", ViewSettingsView.as_view(), name="view-settings"),
    path("api/outbox/flush/", OutboxFlushView.as_view(), name="outbox-flush"),
    path("api/routes/<str:route_id>/subscribe/", SubscribeRouteView.as_view(), name="subscribe-route"),
    path("api/simulation/", SimulationView.as_view(), name="simulation"),
]
