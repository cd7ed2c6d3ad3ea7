from __future__ import annotations

import json
import logging

from django.apps import apps
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from django.views.generic import View

LOGGER = logging.getLogger(__name__)

VIEW_TOGGLES = {
    "onlyRoute": "only_route",
    "clustering": "clustering",
    "heat": "heat",
    "recencyWindow": "recency_window",
}


def get_console():
    return apps.get_app_config("livetrack").get_console()


class ConsoleView(View):
    """
    Serialises requests on the shared console and fires the timers that fell
    due since the previous request. One bounded batch per request: stream
    pump turns only consume chunks the transport has already buffered.
    """

    def dispatch(self, request, *args, **kwargs):
        self.console = get_console()
        with self.console.lock:
            self.console.scheduler.run_pending()
            return super().dispatch(request, *args, **kwargs)


def _json_body(request):
    if not request.body:
        return {}
    return json.loads(request.body)


class RenderStateAPIView(ConsoleView):
    def get(self, request, *args, **kwargs):
        console = self.console
        return JsonResponse(
            {
                "status": console.status(),
                "center": console.view.center,
                "render": console.aggregator.render_state.as_dict(),
            }
        )


class EventLogAPIView(ConsoleView):
    def get(self, request, *args, **kwargs):
        console = self.console
        return JsonResponse(
            {
                "state": console.stream.state.value,
                "reconnectIn": console.stream.reconnect_in(),
                "events": [
                    {"event": frame.event_name, "data": frame.data}
                    for frame in console.stream.visible_log()
                ],
            }
        )


@method_decorator(csrf_exempt, name='dispatch')
class OutboxFlushView(ConsoleView):
    def post(self, request, *args, **kwargs):
        console = self.console
        flushed = console.outbox.flush()
        return JsonResponse({'flushed': flushed, 'pending': console.outbox.pending_count()})


@method_decorator(csrf_exempt, name='dispatch')
class SubscribeRouteView(ConsoleView):
    def post(self, request, *args, **kwargs):
        console = self.console
        if not console.subscribe_route(self.kwargs.get('route_id')):
            return JsonResponse({'success': False, 'message': console.message}, status=400)
        return JsonResponse({'success': True, 'status': console.status()})


@method_decorator(csrf_exempt, name='dispatch')
class SimulationView(ConsoleView):
    def post(self, request, *args, **kwargs):
        try:
            data = _json_body(request)
        except json.JSONDecodeError:
            return JsonResponse({'error': 'Invalid JSON'}, status=400)

        console = self.console
        if data.get('action') == 'stop':
            console.stop_simulation()
            return JsonResponse({'success': True, 'simulating': False})

        started = console.start_simulation(
            speed_kmh=data.get('speedKmh'),
            interval_seconds=data.get('intervalSeconds'),
            agent_count=data.get('agents'),
            mode=data.get('mode'),
            jitter_m=data.get('jitterM'),
        )
        if not started:
            return JsonResponse({'success': False, 'message': console.message}, status=400)
        return JsonResponse(
            {
                'success': True,
                'simulating': True,
                'agents': [agent.agent_id for agent in console.simulator.agents],
                'stepMeters': round(console.simulator.step_meters, 3),
            }
        )


@method_decorator(csrf_exempt, name='dispatch')
class ViewSettingsView(ConsoleView):
    def post(self, request, *args, **kwargs):
        try:
            data = _json_body(request)
        except json.JSONDecodeError:
            return JsonResponse({'error': 'Invalid JSON'}, status=400)

        console = self.console
        if 'zoom' in data:
            console.set_zoom(int(data['zoom']))
        if 'viewport' in data:
            viewport = data['viewport']
            console.pan(tuple(float(value) for value in viewport) if viewport else None)
        toggles = {VIEW_TOGGLES[key]: value for key, value in data.items() if key in VIEW_TOGGLES}
        if toggles:
            console.set_filters(**toggles)
        if 'follow' in data:
            console.follow(data.get('followAgent'), enabled=bool(data['follow']))
        return JsonResponse({'success': True})
