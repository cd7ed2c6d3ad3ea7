import logging

from django.core.management.base import BaseCommand, CommandError

from livetrack.services import DispatchConsole

LOGGER = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Subscribe to a route's live events and keep the dispatch view up to date."

    def add_arguments(self, parser):
        parser.add_argument("route_id")
        parser.add_argument("--simulate", type=int, default=0, help="Number of simulated agents (1-20).")
        parser.add_argument("--speed", type=float, default=None, help="Simulated speed in km/h.")
        parser.add_argument("--interval", type=float, default=None, help="Simulation tick in seconds.")
        parser.add_argument("--mode", choices=["bounce", "loop"], default=None)
        parser.add_argument("--jitter", type=float, default=None, help="Jitter radius in metres.")
        parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds.")

    def handle(self, *args, **options):
        console = DispatchConsole()
        console.aggregator.on_render = self._report
        console.start()
        if not console.subscribe_route(options["route_id"]):
            raise CommandError(console.message)

        if options["simulate"]:
            started = console.start_simulation(
                speed_kmh=options["speed"],
                interval_seconds=options["interval"],
                agent_count=options["simulate"],
                mode=options["mode"],
                jitter_m=options["jitter"],
            )
            if not started:
                raise CommandError(console.message)

        try:
            if options["duration"]:
                console.scheduler.advance(options["duration"])
            else:
                console.scheduler.run_forever()
        except KeyboardInterrupt:
            LOGGER.info("Interrupted")
        finally:
            console.close()

    def _report(self, render_state):
        self.stdout.write(
            f"{len(render_state.markers)} visible, "
            f"{len(render_state.clusters)} cluster(s), {len(render_state.heat)} heat disc(s)"
        )
