from django.apps import AppConfig


class LivetrackConfig(AppConfig):
    name = "livetrack"
    default_auto_field = "django.db.models.BigAutoField"
    console = None

    def get_console(self):
        """The dispatch console served by the JSON API, created on first use."""
        if self.console is None:
            from .services import DispatchConsole

            self.console = DispatchConsole()
            self.console.start()
        return self.console
