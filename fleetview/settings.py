"""
Django settings for the fleetview console.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "fleetview-dev-only")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = ["*"] if DEBUG else os.environ.get("DJANGO_ALLOWED_HOSTS", "").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "livetrack.apps.LivetrackConfig",
]

MIDDLEWARE = [
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
]

ROOT_URLCONF = "fleetview.urls"
WSGI_APPLICATION = "fleetview.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("FLEETVIEW_DB", str(BASE_DIR / "fleetview.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

LIVETRACK_CONFIG = {
    "base_url": os.environ.get("LIVETRACK_BASE_URL", "http://localhost:8080"),
    "tenant_id": os.environ.get("LIVETRACK_TENANT", "t_demo"),
    "role": "admin",
    "timeout_seconds": 5,
    "reconnect_base_seconds": 2.0,
    "reconnect_max_seconds": 30.0,
    "outbox_flush_seconds": 30.0,
    "outbox_fallback_path": os.environ.get("LIVETRACK_OUTBOX_FILE") or None,
    "recency_window_seconds": 60,
    "heat_radius_m": 120.0,
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "livetrack": {
            "handlers": ["console"],
            "level": os.environ.get("LIVETRACK_LOG_LEVEL", "INFO"),
        },
    },
}
