"""
Runtime configuration read from ``settings.LIVETRACK_CONFIG``.
"""
from __future__ import annotations

from typing import Any, Dict

from django.conf import settings

DEFAULTS: Dict[str, Any] = {
    "base_url": "http://localhost:8080",
    "tenant_id": "t_demo",
    "role": "admin",
    "driver_id": "",
    "dev_token": False,
    "timeout_seconds": 5,
    "reconnect_base_seconds": 2.0,
    "reconnect_max_seconds": 30.0,
    "auto_reconnect": True,
    "event_log_size": 50,
    "stream_poll_seconds": 0.05,
    "stream_chunks_per_pump": 64,
    "outbox_flush_seconds": 30.0,
    "outbox_fallback_path": None,
    "recency_window_seconds": 60,
    "recompute_delay_seconds": 0.35,
    "recompute_busy_delay_seconds": 0.7,
    "recompute_busy_threshold": 200,
    "refresh_seconds": 5.0,
    "cluster_min_cell_deg": 0.002,
    "cluster_base_cell_deg": 0.5,
    "heat_radius_m": 120.0,
    "share_interval_seconds": 10,
    "sim_interval_seconds": 1.5,
    "sim_speed_kmh": 30.0,
    "sim_agents": 1,
    "sim_mode": "bounce",
    "sim_jitter_m": 0.0,
}


def get_config() -> Dict[str, Any]:
    """Merge the project's LIVETRACK_CONFIG over the defaults."""
    configured = getattr(settings, "LIVETRACK_CONFIG", None) or {}
    merged = dict(DEFAULTS)
    merged.update(configured)
    return merged
