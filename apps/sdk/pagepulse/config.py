from __future__ import annotations

from pydantic import BaseModel, Field


class CaptureConfig(BaseModel):
    """Knobs for capture, delivery and the recording relay. Durations are in ms."""

    api_url: str = "http://localhost:5000"
    project_id: str = "default"

    # batching
    batch_size: int = Field(20, ge=1)
    flush_interval_ms: int = Field(5000, ge=10)
    max_buffer: int = Field(1000, ge=1)

    # implicit capture
    scroll_throttle_ms: int = 500
    mousemove_throttle_ms: int = 100
    hover_threshold_ms: int = 1000
    enable_heatmaps: bool = False
    admin_path_prefix: str = "/admin"

    # delivery
    retry_base_ms: int = 1000
    retry_max_ms: int = 30000
    request_timeout_s: float = 10.0
    beacon_timeout_s: float = 2.0

    # performance reporting
    performance_interval_ms: int = 10000

    # recording relay
    recording_flush_ms: int = 400
    recording_max_frames: int = 50
    control_max_reconnects: int = 10
    control_reconnect_base_ms: int = 1000
    control_reconnect_max_ms: int = 5000

    batch_path: str = "/api/tracking/interactions/batch"
    performance_path: str = "/api/analytics/performance"
    recording_path: str = "/api/analytics/recording-events"
    complete_path: str = "/api/tracking/session/{session_id}/complete"
    control_path: str = "/api/recordings/ws"

    def url(self, path: str) -> str:
        return self.api_url.rstrip("/") + path

    def control_url(self) -> str:
        base = self.api_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}{self.control_path}?projectId={self.project_id}"
