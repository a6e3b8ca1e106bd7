from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    # Keep caches and the route store in backend/out by default.
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven) for the route anchor engine."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    photon_base_url: str = Field(default="https://photon.komoot.io", alias="PHOTON_BASE_URL")
    osrm_base_url: str = Field(default="https://router.project-osrm.org", alias="OSRM_BASE_URL")
    osrm_profile: str = Field(default="driving", alias="OSRM_PROFILE")

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Empty store path means "<OUT_DIR>/routes.json"; empty cache paths keep caches in memory.
    route_store_path: str = Field(default="", alias="ROUTE_STORE_PATH")
    geocode_cache_path: str = Field(default="", alias="GEOCODE_CACHE_PATH")
    route_cache_path: str = Field(default="", alias="ROUTE_CACHE_PATH")

    http_timeout_s: float = Field(default=30.0, ge=1.0, le=300.0, alias="HTTP_TIMEOUT_S")

    # Self-throttling keeps public providers from rate-limiting a burst of segments.
    geocode_throttle_ms: int = Field(default=200, alias="GEOCODE_THROTTLE_MS")
    route_throttle_ms: int = Field(default=180, alias="ROUTE_THROTTLE_MS")

    geocode_candidate_limit: int = Field(default=5, ge=1, le=50, alias="GEOCODE_CANDIDATE_LIMIT")
    geocode_max_hint_distance_km: float = Field(
        default=120.0,
        ge=1.0,
        le=2000.0,
        alias="GEOCODE_MAX_HINT_DISTANCE_KM",
    )
    segment_max_jump_km: float = Field(default=180.0, ge=1.0, le=2000.0, alias="SEGMENT_MAX_JUMP_KM")

    route_cache_max_entries: int = Field(default=250, ge=1, alias="ROUTE_CACHE_MAX_ENTRIES")
    route_cache_evict_batch: int = Field(default=50, ge=1, alias="ROUTE_CACHE_EVICT_BATCH")

    retry_max_attempts: int = Field(default=3, ge=1, le=10, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay_ms: int = Field(default=250, ge=0, alias="RETRY_BASE_DELAY_MS")
    retry_max_delay_ms: int = Field(default=2000, ge=0, alias="RETRY_MAX_DELAY_MS")
    retry_jitter_ms: int = Field(default=100, ge=0, alias="RETRY_JITTER_MS")
    retry_status_codes: str = Field(default="429,500,502,503,504", alias="RETRY_STATUS_CODES")

    draw_preview_debounce_ms: int = Field(default=280, alias="DRAW_PREVIEW_DEBOUNCE_MS")

    @model_validator(mode="after")
    def _clamp_timing(self) -> "Settings":
        self.geocode_throttle_ms = max(0, int(self.geocode_throttle_ms))
        self.route_throttle_ms = max(0, int(self.route_throttle_ms))
        self.draw_preview_debounce_ms = max(0, int(self.draw_preview_debounce_ms))
        self.route_cache_evict_batch = min(int(self.route_cache_evict_batch), int(self.route_cache_max_entries))
        self.retry_max_delay_ms = max(int(self.retry_max_delay_ms), int(self.retry_base_delay_ms))
        return self

    def resolved_route_store_path(self) -> Path:
        if self.route_store_path.strip():
            return Path(self.route_store_path)
        return Path(self.out_dir) / "routes.json"


settings = Settings()
