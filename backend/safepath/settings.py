from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_osrm_base_url() -> str:
    # In docker-compose, OSRM is reachable by service name "osrm".
    return "http://osrm:5000" if _running_in_docker() else "http://localhost:5000"


def _default_out_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "out")


def _default_crime_data_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "data" / "crime")


class Settings(BaseSettings):
    """Validated settings (env-driven)."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env"
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    osrm_base_url: str = Field(default_factory=_default_osrm_base_url, alias="OSRM_BASE_URL")
    osrm_profile_walking: str = Field(default="foot", alias="OSRM_PROFILE_WALKING")
    osrm_profile_cycling: str = Field(default="bike", alias="OSRM_PROFILE_CYCLING")
    osrm_profile_driving: str = Field(default="driving", alias="OSRM_PROFILE_DRIVING")
    osrm_timeout_s: float = Field(default=30.0, ge=1.0, le=120.0, alias="OSRM_TIMEOUT_S")
    osrm_max_retries: int = Field(default=3, ge=1, le=10, alias="OSRM_MAX_RETRIES")

    overpass_url: str = Field(
        default="https://overpass-api.de/api/interpreter",
        alias="OVERPASS_URL",
    )
    # Comma-separated mirrors tried after the primary endpoint.
    overpass_alternative_urls: str = Field(
        default=(
            "https://overpass.kumi.systems/api/interpreter,"
            "https://overpass.openstreetmap.ru/api/interpreter"
        ),
        alias="OVERPASS_ALTERNATIVE_URLS",
    )
    overpass_timeout_s: float = Field(default=35.0, ge=1.0, le=120.0, alias="OVERPASS_TIMEOUT_S")
    overpass_primary_attempts: int = Field(default=2, ge=1, le=5, alias="OVERPASS_PRIMARY_ATTEMPTS")
    overpass_rate_limit_wait_s: float = Field(default=2.0, ge=0.0, le=30.0, alias="OVERPASS_RATE_LIMIT_WAIT_S")

    tomtom_api_key: str = Field(default="", alias="TOMTOM_API_KEY")
    tomtom_base_url: str = Field(
        default="https://api.tomtom.com/traffic/services/5/incidentDetails",
        alias="TOMTOM_BASE_URL",
    )
    tomtom_timeout_s: float = Field(default=10.0, ge=1.0, le=60.0, alias="TOMTOM_TIMEOUT_S")

    hazard_cache_ttl_s: int = Field(default=900, ge=10, alias="HAZARD_CACHE_TTL_S")
    hazard_cache_stale_s: int = Field(default=600, ge=0, alias="HAZARD_CACHE_STALE_S")
    hazard_cache_max_entries: int = Field(default=50, ge=1, alias="HAZARD_CACHE_MAX_ENTRIES")
    hazard_dedup_threshold_m: float = Field(default=50.0, ge=0.0, le=1000.0, alias="HAZARD_DEDUP_THRESHOLD_M")
    hazard_default_radius_m: int = Field(default=5000, ge=100, le=50000, alias="HAZARD_DEFAULT_RADIUS_M")

    danger_threshold: float = Field(default=0.20, ge=0.0, le=1.0, alias="DANGER_THRESHOLD")
    sample_spacing_m: float = Field(default=100.0, ge=10.0, le=2000.0, alias="SAMPLE_SPACING_M")
    sample_max_points: int = Field(default=200, ge=2, le=2000, alias="SAMPLE_MAX_POINTS")
    waypoint_offsets_m: str = Field(default="150,300", alias="WAYPOINT_OFFSETS_M")
    max_dangerous_segments: int = Field(default=3, ge=0, le=10, alias="MAX_DANGEROUS_SEGMENTS")
    max_alternatives: int = Field(default=3, ge=1, le=5, alias="MAX_ALTERNATIVES")

    upstream_concurrency: int = Field(default=6, ge=1, le=64, alias="UPSTREAM_CONCURRENCY")
    local_timezone: str = Field(default="Europe/London", alias="LOCAL_TIMEZONE")

    crime_data_dir: str = Field(default_factory=_default_crime_data_dir, alias="CRIME_DATA_DIR")
    crime_data_months: int = Field(default=3, ge=1, le=24, alias="CRIME_DATA_MONTHS")

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @model_validator(mode="after")
    def _normalise(self) -> "Settings":
        if self.hazard_cache_stale_s > self.hazard_cache_ttl_s:
            self.hazard_cache_stale_s = self.hazard_cache_ttl_s
        self.tomtom_api_key = self.tomtom_api_key.strip()
        self.overpass_url = self.overpass_url.strip()
        return self

    @property
    def overpass_alternatives(self) -> list[str]:
        return [u.strip() for u in self.overpass_alternative_urls.split(",") if u.strip()]

    @property
    def waypoint_offsets(self) -> list[float]:
        out: list[float] = []
        for part in self.waypoint_offsets_m.split(","):
            try:
                value = float(part)
            except ValueError:
                continue
            if value > 0:
                out.append(value)
        return out or [150.0, 300.0]

    def osrm_profile_for(self, mode: str) -> str:
        return {
            "walking": self.osrm_profile_walking,
            "cycling": self.osrm_profile_cycling,
            "driving": self.osrm_profile_driving,
        }.get(mode, self.osrm_profile_walking)


settings = Settings()
