from __future__ import annotations

import json
import logging
from pathlib import Path

from pythonjsonlogger import jsonlogger

from safepath.logging_utils import _parse_level, _resolve_log_dir, get_logger, log_event
from safepath.settings import Settings, settings


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def test_logging_helpers_parse_levels_and_emit_event(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(settings, "out_dir", str(tmp_path))

    assert _parse_level("debug") == logging.DEBUG
    assert _parse_level("not_a_level") == logging.INFO

    logger1 = get_logger()
    handlers_before = len(logger1.handlers)
    logger2 = get_logger()
    assert logger1 is logger2
    assert len(logger2.handlers) == handlers_before

    capture = _Capture()
    logger1.addHandler(capture)
    try:
        log_event("unit_test_event", path="/health", status=200)
        log_event("unit_test_warning", level=logging.WARNING, source="osm")
    finally:
        logger1.removeHandler(capture)

    info, warning = capture.records
    assert info.getMessage() == "unit_test_event"
    assert info.levelno == logging.INFO
    assert info.status == 200  # type: ignore[attr-defined]
    assert warning.levelno == logging.WARNING

    line = json.loads(jsonlogger.JsonFormatter().format(info))
    assert line["event"] == "unit_test_event"
    assert line["path"] == "/health"


def test_log_dir_prefers_out_dir(tmp_path: Path) -> None:
    assert _resolve_log_dir(str(tmp_path)) == tmp_path / "logs"
    assert (tmp_path / "logs").is_dir()


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("TOMTOM_API_KEY", "  abc  ")
    monkeypatch.setenv("OVERPASS_ALTERNATIVE_URLS", "https://a.test/api, ,https://b.test/api")
    monkeypatch.setenv("WAYPOINT_OFFSETS_M", "200,x,-5,400")
    monkeypatch.setenv("HAZARD_CACHE_TTL_S", "300")
    monkeypatch.setenv("HAZARD_CACHE_STALE_S", "900")
    monkeypatch.setenv("OSRM_PROFILE_CYCLING", "bicycle")

    s = Settings()
    assert s.tomtom_api_key == "abc"
    assert s.overpass_alternatives == ["https://a.test/api", "https://b.test/api"]
    assert s.waypoint_offsets == [200.0, 400.0]
    assert s.hazard_cache_stale_s == 300
    assert s.osrm_profile_for("cycling") == "bicycle"
    assert s.osrm_profile_for("unknown") == s.osrm_profile_walking


def test_settings_defaults(monkeypatch) -> None:
    for name in ("WAYPOINT_OFFSETS_M", "DANGER_THRESHOLD", "HAZARD_DEDUP_THRESHOLD_M", "LOCAL_TIMEZONE"):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.waypoint_offsets == [150.0, 300.0]
    assert s.danger_threshold == 0.2
    assert s.hazard_dedup_threshold_m == 50.0
    assert s.local_timezone == "Europe/London"
