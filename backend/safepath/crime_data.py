from __future__ import annotations

import csv
import math
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Final, Iterable, Mapping

from .logging_utils import log_event
from .risk_model import quantile
from .settings import settings

CELL_SIZE_DEG: Final[float] = 0.01
DEFAULT_CRIME_SCORE: Final[float] = 0.1

# police.uk "Crime type" values.
DEFAULT_CRIME_SEVERITY: Final[dict[str, float]] = {
    "Violence and sexual offences": 1.0,
    "Robbery": 0.9,
    "Possession of weapons": 0.9,
    "Burglary": 0.8,
    "Drugs": 0.7,
    "Theft from the person": 0.7,
    "Vehicle crime": 0.6,
    "Criminal damage and arson": 0.6,
    "Public order": 0.5,
    "Other theft": 0.5,
    "Other crime": 0.5,
    "Bicycle theft": 0.4,
    "Shoplifting": 0.3,
    "Anti-social behaviour": 0.3,
}
UNKNOWN_CRIME_SEVERITY: Final[float] = 0.5

# (upper percentile of cell counts, base rate)
_RATE_BANDS: Final[tuple[tuple[float, float], ...]] = (
    (0.25, 0.1),
    (0.50, 0.25),
    (0.75, 0.45),
    (0.90, 0.65),
    (0.95, 0.8),
)
_TOP_BAND_RATE: Final[float] = 0.95


@dataclass
class CrimeCell:
    count: int = 0
    by_type: Counter[str] = field(default_factory=Counter)
    base_rate: float = DEFAULT_CRIME_SCORE

    def average_severity(self, severity: Mapping[str, float]) -> float:
        if self.count <= 0:
            return UNKNOWN_CRIME_SEVERITY
        total = sum(severity.get(t, UNKNOWN_CRIME_SEVERITY) * n for t, n in self.by_type.items())
        return total / self.count

    def rate(self, severity: Mapping[str, float]) -> float:
        multiplier = 0.7 + (self.average_severity(severity) * 0.6)
        return min(1.0, max(0.0, self.base_rate * multiplier))


def cell_key(lat: float, lon: float) -> tuple[int, int]:
    return (math.floor(lat / CELL_SIZE_DEG), math.floor(lon / CELL_SIZE_DEG))


def _month_dirs(data_dir: Path, months: int) -> list[Path]:
    if not data_dir.is_dir():
        return []
    dirs = sorted(p for p in data_dir.iterdir() if p.is_dir() and p.name.startswith("20"))
    return dirs[-months:]


def iter_crime_rows(paths: Iterable[Path]) -> Iterable[tuple[float, float, str]]:
    for path in paths:
        with path.open(newline="", encoding="utf-8-sig") as fh:
            for row in csv.DictReader(fh):
                try:
                    lat = float(row.get("Latitude") or "")
                    lon = float(row.get("Longitude") or "")
                except ValueError:
                    continue
                if not (math.isfinite(lat) and math.isfinite(lon)):
                    continue
                yield lat, lon, (row.get("Crime type") or "Other crime").strip()


def build_grid(rows: Iterable[tuple[float, float, str]]) -> dict[tuple[int, int], CrimeCell]:
    grid: dict[tuple[int, int], CrimeCell] = {}
    for lat, lon, crime_type in rows:
        cell = grid.setdefault(cell_key(lat, lon), CrimeCell())
        cell.count += 1
        cell.by_type[crime_type] += 1

    counts = [float(c.count) for c in grid.values()]
    thresholds = [(quantile(counts, q), rate) for q, rate in _RATE_BANDS]
    for cell in grid.values():
        cell.base_rate = _TOP_BAND_RATE
        for limit, rate in thresholds:
            if cell.count <= limit:
                cell.base_rate = rate
                break
    return grid


class CrimeDataService:
    """Crime safety grid built from police.uk street-level CSV exports.

    Expects ``<data_dir>/<YYYY-MM>/*.csv``; the newest ``months`` folders are
    loaded once, lazily, on first lookup.
    """

    def __init__(self, *, data_dir: str | Path | None = None, months: int | None = None) -> None:
        self.data_dir = Path(data_dir or settings.crime_data_dir)
        self.months = months or settings.crime_data_months
        self._grid: dict[tuple[int, int], CrimeCell] | None = None
        self._lock = Lock()

    def load(self) -> dict[tuple[int, int], CrimeCell]:
        with self._lock:
            if self._grid is not None:
                return self._grid
            month_dirs = _month_dirs(self.data_dir, self.months)
            files = [f for d in month_dirs for f in sorted(d.glob("*.csv"))]
            self._grid = build_grid(iter_crime_rows(files))
            log_event(
                "crime_data_loaded",
                data_dir=str(self.data_dir),
                months=[d.name for d in month_dirs],
                file_count=len(files),
                cell_count=len(self._grid),
            )
            return self._grid

    @property
    def has_data(self) -> bool:
        return bool(self.load())

    def crime_score(self, lat: float, lon: float, severity: Mapping[str, float] | None = None) -> float:
        grid = self.load()
        if not grid:
            return DEFAULT_CRIME_SCORE
        weights = severity or DEFAULT_CRIME_SEVERITY
        key = cell_key(lat, lon)
        cell = grid.get(key)
        if cell is not None:
            return cell.rate(weights)

        # Average the neighbouring cells before giving up.
        row, col = key
        neighbours = [
            grid[(row + dr, col + dc)]
            for dr in (-1, 0, 1)
            for dc in (-1, 0, 1)
            if (dr or dc) and (row + dr, col + dc) in grid
        ]
        if not neighbours:
            return DEFAULT_CRIME_SCORE
        return sum(c.rate(weights) for c in neighbours) / len(neighbours)
