"""Directory of social-assistance (CRAS) units and appointment slot proposal."""

import json
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional

from conversa.config import settings
from conversa.logging_config import get_logger

logger = get_logger("location_service")

CEP_PATTERN = re.compile(r"^\d{5}-?\d{3}$")
COORDINATES_PATTERN = re.compile(r"^\s*(-?\d{1,2}(?:\.\d+)?)\s*,\s*(-?\d{1,3}(?:\.\d+)?)\s*$")

WEEKDAYS_PT = ["segunda-feira", "terça-feira", "quarta-feira", "quinta-feira", "sexta-feira", "sábado", "domingo"]
MONTHS_PT = [
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
]


@dataclass(frozen=True)
class CrasUnit:
    name: str
    address: str
    latitude: float
    longitude: float
    cep_prefixes: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AppointmentSlot:
    unit: CrasUnit
    day: date
    time: str

    @property
    def date_label(self) -> str:
        return f"{WEEKDAYS_PT[self.day.weekday()]}, {self.day.day:02d} de {MONTHS_PT[self.day.month - 1]}"

    def as_dict(self) -> dict:
        return {
            "name": self.unit.name,
            "address": self.unit.address,
            "date": self.date_label,
            "time": self.time,
        }


DEFAULT_UNITS = (
    CrasUnit(
        name="CRAS Brasília (Asa Sul)",
        address="Av. L2 Sul, SGAS 614/615",
        latitude=-15.8235,
        longitude=-47.9033,
        cep_prefixes=("70", "71", "72", "73"),
    ),
)


@lru_cache(maxsize=1)
def load_units() -> tuple[CrasUnit, ...]:
    """Units from LOCATION_DIRECTORY_FILE (JSON list) when configured, else the built-in directory."""
    path = settings.location_directory_file
    if not path:
        return DEFAULT_UNITS
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return tuple(
            CrasUnit(
                name=item["name"],
                address=item["address"],
                latitude=float(item["latitude"]),
                longitude=float(item["longitude"]),
                cep_prefixes=tuple(item.get("cep_prefixes", [])),
            )
            for item in raw
        )
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.error(f"Invalid location directory {path}: {e}")
        return DEFAULT_UNITS


def is_postal_code(text: Optional[str]) -> bool:
    return bool(text and CEP_PATTERN.match(text.strip()))


def parse_coordinates(text: Optional[str]) -> Optional[tuple[float, float]]:
    match = COORDINATES_PATTERN.match(text or "")
    if not match:
        return None
    lat, lng = float(match.group(1)), float(match.group(2))
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def is_location(text: Optional[str]) -> bool:
    return is_postal_code(text) or parse_coordinates(text) is not None


def _distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = rlat2 - rlat1
    dlng = math.radians(lng2 - lng1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlng / 2) ** 2
    return 6371.0 * 2 * math.asin(math.sqrt(a))


def find_nearest_unit(location: str) -> Optional[CrasUnit]:
    """Resolve a CEP or "lat,lng" to the closest unit. None when the location is outside the directory."""
    units = load_units()
    coordinates = parse_coordinates(location)
    if coordinates is not None:
        lat, lng = coordinates
        nearest = min(units, key=lambda unit: _distance_km(lat, lng, unit.latitude, unit.longitude), default=None)
        if nearest is None or _distance_km(lat, lng, nearest.latitude, nearest.longitude) > settings.location_max_distance_km:
            return None
        return nearest

    if is_postal_code(location):
        digits = location.strip().replace("-", "")
        matches = [
            (len(prefix), unit) for unit in units for prefix in unit.cep_prefixes if digits.startswith(prefix)
        ]
        if not matches:
            return None
        return max(matches, key=lambda item: item[0])[1]

    return None


def add_weekdays(start: date, days: int) -> date:
    current = start
    while days > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            days -= 1
    return current


def propose_slot(unit: CrasUnit, now: Optional[datetime] = None) -> AppointmentSlot:
    """Next available slot. Scheduling is not integrated yet: always 10:00, three working days ahead."""
    today = (now or datetime.now()).date()
    return AppointmentSlot(unit=unit, day=add_weekdays(today, 3), time="às 10:00")
