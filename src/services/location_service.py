"""Location pattern detection: dwell history, grid clustering and labeling."""

import math
from collections import defaultdict
from typing import Optional

import structlog
from pydantic import ValidationError

from src.config import Settings, get_settings
from src.models.context import LocationLabel, LocationPattern, LocationSample, LocationVisit
from src.services.clock import Clock, local_hour, now_ms
from src.services.storage_service import (
    LOCATION_HISTORY_KEY,
    LOCATION_PATTERNS_KEY,
    DebouncedSaver,
    JsonStore,
    KeyValueStore,
)

logger = structlog.get_logger(__name__)

EARTH_RADIUS_M = 6371000
# Grid resolution: 3 decimal places of a degree is roughly 100 m
GRID_SCALE = 1000
# A cluster this busy is labeled from its hour alone
MIN_VISITS_FOR_DIRECT_LABEL = 10
WORK_HOURS = (9, 17)
HOME_BEFORE_HOUR = 9
HOME_AFTER_HOUR = 20
COMMUTE_HOURS = ((7, 9), (17, 19))


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _is_work_hour(avg_hour: float) -> bool:
    return WORK_HOURS[0] <= avg_hour <= WORK_HOURS[1]


def _is_home_hour(avg_hour: float) -> bool:
    return avg_hour < HOME_BEFORE_HOUR or avg_hour > HOME_AFTER_HOUR


def cluster_visits(visits: list[LocationVisit], min_visits: int = 5) -> list[LocationPattern]:
    """Grid-cluster visits into labeled patterns, most visited first."""
    cells: dict[tuple[int, int], list[LocationVisit]] = defaultdict(list)
    for visit in visits:
        key = (math.floor(visit.lat * GRID_SCALE), math.floor(visit.lon * GRID_SCALE))
        cells[key].append(visit)

    patterns: list[LocationPattern] = []
    for cell_visits in cells.values():
        count = len(cell_visits)
        if count < min_visits:
            continue

        avg_hour = sum(local_hour(v.timestamp) for v in cell_visits) / count
        label = LocationLabel.UNKNOWN
        if count >= MIN_VISITS_FOR_DIRECT_LABEL:
            if _is_work_hour(avg_hour):
                label = LocationLabel.WORK
            elif _is_home_hour(avg_hour):
                label = LocationLabel.HOME

        patterns.append(
            LocationPattern(
                lat=sum(v.lat for v in cell_visits) / count,
                lon=sum(v.lon for v in cell_visits) / count,
                visits=count,
                total_duration=sum(v.duration_ms for v in cell_visits),
                avg_hour=avg_hour,
                label=label,
            )
        )

    patterns.sort(key=lambda p: p.visits, reverse=True)

    # The busiest remaining off-hours cluster is home, the busiest 9-17 one is work
    home = next(
        (p for p in patterns if p.label == LocationLabel.UNKNOWN and _is_home_hour(p.avg_hour)),
        None,
    )
    if home is not None:
        home.label = LocationLabel.HOME

    work = next(
        (p for p in patterns if p.label == LocationLabel.UNKNOWN and _is_work_hour(p.avg_hour)),
        None,
    )
    if work is not None:
        work.label = LocationLabel.WORK

    return patterns


class LocationService:
    """Learns where the user spends time and classifies the current location."""

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
    ):
        self.settings = settings or get_settings()
        self._json = JsonStore(store)
        self._clock = clock
        self._history: list[LocationVisit] = []
        self._patterns: list[LocationPattern] = []
        self._last_sample: Optional[LocationSample] = None
        self._visits_since_recalc = 0
        self._initialized = False
        self._saver = DebouncedSaver(
            self.save_patterns,
            self.settings.save_debounce_seconds,
            name=LOCATION_PATTERNS_KEY,
        )

    async def initialize(self) -> None:
        if self._initialized:
            logger.info("location_already_initialized")
            return
        await self.load_patterns()
        self._initialized = True
        logger.info(
            "location_initialized",
            patterns=len(self._patterns),
            visits=len(self._history),
        )

    async def cleanup(self) -> None:
        await self._saver.flush()
        self._initialized = False

    def update_location(self, lat: float, lon: float) -> Optional[LocationVisit]:
        """Feed a geolocation sample.

        If the previous sample is older than the dwell threshold, the elapsed
        time is recorded as a visit at the previous coordinate.

        Returns:
            The recorded visit, if any
        """
        now = self._clock()
        visit = None

        previous = self._last_sample
        if previous is not None:
            duration = now - previous.timestamp
            if duration > self.settings.location_min_dwell_ms:
                visit = self._record_visit(
                    LocationVisit(
                        lat=previous.lat,
                        lon=previous.lon,
                        timestamp=previous.timestamp,
                        duration_ms=duration,
                    )
                )

        self._last_sample = LocationSample(lat=lat, lon=lon, timestamp=now)
        return visit

    def _record_visit(self, visit: LocationVisit) -> LocationVisit:
        self._history.append(visit)
        max_visits = self.settings.location_max_visits
        if len(self._history) > max_visits:
            self._history = self._history[-max_visits:]

        self._visits_since_recalc += 1
        if self._visits_since_recalc >= self.settings.location_recalc_every:
            self.calculate_patterns()

        self._saver.schedule()
        logger.debug("location_visit_recorded", duration_ms=visit.duration_ms)
        return visit

    def calculate_patterns(self) -> list[LocationPattern]:
        """Re-derive patterns from the full visit history."""
        self._patterns = cluster_visits(
            self._history,
            min_visits=self.settings.location_min_visits_for_pattern,
        )
        self._visits_since_recalc = 0
        logger.info(
            "location_patterns_calculated",
            patterns=len(self._patterns),
            labels=[p.label.value for p in self._patterns],
        )
        return self.get_patterns()

    def get_current_location_context(self, now: Optional[int] = None) -> LocationLabel:
        """Label of the nearest known pattern, or a time-of-day guess."""
        if self._last_sample is None or not self._patterns:
            return LocationLabel.UNKNOWN

        radius = self.settings.location_cluster_radius_m
        nearest: Optional[LocationPattern] = None
        nearest_distance = radius
        for pattern in self._patterns:
            distance = haversine_distance(
                self._last_sample.lat, self._last_sample.lon, pattern.lat, pattern.lon
            )
            if distance < nearest_distance:
                nearest = pattern
                nearest_distance = distance

        if nearest is not None:
            return nearest.label

        hour = local_hour(self._clock() if now is None else now)
        if any(start <= hour <= end for start, end in COMMUTE_HOURS):
            return LocationLabel.COMMUTING
        return LocationLabel.UNKNOWN

    def get_patterns(self) -> list[LocationPattern]:
        return [p.model_copy() for p in self._patterns]

    def get_history(self) -> list[LocationVisit]:
        return list(self._history)

    def get_last_sample(self) -> Optional[LocationSample]:
        return self._last_sample

    async def load_patterns(self) -> None:
        stored_patterns = await self._json.load(LOCATION_PATTERNS_KEY, default=[])
        stored_history = await self._json.load(LOCATION_HISTORY_KEY, default=[])
        try:
            self._patterns = [LocationPattern.model_validate(p) for p in stored_patterns]
            self._history = [LocationVisit.model_validate(v) for v in stored_history]
        except (ValidationError, TypeError) as e:
            logger.warning("location_data_invalid", error=str(e))
            self._patterns = []
            self._history = []
        self._history = self._history[-self.settings.location_max_visits:]

    async def save_patterns(self) -> bool:
        patterns_ok = await self._json.save(
            LOCATION_PATTERNS_KEY, [p.model_dump(mode="json") for p in self._patterns]
        )
        history_ok = await self._json.save(
            LOCATION_HISTORY_KEY, [v.model_dump(mode="json") for v in self._history]
        )
        return patterns_ok and history_ok
