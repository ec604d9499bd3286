from __future__ import annotations

import dataclasses
import logging
import math
import os
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Tuple
from urllib.parse import quote
from zoneinfo import ZoneInfo

import numpy as np
import requests

from bulletin import (
    Bulletin,
    BulletinError,
    BulletinFetchError,
    ParameterSet,
    TimeAxis,
    extract_single_document,
    parse_bulletin,
)

DEFAULT_SOURCE_URL = (
    "https://opendata.dwd.de/weather/local_forecasts/mos/MOSMIX_L/single_stations/"
    "{station}/kml/MOSMIX_L_LATEST_{station}.kmz"
)
REFERENCE_TIMEZONE = ZoneInfo(os.getenv("MOSMIX_TIMEZONE", "Europe/Berlin").strip() or "Europe/Berlin")
FETCH_RETRIES = 3
FETCH_BACKOFF_SECONDS = float(os.getenv("MOSMIX_FETCH_BACKOFF_SECONDS", "0.5"))
FETCH_TIMEOUT_SECONDS = float(os.getenv("MOSMIX_FETCH_TIMEOUT_SECONDS", "20"))
KELVIN_OFFSET = 273.15
MS_TO_KMH = 3.6
MAGNUS_A = 17.625
MAGNUS_B = 243.04
WIND_DIRECTION_MODES = ("degrees", "8", "16")
LANGUAGES = ("en", "de")
LOGGER = logging.getLogger("mosmix_forecast.forecast_data")

# Lookup order per quantity; earlier codes win per timestep.
QUANTITY_CODES: Dict[str, Tuple[str, ...]] = {
    "temperature": ("TTT",),
    "dew_point": ("Td",),
    "wind_speed": ("FF",),
    "wind_gust": ("FX1", "FX3"),
    "wind_direction": ("DD",),
    "pressure": ("PPPP",),
    "cloud_cover": ("N",),
    "visibility": ("VV",),
    "precipitation": ("RR1c", "RRL1", "RR", "RR_1h", "RRc"),
    "condition": ("ww",),
    "relative_humidity": ("RELH", "RH"),
}
MAPPED_CODES = frozenset(code for codes in QUANTITY_CODES.values() for code in codes)
CORE_FIELDS = (
    "temperature",
    "wind_speed",
    "wind_direction",
    "precipitation",
    "precipitation_text",
    "cloud_cover",
    "condition",
    "pressure",
    "relative_humidity",
    "visibility",
)
FULL_FIELDS = CORE_FIELDS + ("dew_point", "wind_gust")
COMPASS_8 = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")
COMPASS_16 = (
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
)
PRECIPITATION_KINDS = {
    "en": {
        "fog_drizzle": "Fog/drizzle",
        "drizzle": "Drizzle",
        "rain": "Rain",
        "freezing_rain": "Freezing rain",
        "freezing_drizzle": "Freezing drizzle",
        "snow": "Snow",
        "rain_showers": "Rain showers",
        "sleet_showers": "Sleet showers",
        "snow_showers": "Snow showers",
        "hail_showers": "Graupel/hail showers",
        "thunderstorm": "Thunderstorm",
        "showers": "Showers",
        "precipitation": "Precipitation",
    },
    "de": {
        "fog_drizzle": "Nebel/Niesel",
        "drizzle": "Nieselregen",
        "rain": "Regen",
        "freezing_rain": "gefrierender Regen",
        "freezing_drizzle": "gefrierender Niesel",
        "snow": "Schnee",
        "rain_showers": "Regenschauer",
        "sleet_showers": "Schneeregenschauer",
        "snow_showers": "Schneeschauer",
        "hail_showers": "Graupel/Hagelschauer",
        "thunderstorm": "Gewitter",
        "showers": "Schauer",
        "precipitation": "Niederschlag",
    },
}
INTENSITY_LABELS = {
    "en": ("light", "moderate", "heavy"),
    "de": ("leicht", "mäßig", "stark"),
}
NO_PRECIPITATION = {"en": "no precipitation", "de": "kein Niederschlag"}


class StationMissingError(ValueError):
    """Raised when a run is requested without a station identifier."""


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ForecastConfig:
    station: str = ""
    source_url: str = DEFAULT_SOURCE_URL
    output_celsius: bool = True
    output_hectopascal: bool = True
    output_wind_kmh: bool = True
    output_visibility_km: bool = True
    compact: bool = False
    wind_direction_mode: str = "degrees"
    only_future: bool = False
    horizon_hours: float = 0.0
    allow_stale: bool = True
    diagnostic: bool = False
    language: str = "en"
    timeout_seconds: float = FETCH_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.wind_direction_mode not in WIND_DIRECTION_MODES:
            raise ValueError(f"Unknown wind_direction_mode: {self.wind_direction_mode}")
        if self.language not in LANGUAGES:
            raise ValueError(f"Unknown language: {self.language}")
        if self.horizon_hours < 0:
            raise ValueError(f"horizon_hours must not be negative: {self.horizon_hours}")

    @classmethod
    def from_env(cls) -> "ForecastConfig":
        return cls(
            station=os.getenv("MOSMIX_STATION", ""),
            source_url=os.getenv("MOSMIX_SOURCE_URL", "").strip() or DEFAULT_SOURCE_URL,
            output_celsius=_env_flag("MOSMIX_OUTPUT_CELSIUS", True),
            output_hectopascal=_env_flag("MOSMIX_OUTPUT_HECTOPASCAL", True),
            output_wind_kmh=_env_flag("MOSMIX_OUTPUT_WIND_KMH", True),
            output_visibility_km=_env_flag("MOSMIX_OUTPUT_VISIBILITY_KM", True),
            compact=_env_flag("MOSMIX_COMPACT", False),
            wind_direction_mode=os.getenv("MOSMIX_WIND_DIRECTION_MODE", "degrees").strip() or "degrees",
            only_future=_env_flag("MOSMIX_ONLY_FUTURE", False),
            horizon_hours=float(os.getenv("MOSMIX_HORIZON_HOURS", "0") or 0),
            allow_stale=_env_flag("MOSMIX_ALLOW_STALE", True),
            diagnostic=_env_flag("MOSMIX_DIAGNOSTIC", False),
            language=os.getenv("MOSMIX_LANGUAGE", "en").strip() or "en",
            timeout_seconds=FETCH_TIMEOUT_SECONDS,
        )

    @property
    def normalized_station(self) -> str:
        return str(self.station or "").strip().upper()

    def url_for(self, station: str) -> str:
        return self.source_url.strip().replace("{station}", quote(station, safe=""))

    def replace(self, **overrides: object) -> "ForecastConfig":
        """Copy with every override that is not ``None`` applied."""
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def output_options(self) -> Dict[str, object]:
        return {
            "output_celsius": self.output_celsius,
            "output_hectopascal": self.output_hectopascal,
            "output_wind_kmh": self.output_wind_kmh,
            "output_visibility_km": self.output_visibility_km,
            "compact": self.compact,
            "wind_direction_mode": self.wind_direction_mode,
            "only_future": self.only_future,
            "horizon_hours": self.horizon_hours,
        }


@dataclass(frozen=True)
class ForecastRecord:
    timestamp: datetime
    temperature: float | None = None
    dew_point: float | None = None
    pressure: float | None = None
    wind_speed: float | None = None
    wind_gust: float | None = None
    wind_direction: float | None = None
    relative_humidity: float | None = None
    visibility: float | None = None
    cloud_cover: float | None = None
    precipitation: float | None = None
    condition: str | None = None
    precipitation_text: str | None = None
    wind_cardinal: str | None = None
    native: Dict[str, float | None] = field(default_factory=dict)
    extras: Dict[str, float | None] = field(default_factory=dict)
    compact: bool = False
    wind_direction_mode: str = "degrees"

    def to_dict(self) -> Dict[str, object]:
        instant = self.timestamp.astimezone(timezone.utc)
        payload: Dict[str, object] = {
            "ts": int(round(instant.timestamp() * 1000)),
            "iso": instant.isoformat().replace("+00:00", "Z"),
        }
        for name in CORE_FIELDS if self.compact else FULL_FIELDS:
            payload[name] = getattr(self, name)
        if self.wind_direction_mode != "degrees":
            payload["wind_cardinal"] = self.wind_cardinal
        if not self.compact:
            payload.update(self.native)
            payload.update(self.extras)
        return payload


@dataclass(frozen=True)
class ForecastResult:
    records: Tuple[ForecastRecord, ...]
    station: str | None
    url: str | None
    station_name: str | None = None
    parameter_codes: Tuple[str, ...] = ()
    strategy: str | None = None
    stale: bool = False
    error: str | None = None
    options: Dict[str, object] = field(default_factory=dict)
    diagnostics: Dict[str, int] | None = None

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def empty(cls, station: str | None, url: str | None, error: str, options: Dict[str, object] | None = None) -> "ForecastResult":
        return cls(records=(), station=station, url=url, error=error, options=dict(options or {}))

    def as_stale(self, url: str | None = None, error: str | None = None) -> "ForecastResult":
        return dataclasses.replace(self, stale=True, url=url or self.url, error=error)

    def to_dict(self) -> Dict[str, object]:
        meta: Dict[str, object] = {
            "url": self.url,
            "count": self.count,
            "stale": self.stale,
            "station_name": self.station_name,
            "parameters": list(self.parameter_codes),
            "strategy": self.strategy,
            **self.options,
        }
        if self.error is not None:
            meta["error"] = self.error
        if self.diagnostics is not None:
            meta["diagnostics"] = dict(self.diagnostics)
        return {
            "payload": [record.to_dict() for record in self.records],
            "station": {"id": self.station, "name": self.station_name},
            "_meta": meta,
        }


# Derived quantities ---------------------------------------------------------
def convert_temperature(values: np.ndarray) -> np.ndarray:
    return np.round(np.asarray(values, dtype=np.float64) - KELVIN_OFFSET, 2)


def convert_wind_speed(values: np.ndarray) -> np.ndarray:
    return np.round(np.asarray(values, dtype=np.float64) * MS_TO_KMH, 1)


def convert_pressure(values: np.ndarray) -> np.ndarray:
    return np.round(np.asarray(values, dtype=np.float64) / 100.0)


def convert_visibility(values: np.ndarray) -> np.ndarray:
    return np.round(np.asarray(values, dtype=np.float64) / 1000.0, 1)


def magnus_relative_humidity(temperature_c: np.ndarray, dew_point_c: np.ndarray) -> np.ndarray:
    """Relative humidity in whole percent from Celsius T and Td (Magnus-Tetens)."""
    t = np.asarray(temperature_c, dtype=np.float64)
    td = np.asarray(dew_point_c, dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        gamma_t = MAGNUS_A * t / (MAGNUS_B + t)
        gamma_td = MAGNUS_A * td / (MAGNUS_B + td)
        rh = 100.0 * np.exp(gamma_td - gamma_t)
    rh = np.where(np.isfinite(rh), rh, np.nan)
    return np.round(np.clip(rh, 0.0, 100.0))


def cardinal_direction(degrees: float | None, sectors: int = 8) -> str | None:
    """Compass label for a bearing on an 8- or 16-point rose.

    Bearings round up into the next sector (``ceil(deg / width)``), not to the
    nearest one: 10 is NE on 8 points and 100 is ESE on 16 points. Only exact
    multiples of the sector width keep their own label.
    """
    if degrees is None or not math.isfinite(degrees):
        return None
    labels = COMPASS_16 if sectors == 16 else COMPASS_8
    width = 360.0 / len(labels)
    index = math.ceil((degrees % 360.0) / width) % len(labels)
    return labels[index]


def _precipitation_kind(condition: str | None) -> str:
    try:
        ww = int(float(condition))
    except (TypeError, ValueError):
        return "precipitation"
    if 45 <= ww <= 49:
        return "fog_drizzle"
    if 50 <= ww <= 55:
        return "drizzle"
    if 56 <= ww <= 59:
        return "rain"
    if ww in (66, 67):
        return "freezing_rain"
    if ww in (68, 69):
        return "freezing_drizzle"
    if 60 <= ww <= 65:
        return "rain"
    if 70 <= ww <= 79:
        return "snow"
    if 80 <= ww <= 82:
        return "rain_showers"
    if 83 <= ww <= 84:
        return "sleet_showers"
    if 85 <= ww <= 86:
        return "snow_showers"
    if 87 <= ww <= 89:
        return "hail_showers"
    if 95 <= ww <= 99:
        return "thunderstorm"
    if 90 <= ww <= 94:
        return "showers"
    return "precipitation"


def precipitation_intensity(rate: float, language: str = "en") -> str:
    light, moderate, heavy = INTENSITY_LABELS[language]
    if rate < 0.3:
        return light
    if rate < 1.0:
        return moderate
    return heavy


def describe_precipitation(rate: float | None, condition: str | None = None, language: str = "en") -> str:
    if rate is None or not math.isfinite(rate) or rate <= 0:
        return NO_PRECIPITATION[language]
    kind = PRECIPITATION_KINDS[language][_precipitation_kind(condition)]
    return f"{kind} ({precipitation_intensity(rate, language)}) {rate:.1f} mm/h"


# Temporal filters -----------------------------------------------------------
def _epochs(axis: TimeAxis) -> np.ndarray:
    return np.array([instant.timestamp() for instant in axis.instants], dtype=np.float64)


def _slice(axis: TimeAxis, parameters: ParameterSet, start: int, stop: int) -> Tuple[TimeAxis, ParameterSet]:
    sliced = {code: series.with_values(series.values[start:stop].copy()) for code, series in parameters.items()}
    return axis.take(start, stop), sliced


def filter_future(axis: TimeAxis, parameters: ParameterSet, now: datetime) -> Tuple[TimeAxis, ParameterSet]:
    start = int(np.searchsorted(_epochs(axis), now.timestamp(), side="left"))
    return _slice(axis, parameters, start, len(axis))


def filter_horizon(
    axis: TimeAxis,
    parameters: ParameterSet,
    now: datetime,
    hours: float,
) -> Tuple[TimeAxis, ParameterSet]:
    """Clip to ``[now, now + hours]``.

    When nothing falls inside the window but later instants exist, the
    earliest ``ceil(hours)`` future instants are kept instead.
    """
    if hours <= 0:
        return axis, parameters
    epochs = _epochs(axis)
    start = int(np.searchsorted(epochs, now.timestamp(), side="left"))
    until = (now + timedelta(hours=hours)).timestamp()
    stop = int(np.searchsorted(epochs, until, side="right"))
    if stop > start:
        return _slice(axis, parameters, start, stop)
    if start < len(epochs):
        return _slice(axis, parameters, start, min(len(epochs), start + math.ceil(hours)))
    return _slice(axis, parameters, start, start)


def apply_filters(
    axis: TimeAxis,
    parameters: ParameterSet,
    config: ForecastConfig,
    now: datetime,
) -> Tuple[TimeAxis, ParameterSet]:
    if config.only_future:
        axis, parameters = filter_future(axis, parameters, now)
    if config.horizon_hours > 0:
        axis, parameters = filter_horizon(axis, parameters, now, config.horizon_hours)
    return axis, parameters


# Normalization --------------------------------------------------------------
def _pick(parameters: ParameterSet, codes: Tuple[str, ...], length: int) -> np.ndarray:
    picked = np.full(length, np.nan)
    for code in codes:
        series = parameters.get(code)
        if series is None:
            continue
        picked = np.where(np.isnan(picked), series.values[:length], picked)
    return picked


def _scalar(value: float) -> float | None:
    value = float(value)
    return value if math.isfinite(value) else None


def _condition(value: float) -> str | None:
    value = float(value)
    if not math.isfinite(value):
        return None
    return str(int(value)) if value.is_integer() else str(value)


def normalize_records(
    axis: TimeAxis,
    parameters: ParameterSet,
    config: ForecastConfig,
) -> List[ForecastRecord]:
    length = len(axis)
    raw = {name: _pick(parameters, codes, length) for name, codes in QUANTITY_CODES.items()}

    humidity = raw["relative_humidity"]
    derived = magnus_relative_humidity(raw["temperature"] - KELVIN_OFFSET, raw["dew_point"] - KELVIN_OFFSET)
    humidity = np.where(np.isnan(humidity), derived, humidity)

    converted = dict(raw)
    native_names: Dict[str, str] = {}
    if config.output_celsius:
        converted["temperature"] = convert_temperature(raw["temperature"])
        converted["dew_point"] = convert_temperature(raw["dew_point"])
        native_names["temperature"] = "temperature_k"
    if config.output_hectopascal:
        converted["pressure"] = convert_pressure(raw["pressure"])
        native_names["pressure"] = "pressure_pa"
    if config.output_wind_kmh:
        converted["wind_speed"] = convert_wind_speed(raw["wind_speed"])
        converted["wind_gust"] = convert_wind_speed(raw["wind_gust"])
        native_names["wind_speed"] = "wind_ms"
    if config.output_visibility_km:
        converted["visibility"] = convert_visibility(raw["visibility"])
        native_names["visibility"] = "visibility_m"

    extra_codes = [] if config.compact else sorted(code for code in parameters if code not in MAPPED_CODES)
    sectors = 0 if config.wind_direction_mode == "degrees" else int(config.wind_direction_mode)

    records: List[ForecastRecord] = []
    for i, instant in enumerate(axis.instants):
        condition = _condition(raw["condition"][i])
        rate = _scalar(raw["precipitation"][i])
        direction = _scalar(raw["wind_direction"][i])
        native: Dict[str, float | None] = {}
        if not config.compact:
            native = {key: _scalar(raw[name][i]) for name, key in native_names.items()}
        records.append(
            ForecastRecord(
                timestamp=instant,
                temperature=_scalar(converted["temperature"][i]),
                dew_point=_scalar(converted["dew_point"][i]),
                pressure=_scalar(converted["pressure"][i]),
                wind_speed=_scalar(converted["wind_speed"][i]),
                wind_gust=_scalar(converted["wind_gust"][i]),
                wind_direction=direction,
                relative_humidity=_scalar(humidity[i]),
                visibility=_scalar(converted["visibility"][i]),
                cloud_cover=_scalar(raw["cloud_cover"][i]),
                precipitation=rate,
                condition=condition,
                precipitation_text=describe_precipitation(rate, condition, config.language),
                wind_cardinal=cardinal_direction(direction, sectors) if sectors else None,
                native=native,
                extras={code: _scalar(parameters[code].values[i]) for code in extra_codes},
                compact=config.compact,
                wind_direction_mode=config.wind_direction_mode,
            )
        )
    return records


def build_forecast(
    bulletin: Bulletin,
    config: ForecastConfig,
    station: str | None,
    url: str | None,
    now: datetime,
) -> ForecastResult:
    axis, parameters = apply_filters(bulletin.time_axis, bulletin.parameters, config, now)
    records = normalize_records(axis, parameters, config)
    return ForecastResult(
        records=tuple(records),
        station=station,
        url=url,
        station_name=bulletin.station_name,
        parameter_codes=tuple(sorted(bulletin.parameters)),
        strategy=bulletin.strategy,
        options=config.output_options(),
        diagnostics=dict(bulletin.strategy_counts) if config.diagnostic else None,
    )


# Retrieval ------------------------------------------------------------------
def fetch_bytes(
    url: str,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    retries: int = FETCH_RETRIES,
    backoff_seconds: float = FETCH_BACKOFF_SECONDS,
) -> bytes:
    last_exc: Exception | None = None
    for attempt in range(1, retries + 1):
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            return response.content
        except requests.RequestException as exc:
            last_exc = exc
            LOGGER.warning("Bulletin fetch attempt %d/%d failed url=%s: %s", attempt, retries, url, exc)
            if attempt >= retries:
                break
            time.sleep(backoff_seconds)

    raise BulletinFetchError(
        f"Bulletin fetch failed url={url} after {retries} attempts: {last_exc}"
    ) from last_exc


# Cache & orchestration ------------------------------------------------------
@dataclass(frozen=True)
class CacheEntry:
    station: str
    result: ForecastResult
    captured_at: datetime


class FreshnessCache:
    """Last successful result per station. Entries never expire."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._guard = threading.Lock()

    def get(self, station: str) -> CacheEntry | None:
        with self._guard:
            return self._entries.get(station)

    def put(self, station: str, result: ForecastResult, captured_at: datetime) -> CacheEntry:
        entry = CacheEntry(station=station, result=result, captured_at=captured_at)
        with self._guard:
            self._entries[station] = entry
        return entry

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()

    def __contains__(self, station: object) -> bool:
        with self._guard:
            return station in self._entries


_STOP = object()


class RefreshOrchestrator:
    """Runs the fetch-parse-normalize pipeline on demand or on an interval.

    Manual triggers and the timer both push configs onto one queue drained by
    a single worker thread; ``run`` may also be called directly. Cache writes
    are last-write-wins.
    """

    def __init__(
        self,
        config: ForecastConfig | None = None,
        cache: FreshnessCache | None = None,
        fetch: Callable[..., bytes] = fetch_bytes,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or ForecastConfig.from_env()
        self._cache = cache if cache is not None else FreshnessCache()
        self._fetch = fetch
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._listeners: List[Callable[[ForecastResult], None]] = []
        self._emitted: Dict[str, ForecastResult] = {}
        self._states: Dict[str, str] = {}
        self._state_guard = threading.Lock()
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._worker: threading.Thread | None = None
        self._worker_guard = threading.Lock()
        self._timer_thread: threading.Thread | None = None
        self._timer_stop = threading.Event()
        self._timer_guard = threading.Lock()
        self._interval_seconds = 0.0
        self._closed = False
        self._logged_codes_once = False

    @property
    def config(self) -> ForecastConfig:
        return self._config

    @property
    def cache(self) -> FreshnessCache:
        return self._cache

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    def add_listener(self, callback: Callable[[ForecastResult], None]) -> None:
        self._listeners.append(callback)

    def state(self, station: str) -> str:
        with self._state_guard:
            return self._states.get(station.strip().upper(), "idle")

    def latest(self, station: str) -> ForecastResult | None:
        with self._state_guard:
            return self._emitted.get(station.strip().upper())

    def run(self, config: ForecastConfig | None = None) -> ForecastResult:
        cfg = config or self._config
        station = cfg.normalized_station
        if not station:
            raise StationMissingError("No station configured")
        url = cfg.url_for(station)

        self._set_state(station, "fetching")
        try:
            try:
                result = self._extract(cfg, station, url)
            except BulletinError as exc:
                self._set_state(station, "failed")
                result = self._recover(cfg, station, url, exc)
            else:
                self._cache.put(station, result, captured_at=self._clock())
                self._set_state(station, "succeeded")
                LOGGER.info(
                    "Forecast updated station=%s records=%d strategy=%s", station, result.count, result.strategy
                )
            self._emit(station, result)
        finally:
            self._set_state(station, "idle")
        return result

    def trigger(self, config: ForecastConfig | None = None) -> bool:
        if self._closed:
            return False
        self._ensure_worker()
        self._queue.put(config or self._config)
        LOGGER.debug("Queued forecast run station=%s", (config or self._config).normalized_station)
        return True

    def on_schedule(self, interval_seconds: float, config: ForecastConfig | None = None) -> None:
        """(Re)start the recurring trigger; an interval <= 0 stops it."""
        interval = max(0.0, float(interval_seconds))
        with self._timer_guard:
            if config is not None:
                self._config = config
            running = self._timer_thread is not None and self._timer_thread.is_alive()
            if running and interval == self._interval_seconds and config is None:
                return
            self._timer_stop.set()
            self._timer_thread = None
            self._interval_seconds = interval
            if interval <= 0 or self._closed:
                LOGGER.info("Auto refresh stopped")
                return
            stop = threading.Event()
            self._timer_stop = stop
            self._timer_thread = threading.Thread(
                target=self._timer_loop,
                args=(stop, interval),
                name="forecast-timer",
                daemon=True,
            )
            self._timer_thread.start()
            LOGGER.info("Auto refresh every %.0fs station=%s", interval, self._config.normalized_station)

    def shutdown(self) -> None:
        with self._timer_guard:
            self._closed = True
            self._timer_stop.set()
            self._timer_thread = None
            self._interval_seconds = 0.0
        self._queue.put(_STOP)
        LOGGER.info("Stopped forecast refresh workers")

    def _extract(self, cfg: ForecastConfig, station: str, url: str) -> ForecastResult:
        payload = self._fetch(url, timeout=cfg.timeout_seconds)
        text = extract_single_document(payload)
        bulletin = parse_bulletin(text, tz=REFERENCE_TIMEZONE, diagnostic=cfg.diagnostic)
        if not self._logged_codes_once:
            self._logged_codes_once = True
            LOGGER.info("Available parameter codes station=%s: %s", station, ", ".join(sorted(bulletin.parameters)))
        return build_forecast(bulletin, cfg, station=station, url=url, now=self._clock())

    def _recover(self, cfg: ForecastConfig, station: str, url: str, exc: BulletinError) -> ForecastResult:
        entry = self._cache.get(station)
        if cfg.allow_stale and entry is not None:
            LOGGER.warning(
                "Forecast run failed station=%s, serving stale result from %s: %s",
                station,
                entry.captured_at.isoformat(),
                exc,
            )
            return entry.result.as_stale(url=url, error=str(exc))
        LOGGER.error("Forecast run failed station=%s: %s", station, exc)
        return ForecastResult.empty(station=station, url=url, error=str(exc), options=cfg.output_options())

    def _emit(self, station: str, result: ForecastResult) -> None:
        with self._state_guard:
            self._emitted[station] = result
        for callback in list(self._listeners):
            try:
                callback(result)
            except Exception:
                LOGGER.exception("Forecast listener failed station=%s", station)

    def _set_state(self, station: str, state: str) -> None:
        with self._state_guard:
            self._states[station] = state

    def _ensure_worker(self) -> None:
        with self._worker_guard:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._worker_loop, name="forecast-refresh", daemon=True)
            self._worker.start()

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            try:
                self.run(item)
            except Exception:
                LOGGER.exception("Queued forecast run failed")

    def _timer_loop(self, stop: threading.Event, interval: float) -> None:
        while not stop.wait(interval):
            self.trigger()
