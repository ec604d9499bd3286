from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from forecast_data import ForecastConfig, RefreshOrchestrator, WIND_DIRECTION_MODES

AUTO_REFRESH_SECONDS = float(os.getenv("MOSMIX_AUTO_REFRESH_SECONDS", "0") or 0)
RUN_ON_STARTUP = os.getenv("MOSMIX_RUN_ON_STARTUP", "0").strip() == "1"


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("MOSMIX_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("mosmix_forecast")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    # Refresh runs happen on the worker and timer threads.
    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] [%(threadName)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("MOSMIX_LOG_FILE", "logs/mosmix_forecast.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="MOSMIX Forecast")


def _allowed_cors_origins() -> List[str]:
    """Browser origins allowed to read forecasts; none unless configured."""
    if os.getenv("MOSMIX_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("MOSMIX_CORS_ORIGINS", os.getenv("CORS_ALLOW_ORIGINS", ""))
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

orchestrator = RefreshOrchestrator()


def _query_value(value):
    # Endpoint functions are also called directly; unwrap unresolved Query defaults.
    if hasattr(value, "default"):
        return value.default
    return value


def _validate_wind_mode(value: str | None) -> str | None:
    value = _query_value(value)
    if value is None:
        return None
    mode = str(value).strip() or "degrees"
    if mode not in WIND_DIRECTION_MODES:
        raise HTTPException(status_code=400, detail=f"Unknown wind mode: {mode}")
    return mode


def _request_config(station: str | None, **overrides) -> ForecastConfig:
    station = _query_value(station)
    cleaned = {key: _query_value(value) for key, value in overrides.items()}
    return orchestrator.config.replace(station=(station or "").strip() or None, **cleaned)


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup")
    if AUTO_REFRESH_SECONDS > 0:
        orchestrator.on_schedule(AUTO_REFRESH_SECONDS)
    if RUN_ON_STARTUP and orchestrator.config.normalized_station:
        orchestrator.trigger()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    orchestrator.shutdown()


@app.get("/api/forecast")
def forecast(
    station: str = Query(""),
    only_future: bool | None = Query(None),
    hours: float | None = Query(None, ge=0),
    compact: bool | None = Query(None),
    wind: str | None = Query(None),
    allow_stale: bool | None = Query(None),
    diagnostic: bool | None = Query(None),
    lang: str | None = Query(None),
) -> Dict[str, object]:
    try:
        config = _request_config(
            station,
            only_future=only_future,
            horizon_hours=hours,
            compact=compact,
            wind_direction_mode=_validate_wind_mode(wind),
            allow_stale=allow_stale,
            diagnostic=diagnostic,
            language=lang,
        )
        result = orchestrator.run(config)
    except ValueError as exc:
        LOGGER.warning("Forecast request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("Forecast request runtime error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    LOGGER.debug(
        "Forecast served station=%s count=%d stale=%s error=%s",
        result.station,
        result.count,
        result.stale,
        result.error,
    )
    return result.to_dict()


@app.get("/api/forecast/latest")
def latest(station: str = Query(...)) -> Dict[str, object]:
    result = orchestrator.latest(str(_query_value(station) or ""))
    if result is None:
        raise HTTPException(status_code=404, detail=f"No forecast emitted yet for station: {station}")
    return result.to_dict()


@app.get("/api/refresh")
def refresh(station: str = Query("")) -> Dict[str, object]:
    try:
        config = _request_config(station)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not config.normalized_station:
        raise HTTPException(status_code=400, detail="No station configured")
    queued = orchestrator.trigger(config)
    LOGGER.debug("Refresh request station=%s queued=%s", config.normalized_station, queued)
    return {"ok": True, "queued": bool(queued)}


@app.get("/api/schedule")
def schedule(interval_seconds: float = Query(..., ge=0)) -> Dict[str, object]:
    interval_seconds = float(_query_value(interval_seconds))
    orchestrator.on_schedule(interval_seconds)
    return {
        "ok": True,
        "interval_seconds": orchestrator.interval_seconds,
        "station": orchestrator.config.normalized_station or None,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
