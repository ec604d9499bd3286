#!/usr/bin/env python3
from __future__ import annotations

import json
import sys

from forecast_data import QUANTITY_CODES, ForecastConfig, RefreshOrchestrator

CORE_QUANTITIES = ("temperature", "dew_point", "wind_speed", "wind_direction", "pressure", "precipitation")


def _inspect(orchestrator: RefreshOrchestrator, station: str) -> dict:
    config = orchestrator.config.replace(station=station, diagnostic=True, allow_stale=False)
    result = orchestrator.run(config)
    if not result.ok:
        return {"station": station, "status": "error", "error": result.error}

    found = set(result.parameter_codes)
    missing = [
        quantity
        for quantity in CORE_QUANTITIES
        if not any(code in found for code in QUANTITY_CODES[quantity])
    ]
    return {
        "station": station,
        "station_name": result.station_name,
        "status": "ok" if not missing else "incomplete",
        "strategy": result.strategy,
        "strategy_counts": result.diagnostics,
        "records": result.count,
        "parameters": len(found),
        "missing_quantities": missing,
    }


def main() -> None:
    stations = [arg.strip().upper() for arg in sys.argv[1:] if arg.strip()]
    if not stations:
        print("usage: inspect_bulletin.py STATION [STATION ...]", file=sys.stderr)
        sys.exit(2)

    orchestrator = RefreshOrchestrator(config=ForecastConfig.from_env())
    rows = [_inspect(orchestrator, station) for station in stations]
    problems = [row for row in rows if row["status"] != "ok"]
    print(f"total={len(rows)} problems={len(problems)}")
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
