import os
import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import numpy as np
import requests

from bulletin import BulletinFetchError, ParameterSeries, TimeAxis, extract_single_document, parse_bulletin
from bulletin_samples import MOSMIX_KML, make_kmz, mark_encrypted
from forecast_data import (
    ForecastConfig,
    FreshnessCache,
    RefreshOrchestrator,
    StationMissingError,
    build_forecast,
    cardinal_direction,
    convert_pressure,
    convert_temperature,
    convert_visibility,
    convert_wind_speed,
    describe_precipitation,
    fetch_bytes,
    filter_future,
    filter_horizon,
    magnus_relative_humidity,
    normalize_records,
)

NOW = datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)


def _axis(instants):
    return TimeAxis(instants=tuple(instants), positions=tuple(range(len(instants))), step_count=len(instants))


def _series(code, values):
    return ParameterSeries(code=code, values=np.array(values, dtype=np.float64))


def _mosmix_bulletin():
    return parse_bulletin(MOSMIX_KML)


class _FakeFetch:
    def __init__(self, payload=None) -> None:
        self.payload = payload if payload is not None else make_kmz(MOSMIX_KML)
        self.error = None
        self.urls = []

    def __call__(self, url, timeout=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.payload


class ConversionTests(unittest.TestCase):
    def test_unit_conversions(self):
        np.testing.assert_allclose(convert_temperature(np.array([300.0])), [26.85])
        np.testing.assert_allclose(convert_wind_speed(np.array([10.0])), [36.0])
        np.testing.assert_allclose(convert_pressure(np.array([101300.0])), [1013.0])
        np.testing.assert_allclose(convert_visibility(np.array([5000.0])), [5.0])

    def test_missing_values_stay_missing(self):
        self.assertTrue(np.isnan(convert_temperature(np.array([np.nan]))[0]))

    def test_relative_humidity_from_dew_point(self):
        rh = magnus_relative_humidity(np.array([10.0, 12.0]), np.array([5.0, 12.0]))
        self.assertGreaterEqual(rh[0], 65.0)
        self.assertLessEqual(rh[0], 72.0)
        self.assertEqual(rh[1], 100.0)

    def test_relative_humidity_is_clipped(self):
        rh = magnus_relative_humidity(np.array([5.0]), np.array([8.0]))
        self.assertEqual(rh[0], 100.0)

    def test_cardinal_direction(self):
        self.assertEqual(cardinal_direction(0.0, 8), "N")
        self.assertEqual(cardinal_direction(360.0, 8), "N")
        self.assertEqual(cardinal_direction(225.0, 8), "SW")
        self.assertEqual(cardinal_direction(100.0, 16), "ESE")
        self.assertEqual(cardinal_direction(10.0, 8), "NE")
        self.assertEqual(cardinal_direction(91.0, 8), "SE")
        self.assertEqual(cardinal_direction(90.0, 8), "E")
        self.assertIsNone(cardinal_direction(None, 8))
        self.assertIsNone(cardinal_direction(float("nan"), 16))

    def test_precipitation_text(self):
        self.assertEqual(describe_precipitation(0.0, "0"), "no precipitation")
        self.assertEqual(describe_precipitation(None, "61"), "no precipitation")
        self.assertEqual(describe_precipitation(0.1, "71"), "Snow (light) 0.1 mm/h")
        self.assertEqual(describe_precipitation(0.5, "61"), "Rain (moderate) 0.5 mm/h")
        self.assertEqual(describe_precipitation(2.1, "95"), "Thunderstorm (heavy) 2.1 mm/h")
        self.assertEqual(describe_precipitation(1.0, None), "Precipitation (heavy) 1.0 mm/h")
        self.assertEqual(describe_precipitation(0.5, "61", language="de"), "Regen (mäßig) 0.5 mm/h")
        self.assertEqual(describe_precipitation(0.0, None, language="de"), "kein Niederschlag")


class FilterTests(unittest.TestCase):
    def test_only_future_drops_past_instants(self):
        now = datetime(2026, 10, 16, 12, tzinfo=timezone.utc)
        axis = _axis([now - timedelta(hours=1), now + timedelta(hours=1), now + timedelta(hours=2)])
        kept_axis, kept = filter_future(axis, {"TTT": _series("TTT", [1, 2, 3])}, now)
        self.assertEqual(kept_axis.instants, axis.instants[1:])
        np.testing.assert_allclose(kept["TTT"].values, [2.0, 3.0])

    def test_horizon_clips_window(self):
        now = datetime(2026, 10, 16, 12, tzinfo=timezone.utc)
        axis = _axis([now + timedelta(hours=h) for h in range(1, 6)])
        kept_axis, kept = filter_horizon(axis, {"TTT": _series("TTT", [1, 2, 3, 4, 5])}, now, 2)
        self.assertEqual(len(kept_axis), 2)
        np.testing.assert_allclose(kept["TTT"].values, [1.0, 2.0])

    def test_horizon_falls_back_to_earliest_future_instants(self):
        now = datetime(2026, 10, 16, 12, tzinfo=timezone.utc)
        axis = _axis([now + timedelta(hours=h) for h in (3, 4, 5)])
        kept_axis, _ = filter_horizon(axis, {}, now, 1.5)
        self.assertEqual(kept_axis.instants, axis.instants[:2])

    def test_horizon_with_only_past_instants_is_empty(self):
        now = datetime(2026, 10, 16, 12, tzinfo=timezone.utc)
        axis = _axis([now - timedelta(hours=2), now - timedelta(hours=1)])
        kept_axis, kept = filter_horizon(axis, {"TTT": _series("TTT", [1, 2])}, now, 3)
        self.assertEqual(len(kept_axis), 0)
        self.assertEqual(kept["TTT"].values.size, 0)

    def test_zero_horizon_is_a_no_op(self):
        axis = _axis([NOW])
        kept_axis, _ = filter_horizon(axis, {}, NOW + timedelta(days=1), 0)
        self.assertIs(kept_axis, axis)


class NormalizationTests(unittest.TestCase):
    def test_mosmix_records(self):
        result = build_forecast(_mosmix_bulletin(), ForecastConfig(station="10637"), "10637", "u", NOW)
        self.assertEqual(result.count, 3)
        first, second, third = result.records
        self.assertEqual(first.temperature, 10.0)
        self.assertIsNone(third.temperature)
        self.assertEqual(first.dew_point, 5.0)
        self.assertEqual(first.wind_speed, 36.0)
        self.assertEqual(first.pressure, 1013.0)
        self.assertIsNone(third.pressure)
        self.assertEqual(first.visibility, 5.0)
        self.assertEqual(second.cloud_cover, 75.0)
        self.assertEqual(second.condition, "61")
        self.assertTrue(65.0 <= first.relative_humidity <= 72.0)
        self.assertIsNone(third.relative_humidity)
        self.assertEqual(
            [record.precipitation_text for record in result.records],
            ["no precipitation", "Rain (moderate) 0.5 mm/h", "Thunderstorm (heavy) 2.1 mm/h"],
        )
        self.assertEqual(result.station_name, "FRANKFURT/M")
        self.assertEqual(result.strategy, "forecast-element")
        self.assertIn("SunD1", result.parameter_codes)
        self.assertIsNone(result.diagnostics)

    def test_records_are_sorted_and_serialized_in_utc(self):
        result = build_forecast(_mosmix_bulletin(), ForecastConfig(), "10637", "u", NOW)
        stamps = [record.timestamp for record in result.records]
        self.assertEqual(stamps, sorted(stamps))
        row = result.records[0].to_dict()
        self.assertEqual(row["iso"], "2026-10-16T10:00:00Z")
        expected_ms = int(datetime(2026, 10, 16, 10, tzinfo=timezone.utc).timestamp() * 1000)
        self.assertEqual(row["ts"], expected_ms)

    def test_full_rows_carry_native_values_and_extra_codes(self):
        result = build_forecast(_mosmix_bulletin(), ForecastConfig(), "10637", "u", NOW)
        row = result.records[1].to_dict()
        self.assertAlmostEqual(row["temperature_k"], 284.15)
        self.assertEqual(row["pressure_pa"], 101325.0)
        self.assertEqual(row["wind_ms"], 5.0)
        self.assertEqual(row["visibility_m"], 12000.0)
        self.assertEqual(row["SunD1"], 1800.0)
        self.assertIn("dew_point", row)
        self.assertIn("wind_gust", row)
        self.assertIsNone(row["wind_gust"])
        self.assertNotIn("wind_cardinal", row)

    def test_compact_rows_only_carry_core_fields(self):
        result = build_forecast(_mosmix_bulletin(), ForecastConfig(compact=True), "10637", "u", NOW)
        row = result.records[0].to_dict()
        self.assertNotIn("temperature_k", row)
        self.assertNotIn("SunD1", row)
        self.assertNotIn("dew_point", row)
        self.assertIn("precipitation_text", row)
        self.assertIn("relative_humidity", row)

    def test_wind_cardinal_label(self):
        result = build_forecast(_mosmix_bulletin(), ForecastConfig(wind_direction_mode="16"), "10637", "u", NOW)
        rows = [record.to_dict() for record in result.records]
        self.assertEqual([row["wind_cardinal"] for row in rows], ["N", "SW", "ESE"])
        self.assertEqual(rows[2]["wind_direction"], 100.0)

    def test_native_units_when_conversion_disabled(self):
        config = ForecastConfig(output_celsius=False, output_hectopascal=False, output_wind_kmh=False)
        result = build_forecast(_mosmix_bulletin(), config, "10637", "u", NOW)
        row = result.records[0].to_dict()
        self.assertAlmostEqual(row["temperature"], 283.15)
        self.assertEqual(row["pressure"], 101300.0)
        self.assertEqual(row["wind_speed"], 10.0)
        self.assertNotIn("temperature_k", row)
        self.assertEqual(row["visibility_m"], 5000.0)
        self.assertTrue(65.0 <= row["relative_humidity"] <= 72.0)

    def test_german_labels(self):
        result = build_forecast(_mosmix_bulletin(), ForecastConfig(language="de"), "10637", "u", NOW)
        self.assertEqual(result.records[2].precipitation_text, "Gewitter (stark) 2.1 mm/h")

    def test_reported_humidity_wins_over_derived(self):
        axis = _axis([NOW, NOW + timedelta(hours=1)])
        parameters = {
            "TTT": _series("TTT", [283.15, 283.15]),
            "Td": _series("Td", [278.15, 283.15]),
            "RELH": _series("RELH", [55.0, np.nan]),
        }
        records = normalize_records(axis, parameters, ForecastConfig())
        self.assertEqual(records[0].relative_humidity, 55.0)
        self.assertEqual(records[1].relative_humidity, 100.0)

    def test_precipitation_codes_fall_back_per_timestep(self):
        axis = _axis([NOW, NOW + timedelta(hours=1)])
        parameters = {
            "RR1c": _series("RR1c", [0.4, np.nan]),
            "RR": _series("RR", [9.0, 1.5]),
        }
        records = normalize_records(axis, parameters, ForecastConfig())
        self.assertEqual([record.precipitation for record in records], [0.4, 1.5])

    def test_only_future_filter_applies_before_normalization(self):
        now = datetime(2026, 10, 16, 10, 30, tzinfo=timezone.utc)
        result = build_forecast(_mosmix_bulletin(), ForecastConfig(only_future=True), "10637", "u", now)
        self.assertEqual(result.count, 2)
        self.assertEqual(result.records[0].wind_direction, 225.0)

    def test_build_is_idempotent(self):
        bulletin = _mosmix_bulletin()
        config = ForecastConfig(wind_direction_mode="8")
        first = build_forecast(bulletin, config, "10637", "u", NOW).to_dict()
        second = build_forecast(bulletin, config, "10637", "u", NOW).to_dict()
        self.assertEqual(first, second)


class ConfigTests(unittest.TestCase):
    def test_invalid_values_are_rejected(self):
        with self.assertRaises(ValueError):
            ForecastConfig(wind_direction_mode="12")
        with self.assertRaises(ValueError):
            ForecastConfig(language="fr")
        with self.assertRaises(ValueError):
            ForecastConfig(horizon_hours=-1)

    def test_replace_ignores_unset_overrides(self):
        config = ForecastConfig(station="10637", compact=True).replace(compact=None, only_future=True)
        self.assertTrue(config.compact)
        self.assertTrue(config.only_future)

    def test_station_is_normalized_into_url(self):
        config = ForecastConfig(station=" p0489 ")
        self.assertEqual(config.normalized_station, "P0489")
        self.assertTrue(config.url_for("P0489").endswith("/P0489/kml/MOSMIX_L_LATEST_P0489.kmz"))

    def test_from_env(self):
        env = {
            "MOSMIX_STATION": "10637",
            "MOSMIX_COMPACT": "1",
            "MOSMIX_OUTPUT_CELSIUS": "false",
            "MOSMIX_WIND_DIRECTION_MODE": "16",
            "MOSMIX_HORIZON_HOURS": "6",
        }
        with patch.dict(os.environ, env):
            config = ForecastConfig.from_env()
        self.assertEqual(config.station, "10637")
        self.assertTrue(config.compact)
        self.assertFalse(config.output_celsius)
        self.assertTrue(config.output_hectopascal)
        self.assertEqual(config.wind_direction_mode, "16")
        self.assertEqual(config.horizon_hours, 6.0)


class FetchTests(unittest.TestCase):
    def test_fetch_retries_then_succeeds(self):
        response = MagicMock()
        response.content = b"payload"
        with patch("forecast_data.requests.get", side_effect=[requests.ConnectionError("boom"), response]) as mocked_get:
            with patch("forecast_data.time.sleep") as mocked_sleep:
                payload = fetch_bytes("https://example.invalid/x.kmz", timeout=1, retries=3, backoff_seconds=0.25)
        self.assertEqual(payload, b"payload")
        self.assertEqual(mocked_get.call_count, 2)
        mocked_sleep.assert_called_once_with(0.25)

    def test_fetch_raises_after_last_attempt(self):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
        with patch("forecast_data.requests.get", return_value=response) as mocked_get:
            with patch("forecast_data.time.sleep") as mocked_sleep:
                with self.assertRaises(BulletinFetchError) as ctx:
                    fetch_bytes("https://example.invalid/x.kmz", retries=3)
        self.assertEqual(mocked_get.call_count, 3)
        self.assertEqual(mocked_sleep.call_count, 2)
        self.assertIn("404", str(ctx.exception))


class OrchestratorTests(unittest.TestCase):
    def _orchestrator(self, fetch=None, **config):
        config.setdefault("station", "10637")
        orchestrator = RefreshOrchestrator(
            config=ForecastConfig(**config),
            cache=FreshnessCache(),
            fetch=fetch or _FakeFetch(),
            clock=lambda: NOW,
        )
        self.addCleanup(orchestrator.shutdown)
        return orchestrator

    def test_run_emits_and_caches(self):
        fetch = _FakeFetch()
        orchestrator = self._orchestrator(fetch)
        result = orchestrator.run()
        self.assertTrue(result.ok)
        self.assertFalse(result.stale)
        self.assertEqual(result.count, 3)
        self.assertEqual(result.station, "10637")
        self.assertTrue(fetch.urls[0].endswith("MOSMIX_L_LATEST_10637.kmz"))
        self.assertIn("10637", orchestrator.cache)
        self.assertIs(orchestrator.latest("10637"), result)
        self.assertEqual(orchestrator.state("10637"), "idle")

    def test_missing_station_raises(self):
        orchestrator = self._orchestrator(station="")
        with self.assertRaises(StationMissingError):
            orchestrator.run()

    def test_failure_serves_stale_result(self):
        fetch = _FakeFetch()
        orchestrator = self._orchestrator(fetch)
        fresh = orchestrator.run()
        fetch.error = BulletinFetchError("upstream down")
        with self.assertLogs("mosmix_forecast.forecast_data", level="WARNING"):
            stale = orchestrator.run()
        self.assertTrue(stale.stale)
        self.assertEqual(stale.records, fresh.records)
        self.assertEqual(stale.error, "upstream down")
        self.assertTrue(stale.to_dict()["_meta"]["stale"])

    def test_unusable_documents_serve_stale_result(self):
        fetch = _FakeFetch()
        orchestrator = self._orchestrator(fetch)
        fresh = orchestrator.run()
        for payload in (make_kmz("<kml><Document></kml>"), make_kmz("<kml><Document/></kml>")):
            fetch.payload = payload
            with self.assertLogs("mosmix_forecast.forecast_data", level="WARNING"):
                stale = orchestrator.run()
            self.assertTrue(stale.stale)
            self.assertEqual(stale.records, fresh.records)
            self.assertIsNotNone(stale.error)

    def test_encrypted_archive_serves_stale_result(self):
        fetch = _FakeFetch()
        orchestrator = self._orchestrator(fetch)
        fresh = orchestrator.run()
        fetch.payload = mark_encrypted(make_kmz(MOSMIX_KML))
        with self.assertLogs("mosmix_forecast.forecast_data", level="WARNING"):
            stale = orchestrator.run()
        self.assertTrue(stale.stale)
        self.assertEqual(stale.records, fresh.records)
        self.assertIn("encrypted", stale.error)
        self.assertEqual(orchestrator.state("10637"), "idle")

    def test_unexpected_error_propagates_and_resets_state(self):
        fetch = _FakeFetch()
        fetch.error = KeyError("boom")
        orchestrator = self._orchestrator(fetch)
        with self.assertRaises(KeyError):
            orchestrator.run()
        self.assertEqual(orchestrator.state("10637"), "idle")
        self.assertIsNone(orchestrator.latest("10637"))

    def test_failure_without_stale_fallback_is_empty(self):
        fetch = _FakeFetch()
        orchestrator = self._orchestrator(fetch, allow_stale=False)
        orchestrator.run()
        fetch.error = BulletinFetchError("upstream down")
        with self.assertLogs("mosmix_forecast.forecast_data", level="ERROR"):
            result = orchestrator.run()
        self.assertFalse(result.stale)
        self.assertEqual(result.count, 0)
        self.assertEqual(result.to_dict()["_meta"]["error"], "upstream down")

    def test_unreadable_archive_without_cache_is_empty(self):
        orchestrator = self._orchestrator(_FakeFetch(payload=b"<html>gone</html>"))
        with self.assertLogs("mosmix_forecast.forecast_data", level="ERROR"):
            result = orchestrator.run()
        self.assertFalse(result.ok)
        self.assertEqual(result.records, ())

    def test_diagnostic_run_reports_strategy_counts(self):
        result = self._orchestrator(diagnostic=True).run()
        payload = result.to_dict()
        self.assertEqual(payload["_meta"]["diagnostics"]["forecast-element"], 10)
        self.assertEqual(payload["station"], {"id": "10637", "name": "FRANKFURT/M"})

    def test_listener_failure_does_not_break_run(self):
        orchestrator = self._orchestrator()
        received = []

        def _broken(result):
            raise RuntimeError("listener bug")

        orchestrator.add_listener(_broken)
        orchestrator.add_listener(received.append)
        with self.assertLogs("mosmix_forecast.forecast_data", level="ERROR"):
            result = orchestrator.run()
        self.assertEqual(received, [result])

    def test_trigger_runs_on_worker(self):
        orchestrator = self._orchestrator()
        done = threading.Event()
        received = []

        def _listener(result):
            received.append(result)
            done.set()

        orchestrator.add_listener(_listener)
        self.assertTrue(orchestrator.trigger())
        self.assertTrue(done.wait(5))
        self.assertEqual(received[0].count, 3)

    def test_schedule_triggers_and_stops(self):
        orchestrator = self._orchestrator()
        done = threading.Event()
        orchestrator.add_listener(lambda result: done.set())
        orchestrator.on_schedule(0.05)
        self.assertEqual(orchestrator.interval_seconds, 0.05)
        self.assertTrue(done.wait(5))
        orchestrator.on_schedule(0)
        self.assertEqual(orchestrator.interval_seconds, 0.0)

    def test_schedule_restarts_timer_when_interval_changes(self):
        orchestrator = self._orchestrator()
        orchestrator.on_schedule(60)
        first_thread = orchestrator._timer_thread
        first_stop = orchestrator._timer_stop

        orchestrator.on_schedule(120)
        self.assertTrue(first_stop.is_set())
        first_thread.join(5)
        self.assertFalse(first_thread.is_alive())
        self.assertIsNot(orchestrator._timer_thread, first_thread)
        self.assertTrue(orchestrator._timer_thread.is_alive())
        self.assertFalse(orchestrator._timer_stop.is_set())
        self.assertEqual(orchestrator.interval_seconds, 120.0)

        second_thread = orchestrator._timer_thread
        orchestrator.on_schedule(120)
        self.assertIs(orchestrator._timer_thread, second_thread)
        self.assertFalse(orchestrator._timer_stop.is_set())
        self.assertEqual(
            [thread for thread in (first_thread, second_thread) if thread.is_alive()],
            [second_thread],
        )

    def test_trigger_after_shutdown_is_refused(self):
        orchestrator = self._orchestrator()
        orchestrator.shutdown()
        self.assertFalse(orchestrator.trigger())

    def test_document_round_trip_through_archive(self):
        text = extract_single_document(make_kmz(MOSMIX_KML))
        self.assertEqual(len(parse_bulletin(text).time_axis), 3)


if __name__ == "__main__":
    unittest.main()
