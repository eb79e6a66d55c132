import unittest
from datetime import timedelta
from unittest.mock import MagicMock

from pv_twin.agents.forecasting.baseline_forecaster import BaselineForecasterAgent, clear_sky_irradiance
from pv_twin.domain.errors import ConfigNotFoundError, NumericDomainError, UpstreamDataError
from pv_twin.domain.events import BaselineCalculatedEvent
from pv_twin.domain.models import WeatherObservation
from tests.helpers import NOON, lossless_payload, make_config


class TestClearSky(unittest.TestCase):
    def test_peak_at_noon_and_dark_at_night(self):
        self.assertAlmostEqual(clear_sky_irradiance(NOON), 1000.0)
        self.assertEqual(clear_sky_irradiance(NOON.replace(hour=3)), 0.0)
        self.assertEqual(clear_sky_irradiance(NOON.replace(hour=19)), 0.0)

    def test_symmetric_around_noon(self):
        morning = clear_sky_irradiance(NOON - timedelta(hours=3))
        afternoon = clear_sky_irradiance(NOON + timedelta(hours=3))
        self.assertAlmostEqual(morning, afternoon)


class TestBaselineForecaster(unittest.TestCase):
    def setUp(self):
        self.bus = MagicMock()
        self.configs = MagicMock()
        self.repository = MagicMock()
        self.weather = MagicMock()
        self.twin = make_config()
        self.configs.get_active_config.return_value = self.twin
        self.weather.get_weather.return_value = None
        self.agent = BaselineForecasterAgent("Forecaster", self.bus, self.configs, self.repository,
                                             weather_provider=self.weather)

    def test_lossless_plant_at_1000_w_m2_yields_nominal_power(self):
        forecast = self.agent.calculate_baseline(
            "plant-a", NOON, WeatherObservation(irradiance_w_m2=1000.0, ambient_temp_c=25.0))

        self.assertAlmostEqual(forecast.expected_generation_kwh, 135.0, places=6)
        self.assertAlmostEqual(forecast.factors.system_efficiency, 1.0)
        self.assertLess(forecast.confidence_lower, forecast.expected_generation_kwh)
        self.assertGreater(forecast.confidence_upper, forecast.expected_generation_kwh)
        self.repository.upsert_baseline.assert_called_once_with(forecast)
        published = self.bus.publish.call_args[0][0]
        self.assertIsInstance(published, BaselineCalculatedEvent)

    def test_same_inputs_same_output(self):
        weather = WeatherObservation(irradiance_w_m2=640.0, ambient_temp_c=31.0)
        first = self.agent.compute(self.twin, NOON, weather)
        second = self.agent.compute(self.twin, NOON, weather)
        self.assertEqual(first.expected_generation_kwh, second.expected_generation_kwh)
        self.assertEqual(first.factors, second.factors)

    def test_falls_back_to_clear_sky_without_weather(self):
        forecast = self.agent.calculate_baseline("plant-a", NOON)
        self.assertAlmostEqual(forecast.factors.poa_irradiance, 1000.0)
        self.assertEqual(forecast.factors.ambient_temp, 25.0)

    def test_weather_outage_degrades_to_estimate(self):
        self.weather.get_weather.side_effect = UpstreamDataError("weather down")
        forecast = self.agent.calculate_baseline("plant-a", NOON)
        self.assertAlmostEqual(forecast.expected_generation_kwh, 135.0, places=6)

    def test_temperature_loss_applied(self):
        payload = lossless_payload()
        payload["losses"]["temperature_coefficient"] = -0.4
        twin = make_config(payload)
        forecast = self.agent.compute(twin, NOON, WeatherObservation(1000.0, 25.0))
        # cell temp 25 + 25/800*1000 = 56.25 C
        self.assertAlmostEqual(forecast.factors.cell_temp_estimated, 56.25)
        self.assertAlmostEqual(forecast.factors.system_efficiency, 1 - 0.004 * 31.25)

    def test_default_soiling_factor_when_month_missing(self):
        payload = lossless_payload()
        payload["environmental_context"] = {}
        forecast = self.agent.compute(make_config(payload), NOON, WeatherObservation(1000.0, 25.0))
        self.assertAlmostEqual(forecast.factors.soiling_factor, 0.95)
        self.assertAlmostEqual(forecast.expected_generation_kwh, 135.0 * 0.95)

    def test_negative_irradiance_rejected(self):
        with self.assertRaises(NumericDomainError):
            self.agent.compute(self.twin, NOON, WeatherObservation(irradiance_w_m2=-5.0))

    def test_unknown_plant(self):
        self.configs.get_active_config.return_value = None
        with self.assertRaises(ConfigNotFoundError):
            self.agent.calculate_baseline("ghost", NOON)
        self.repository.upsert_baseline.assert_not_called()

    def test_forecast_records_config_version(self):
        forecast = self.agent.compute(self.twin, NOON, None)
        self.assertEqual(forecast.config_id, self.twin.config_id)
        self.assertEqual(forecast.calibration_date, self.twin.created_at)


if __name__ == "__main__":
    unittest.main()
