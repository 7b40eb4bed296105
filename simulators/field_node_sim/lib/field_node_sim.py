import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from simulators.field_node_sim.lib.configparser import FieldNodeParser
from simulators.field_node_sim.lib.ledger import tokens_for

LOG = logging.getLogger("field_node_sim")

# Soil probe calibration: 1.0 V is saturated soil, 2.5 V is bone dry.
VOLTAGE_MIN = 1.0
VOLTAGE_MAX = 2.6
VOLTAGE_DRY = 2.5
VOLTAGE_SPAN = 1.5

DRAIN_PER_TICK_V = 0.1
DRYING_PER_TICK_V = 0.02
DRYING_NOISE_V = 0.01
FLOW_PULSES_RANGE = (10, 15)

BLIGHT_STATUS = "Early Blight Detected"
HEALTHY_STATUS = "Healthy"
SMFC_CHARGING = "Charging Battery"
SMFC_MAINTENANCE = "Maintenance Mode"


def now_iso() -> str:
    """Return ISO-8601 UTC timestamp with milliseconds and trailing 'Z'."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _clamp(val: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, val))


def moisture_percentage(voltage: float) -> float:
    """Convert the filtered probe voltage into volumetric moisture percent."""
    return _clamp(((VOLTAGE_DRY - voltage) / VOLTAGE_SPAN) * 100.0, 0.0, 100.0)


@dataclass
class SensorState:
    kalman_voltage: float = VOLTAGE_MIN
    pump_active: bool = False
    flow_pulse_count: int = 0
    water_saved_liters: float = 1450.5
    tokens_minted: Optional[int] = None
    array_enable: bool = False
    clinostat_rpm: float = 0.0

    def __post_init__(self):
        if self.tokens_minted is None:
            self.tokens_minted = tokens_for(self.water_saved_liters)


@dataclass(frozen=True)
class Readings:
    """Per-tick derived measurements; everything in the snapshot that is not raw state."""
    raw_voltage: float
    percentage: float
    temperature_c: float
    humidity_pct: float
    et_forecast_mm_day: float
    wilting_probability: float
    vision_status: str
    vision_confidence: float
    smfc_mv: float
    smfc_status: str
    anomaly: bool
    inference_time_ms: float
    magnetic_field_ut: float
    clinostat_rpm: float
    projected_yield_tha: float
    yield_increase_pct: float


class FieldNode:
    """
    Soil moisture node with a pump relay, a flow meter and a set of heuristic
    "edge AI" estimators. Holds configuration and the noise source only; the
    mutable SensorState is passed in by the owner on every step().
    """

    def __init__(self, config_file: str = "config.ini"):
        self.config_file = Path(config_file)

        self._node_id: str = "esp32_zone_alpha"
        self._tick_interval_s: float = 5.0

        self._pump_on_voltage: float = 2.5
        self._pump_off_voltage: float = 1.2
        self._blight_probability: float = 80.0
        self._smfc_charging_mv: float = 600.0
        self._anomaly_rate: float = 0.02

        self._wilting_base: Tuple[float, float] = (15.0, 5.0)
        self._wilting_tiers: List[Tuple[float, float, float]] = [(2.0, 85.5, 10.0), (1.5, 40.2, 5.0)]

        self._yield_baseline_tha: float = 3.2
        self._yield_gain: float = 0.35

        self._initial_voltage: float = VOLTAGE_MIN
        self._initial_water_saved: float = 1450.5
        self._initial_clinostat_rpm: float = 0.0
        self._liters_per_token: float = 10.0

        self._rng: Optional[np.random.Generator] = None

    # ---------------------
    # Properties (validated)
    # ---------------------
    @property
    def node_id(self) -> str:
        return self._node_id

    @node_id.setter
    def node_id(self, val: str) -> None:
        if not isinstance(val, str) or not val.strip():
            raise TypeError("node_id must be a non-empty string")
        self._node_id = val.strip()

    @property
    def tick_interval_s(self) -> float:
        return self._tick_interval_s

    @tick_interval_s.setter
    def tick_interval_s(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("tick_interval_s must be a number")
        vf = float(val)
        if vf <= 0.0:
            raise ValueError("tick_interval_s must be > 0")
        self._tick_interval_s = vf

    @property
    def pump_on_voltage(self) -> float:
        return self._pump_on_voltage

    @pump_on_voltage.setter
    def pump_on_voltage(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("pump_on_voltage must be a number")
        vf = float(val)
        if vf <= self._pump_off_voltage:
            raise ValueError("pump_on_voltage must be above pump_off_voltage")
        self._pump_on_voltage = vf

    @property
    def pump_off_voltage(self) -> float:
        return self._pump_off_voltage

    @pump_off_voltage.setter
    def pump_off_voltage(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("pump_off_voltage must be a number")
        vf = float(val)
        if vf >= self._pump_on_voltage:
            raise ValueError("pump_off_voltage must be below pump_on_voltage")
        self._pump_off_voltage = vf

    @property
    def hysteresis_band(self) -> Tuple[float, float]:
        return (self._pump_off_voltage, self._pump_on_voltage)

    @hysteresis_band.setter
    def hysteresis_band(self, val) -> None:
        if not isinstance(val, (list, tuple)) or len(val) != 2:
            raise TypeError("hysteresis_band must be a (off_voltage, on_voltage) pair")
        off, on = float(val[0]), float(val[1])
        if off >= on:
            raise ValueError("hysteresis_band off voltage must be below on voltage")
        self._pump_off_voltage = off
        self._pump_on_voltage = on

    @property
    def blight_probability(self) -> float:
        return self._blight_probability

    @blight_probability.setter
    def blight_probability(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("blight_probability must be a number")
        self._blight_probability = float(val)

    @property
    def smfc_charging_mv(self) -> float:
        return self._smfc_charging_mv

    @smfc_charging_mv.setter
    def smfc_charging_mv(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("smfc_charging_mv must be a number")
        self._smfc_charging_mv = float(val)

    @property
    def anomaly_rate(self) -> float:
        return self._anomaly_rate

    @anomaly_rate.setter
    def anomaly_rate(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("anomaly_rate must be a number")
        vf = float(val)
        if vf < 0.0 or vf > 1.0:
            raise ValueError("anomaly_rate must be between 0 and 1")
        self._anomaly_rate = vf

    @property
    def wilting_base(self) -> Tuple[float, float]:
        return self._wilting_base

    @wilting_base.setter
    def wilting_base(self, val) -> None:
        if not isinstance(val, (list, tuple)) or len(val) != 2:
            raise TypeError("wilting_base must be a (mean, spread) pair")
        mean, spread = float(val[0]), float(val[1])
        if spread < 0.0:
            raise ValueError("wilting_base spread must be non-negative")
        self._wilting_base = (mean, spread)

    @property
    def wilting_tiers(self) -> List[Tuple[float, float, float]]:
        return list(self._wilting_tiers)

    @wilting_tiers.setter
    def wilting_tiers(self, val) -> None:
        if isinstance(val, str) or not isinstance(val, (list, tuple)):
            raise TypeError("wilting_tiers must be a list of (voltage_above, mean, spread)")
        tiers = []
        for tier in val:
            if not isinstance(tier, (list, tuple)) or len(tier) != 3:
                raise TypeError("each wilting tier must be (voltage_above, mean, spread)")
            above, mean, spread = (float(x) for x in tier)
            if spread < 0.0:
                raise ValueError("wilting tier spread must be non-negative")
            tiers.append((above, mean, spread))
        tiers.sort(key=lambda t: t[0], reverse=True)
        self._wilting_tiers = tiers

    @property
    def yield_baseline_tha(self) -> float:
        return self._yield_baseline_tha

    @yield_baseline_tha.setter
    def yield_baseline_tha(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("yield_baseline_tha must be a number")
        vf = float(val)
        if not math.isfinite(vf) or vf <= 0.0:
            raise ValueError("yield_baseline_tha must be > 0")
        self._yield_baseline_tha = vf

    @property
    def yield_gain(self) -> float:
        return self._yield_gain

    @yield_gain.setter
    def yield_gain(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("yield_gain must be a number")
        vf = float(val)
        if not math.isfinite(vf) or vf <= 0.0:
            raise ValueError("yield_gain must be > 0")
        self._yield_gain = vf

    @property
    def initial_voltage(self) -> float:
        return self._initial_voltage

    @initial_voltage.setter
    def initial_voltage(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("initial_voltage must be a number")
        vf = float(val)
        if vf < VOLTAGE_MIN or vf > VOLTAGE_MAX:
            raise ValueError(f"initial_voltage must be between {VOLTAGE_MIN} and {VOLTAGE_MAX}")
        self._initial_voltage = vf

    @property
    def initial_water_saved(self) -> float:
        return self._initial_water_saved

    @initial_water_saved.setter
    def initial_water_saved(self, val: float) -> None:
        if not isinstance(val, (int, float)):
            raise TypeError("initial_water_saved must be a number")
        vf = float(val)
        if vf < 0.0:
            raise ValueError("initial_water_saved must be non-negative")
        self._initial_water_saved = vf

    # ---------------------
    # Config loading
    # ---------------------
    def read_config(self) -> None:
        parser = FieldNodeParser(str(self.config_file))

        self.node_id = parser.parse_node_id()
        self.tick_interval_s = parser.parse_tick_interval_s()

        thresholds = parser.get_thresholds_map()
        self.hysteresis_band = (thresholds["pump_off_voltage"], thresholds["pump_on_voltage"])
        self.blight_probability = thresholds["blight_probability"]
        self.smfc_charging_mv = thresholds["smfc_charging_mv"]
        self.anomaly_rate = thresholds["anomaly_rate"]

        self.wilting_base = parser.parse_wilting_base()
        self.wilting_tiers = parser.parse_wilting_tiers()
        self.yield_baseline_tha = parser.parse_yield_baseline_tha()
        self.yield_gain = parser.parse_yield_gain()

        self.initial_voltage = parser.parse_initial_voltage()
        self.initial_water_saved = parser.parse_initial_water_saved()
        self._initial_clinostat_rpm = parser.parse_initial_clinostat_rpm()
        self._liters_per_token = parser.parse_liters_per_token()

        LOG.debug(
            "Node config loaded: node_id=%s tick=%.2fs band=%s tiers=%s",
            self.node_id, self.tick_interval_s, self.hysteresis_band, self.wilting_tiers,
        )

    # ---------------------
    # RNG / simulation init
    # ---------------------
    def init_sim(self, seed: Optional[int] = None) -> None:
        self._rng = np.random.default_rng(seed)

    def new_state(self) -> SensorState:
        """Fresh SensorState built from the configured start-up values."""
        return SensorState(
            kalman_voltage=self._initial_voltage,
            water_saved_liters=self._initial_water_saved,
            tokens_minted=tokens_for(self._initial_water_saved, self._liters_per_token),
            clinostat_rpm=self._initial_clinostat_rpm,
        )

    def _noise(self, spread: float) -> float:
        if spread <= 0.0:
            return 0.0
        return float(self._rng.uniform(-spread, spread))

    # ---------------------
    # Heuristics
    # ---------------------
    def wilting_probability(self, voltage: float) -> float:
        """Tiered wilting forecast: the first tier whose breakpoint is exceeded wins."""
        for above, mean, spread in self._wilting_tiers:
            if voltage > above:
                return mean + self._noise(spread)
        mean, spread = self._wilting_base
        return mean + self._noise(spread)

    def _auto_control(self, state: SensorState) -> None:
        if state.kalman_voltage > self._pump_on_voltage and not state.pump_active:
            LOG.warning("Soil is critically dry (%.3f V); auto-triggering pump relay", state.kalman_voltage)
            state.pump_active = True
        elif state.kalman_voltage <= self._pump_off_voltage and state.pump_active:
            LOG.info("Soil is saturated (%.3f V); turning pump relay off", state.kalman_voltage)
            state.pump_active = False

    def step(self, state: SensorState) -> Readings:
        """
        Advance ``state`` by one tick and return the derived readings.
        The caller must hold exclusive access to ``state``.
        """
        if self._rng is None:
            raise RuntimeError("Simulator not initialized. Call init_sim() first.")

        if state.pump_active:
            state.kalman_voltage -= DRAIN_PER_TICK_V
            state.flow_pulse_count += int(self._rng.integers(*FLOW_PULSES_RANGE))
        else:
            state.kalman_voltage += DRYING_PER_TICK_V + self._noise(DRYING_NOISE_V)
        state.kalman_voltage = _clamp(state.kalman_voltage, VOLTAGE_MIN, VOLTAGE_MAX)

        pct = moisture_percentage(state.kalman_voltage)
        self._auto_control(state)

        wilting = self.wilting_probability(state.kalman_voltage)
        if wilting > self._blight_probability:
            vision_status, vision_conf = BLIGHT_STATUS, 85.0 + self._noise(5.0)
        else:
            vision_status, vision_conf = HEALTHY_STATUS, 95.0 + self._noise(4.0)

        smfc_nominal = 450.0 + pct * 3.5
        smfc_status = SMFC_CHARGING if smfc_nominal > self._smfc_charging_mv else SMFC_MAINTENANCE

        projected = self._yield_baseline_tha * (1.0 + self._yield_gain * (1.0 - wilting / 100.0))
        projected += self._noise(0.05)

        return Readings(
            raw_voltage=state.kalman_voltage + self._noise(0.05),
            percentage=pct,
            temperature_c=32.5 + self._noise(1.0),
            humidity_pct=45.0 + self._noise(2.0),
            et_forecast_mm_day=4.2 + self._noise(0.5),
            wilting_probability=wilting,
            vision_status=vision_status,
            vision_confidence=vision_conf,
            smfc_mv=smfc_nominal + self._noise(20.0),
            smfc_status=smfc_status,
            anomaly=bool(self._rng.random() < self._anomaly_rate),
            inference_time_ms=12.4 + self._noise(2.0),
            magnetic_field_ut=45000.0 + self._noise(500.0),
            clinostat_rpm=state.clinostat_rpm + self._noise(0.2),
            projected_yield_tha=projected,
            yield_increase_pct=(projected / self._yield_baseline_tha - 1.0) * 100.0,
        )

    def build_snapshot(self, state: SensorState, readings: Readings,
                       timestamp: Optional[str] = None) -> Dict[str, Any]:
        """Assemble the telemetry payload for one tick."""
        return {
            "node_id": self._node_id,
            "timestamp": timestamp or now_iso(),
            "soil_moisture": {
                "raw_voltage": readings.raw_voltage,
                "kalman_filtered_v": state.kalman_voltage,
                "percentage": readings.percentage,
            },
            "atmosphere": {
                "temperature_c": readings.temperature_c,
                "humidity_pct": readings.humidity_pct,
            },
            "actuators": {
                "pump_relay_active": state.pump_active,
                "flow_pulses_counted": state.flow_pulse_count,
            },
            "tinyml_predictions": {
                "et_forecast_mm_day": readings.et_forecast_mm_day,
                "wilting_probability_24h": readings.wilting_probability,
            },
            "computer_vision": {
                "status": readings.vision_status,
                "confidence": readings.vision_confidence,
            },
            "smfc_power": {
                "raw_voltage_mv": readings.smfc_mv,
                "status": readings.smfc_status,
            },
            "web3_ledger": {
                "water_saved_liters": round(state.water_saved_liters, 2),
                "wct_tokens_minted": state.tokens_minted,
            },
            "edge_security": {
                "isolation_forest_anomaly": readings.anomaly,
                "inference_time_ms": readings.inference_time_ms,
            },
            "anti_gravity": {
                "magnetic_field_ut": readings.magnetic_field_ut,
                "ultrasonic_array_active": state.array_enable,
                "clinostat_rpm": readings.clinostat_rpm,
            },
            "crop_yield": {
                "projected_yield_tha": readings.projected_yield_tha,
                "yield_increase_pct": readings.yield_increase_pct,
            },
        }
