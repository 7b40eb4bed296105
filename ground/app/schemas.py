"""Pydantic data models for field-node telemetry and the ingestion default table."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

DEFAULT_NODE_ID = "unknown"
PLACEHOLDER_NODE_ID = "NO_DATA"

# Values substituted for every field missing from an ingested payload.
SNAPSHOT_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "soil_moisture": {"raw_voltage": 0.0, "kalman_filtered_v": 0.0, "percentage": 0.0},
    "atmosphere": {"temperature_c": 32.5, "humidity_pct": 45.0},
    "actuators": {"pump_relay_active": False, "flow_pulses_counted": 0},
    "tinyml_predictions": {"et_forecast_mm_day": 4.5, "wilting_probability_24h": 15.0},
    "computer_vision": {"status": "Calibration Pending", "confidence": 0.0},
    "smfc_power": {"raw_voltage_mv": 0.0, "status": "Offline"},
    "web3_ledger": {"water_saved_liters": 0.0, "wct_tokens_minted": 0},
    "edge_security": {"isolation_forest_anomaly": False, "inference_time_ms": 0.0},
    "anti_gravity": {"magnetic_field_ut": 0.0, "ultrasonic_array_active": False, "clinostat_rpm": 0.0},
    "crop_yield": {"projected_yield_tha": 0.0, "yield_increase_pct": 0.0},
}


class _Group(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", allow_inf_nan=False)


class SoilMoisture(_Group):
    raw_voltage: float
    kalman_filtered_v: float
    percentage: float


class Atmosphere(_Group):
    temperature_c: float
    humidity_pct: float


class Actuators(_Group):
    pump_relay_active: bool
    flow_pulses_counted: int


class TinyMLPredictions(_Group):
    et_forecast_mm_day: float
    wilting_probability_24h: float


class ComputerVision(_Group):
    status: str
    confidence: float


class SMFCPower(_Group):
    raw_voltage_mv: float
    status: str


class Web3Ledger(_Group):
    water_saved_liters: float
    wct_tokens_minted: int


class EdgeSecurity(_Group):
    isolation_forest_anomaly: bool
    inference_time_ms: float


class AntiGravity(_Group):
    magnetic_field_ut: float
    ultrasonic_array_active: bool
    clinostat_rpm: float


class CropYield(_Group):
    projected_yield_tha: float
    yield_increase_pct: float


class TelemetrySnapshot(_Group):
    """One stored telemetry record. Immutable."""
    node_id: str
    timestamp: str
    soil_moisture: SoilMoisture
    atmosphere: Atmosphere
    actuators: Actuators
    tinyml_predictions: TinyMLPredictions
    computer_vision: ComputerVision
    smfc_power: SMFCPower
    web3_ledger: Web3Ledger
    edge_security: EdgeSecurity
    anti_gravity: AntiGravity
    crop_yield: CropYield


class TelemetryIn(BaseModel):
    """Partial snapshot as posted by a node; every member is optional."""
    model_config = ConfigDict(extra="ignore")

    node_id: Optional[str] = None
    timestamp: Optional[str] = None
    soil_moisture: Optional[Dict[str, Any]] = None
    atmosphere: Optional[Dict[str, Any]] = None
    actuators: Optional[Dict[str, Any]] = None
    tinyml_predictions: Optional[Dict[str, Any]] = None
    computer_vision: Optional[Dict[str, Any]] = None
    smfc_power: Optional[Dict[str, Any]] = None
    web3_ledger: Optional[Dict[str, Any]] = None
    edge_security: Optional[Dict[str, Any]] = None
    anti_gravity: Optional[Dict[str, Any]] = None
    crop_yield: Optional[Dict[str, Any]] = None


class IngestResult(BaseModel):
    status: str = "success"
    force_pump: bool = False


class ControlRequest(BaseModel):
    force_pump: bool = True


def resolve_snapshot(payload: TelemetryIn, received_at: str) -> TelemetrySnapshot:
    """Fill every missing member of ``payload`` from SNAPSHOT_DEFAULTS."""
    data: Dict[str, Any] = {
        "node_id": payload.node_id or DEFAULT_NODE_ID,
        "timestamp": received_at,
    }
    for group, defaults in SNAPSHOT_DEFAULTS.items():
        supplied = getattr(payload, group) or {}
        merged = dict(defaults)
        merged.update({k: v for k, v in supplied.items() if k in defaults and v is not None})
        data[group] = merged
    return TelemetrySnapshot.model_validate(data)


def _zeroed(value: Any) -> Any:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return 0
    if isinstance(value, float):
        return 0.0
    return value


def placeholder_snapshot(timestamp: str = "") -> TelemetrySnapshot:
    """Synthetic record returned when the store is empty: numerics 0, booleans false."""
    data: Dict[str, Any] = {"node_id": PLACEHOLDER_NODE_ID, "timestamp": timestamp}
    for group, defaults in SNAPSHOT_DEFAULTS.items():
        data[group] = {k: _zeroed(v) for k, v in defaults.items()}
    return TelemetrySnapshot.model_validate(data)
