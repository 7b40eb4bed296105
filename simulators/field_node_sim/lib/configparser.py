from pathlib import Path
import configparser
from typing import Dict, List, Optional, Tuple


class FieldNodeParser:
    def __init__(self, filename: str = "config.ini"):
        self.config = configparser.ConfigParser(inline_comment_prefixes=(";",))
        self.config.read(Path(filename))

    def _sec(self, name: str) -> Optional[configparser.SectionProxy]:
        if self.config.has_section(name):
            return self.config[name]
        return None

    def _get(self, section: str, key: str, fallback: str) -> str:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.get(key, fallback=fallback)

    def _getfloat(self, section: str, key: str, fallback: float) -> float:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.getfloat(key, fallback=fallback)

    def _getint(self, section: str, key: str, fallback: int) -> int:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.getint(key, fallback=fallback)

    def _getboolean(self, section: str, key: str, fallback: bool) -> bool:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.getboolean(key, fallback=fallback)

    #  Broker
    def parse_broker_host(self) -> str:
        return self._get("broker", "host", "localhost")

    def parse_broker_port(self) -> int:
        return self._getint("broker", "port", 1883)

    #  Node / client settings
    def parse_node_id(self) -> str:
        return self._get("node", "node_id", "esp32_zone_alpha")

    def parse_client_id(self) -> str:
        return self._get("node", "client_id", "field_node_sim")

    def parse_tick_interval_s(self) -> float:
        return self._getfloat("node", "tick_interval_s", 5.0)

    def parse_seed(self) -> Optional[int]:
        raw = self._get("node", "seed", "").strip()
        if not raw:
            return None
        return int(raw)

    def parse_retain_status(self) -> bool:
        return self._getboolean("node", "retain_status", True)

    def parse_validate_schema(self) -> bool:
        return self._getboolean("node", "validate_schema", True)

    def parse_schema_path(self) -> str:
        return self._get("node", "schema_path", "schemas/commands.json")

    def parse_log_messages(self) -> bool:
        return self._getboolean("node", "log_messages", False)

    #  Topics
    def parse_command_topic(self) -> str:
        return self._get("topics", "command_topic", "smartfarm/commands")

    def parse_status_topic(self) -> str:
        return self._get("topics", "status_topic", "smartfarm/status")

    #  Uplink to the telemetry store
    def parse_base_url(self) -> str:
        return self._get("uplink", "base_url", "http://localhost:8000")

    def parse_request_timeout_s(self) -> float:
        return self._getfloat("uplink", "request_timeout_s", 3.0)

    #  Initial sensor state
    def parse_initial_voltage(self) -> float:
        return self._getfloat("state", "initial_voltage", 1.0)

    def parse_initial_water_saved(self) -> float:
        return self._getfloat("state", "initial_water_saved_liters", 1450.5)

    def parse_initial_clinostat_rpm(self) -> float:
        return self._getfloat("state", "initial_clinostat_rpm", 0.0)

    #  Thresholds
    def parse_pump_on_voltage(self) -> float:
        return self._getfloat("thresholds", "pump_on_voltage", 2.5)

    def parse_pump_off_voltage(self) -> float:
        return self._getfloat("thresholds", "pump_off_voltage", 1.2)

    def parse_blight_probability(self) -> float:
        return self._getfloat("thresholds", "blight_probability", 80.0)

    def parse_smfc_charging_mv(self) -> float:
        return self._getfloat("thresholds", "smfc_charging_mv", 600.0)

    def parse_anomaly_rate(self) -> float:
        return self._getfloat("thresholds", "anomaly_rate", 0.02)

    #  Heuristics
    def parse_wilting_base(self) -> Tuple[float, float]:
        """
        Return (mean, spread) of the wilting probability below every tier.
        Written as 'mean:spread' in the INI.
        """
        raw = self._get("heuristics", "wilting_base", "15.0:5.0")
        mean, spread = raw.split(":")
        return float(mean), float(spread)

    def parse_wilting_tiers(self) -> List[Tuple[float, float, float]]:
        """
        Return a list of (voltage_above, mean, spread) tiers, highest breakpoint first.
        Written as comma separated 'voltage:mean:spread' triples.
        """
        raw = self._get("heuristics", "wilting_tiers", "2.0:85.5:10.0, 1.5:40.2:5.0")
        tiers = []
        for part in raw.split(","):
            part = part.strip()
            if not part:
                continue
            above, mean, spread = part.split(":")
            tiers.append((float(above), float(mean), float(spread)))
        tiers.sort(key=lambda t: t[0], reverse=True)
        return tiers

    def parse_yield_baseline_tha(self) -> float:
        return self._getfloat("heuristics", "yield_baseline_tha", 3.2)

    def parse_yield_gain(self) -> float:
        return self._getfloat("heuristics", "yield_gain", 0.35)

    #  Ledger
    def parse_liters_per_tick(self) -> float:
        return self._getfloat("ledger", "liters_per_tick", 2.5)

    def parse_liters_per_token(self) -> float:
        return self._getfloat("ledger", "liters_per_token", 10.0)

    def parse_wilting_ceiling(self) -> float:
        return self._getfloat("ledger", "wilting_ceiling", 40.0)

    def get_broker_cfg(self) -> Dict[str, object]:
        return {
            "host": self.parse_broker_host(),
            "port": self.parse_broker_port(),
        }

    def get_topics_map(self) -> Dict[str, str]:
        return {
            "command_topic": self.parse_command_topic(),
            "status_topic": self.parse_status_topic(),
        }

    def get_thresholds_map(self) -> Dict[str, float]:
        return {
            "pump_on_voltage": self.parse_pump_on_voltage(),
            "pump_off_voltage": self.parse_pump_off_voltage(),
            "blight_probability": self.parse_blight_probability(),
            "smfc_charging_mv": self.parse_smfc_charging_mv(),
            "anomaly_rate": self.parse_anomaly_rate(),
        }

    def get_ledger_cfg(self) -> Dict[str, float]:
        return {
            "liters_per_tick": self.parse_liters_per_tick(),
            "liters_per_token": self.parse_liters_per_token(),
            "wilting_ceiling": self.parse_wilting_ceiling(),
        }
