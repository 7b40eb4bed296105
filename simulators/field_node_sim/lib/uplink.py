import json
import logging
from typing import Any, Dict, List, Optional

import requests

from simulators.field_node_sim.lib.control import ControlDirective

LOG = logging.getLogger("field_node_sim.uplink")


class RetrievalError(RuntimeError):
    """The telemetry store could not be queried."""


class TelemetryUplink:
    """HTTP client for the ground telemetry store."""

    def __init__(self, base_url: str = "http://localhost:8000",
                 timeout_s: float = 3.0,
                 session: Optional[requests.Session] = None,
                 log_messages: bool = False):
        if timeout_s <= 0.0:
            raise ValueError("timeout_s must be > 0")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.session = session if session is not None else requests.Session()
        self.log_messages = log_messages

    @property
    def telemetry_url(self) -> str:
        return f"{self.base_url}/telemetry"

    def publish(self, snapshot: Dict[str, Any]) -> Optional[ControlDirective]:
        """
        POST one snapshot. Returns the directive carried by the response, or None
        when there is nothing to apply or the round trip failed.
        """
        if self.log_messages:
            LOG.info("SEND %s %s", self.telemetry_url, json.dumps(snapshot, separators=(",", ":")))
        try:
            r = self.session.post(self.telemetry_url, json=snapshot, timeout=self.timeout_s)
        except requests.RequestException as e:
            LOG.warning("Failed to reach telemetry store at %s: %s", self.telemetry_url, e)
            return None

        if not r.ok:
            LOG.warning("Telemetry POST failed with status %s", r.status_code)
            return None
        try:
            body = r.json()
        except ValueError:
            LOG.warning("Telemetry store returned non-JSON response; ignoring")
            return None
        if not isinstance(body, dict):
            LOG.warning("Telemetry store returned unexpected body %.200s", body)
            return None

        if body.get("force_pump") is True:
            LOG.warning("Received force irrigation command from telemetry store")
            return ControlDirective(force_pump=True)
        return None

    def fetch(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Retrieve stored snapshots, newest first. Raises RetrievalError on failure."""
        try:
            r = self.session.get(self.telemetry_url, params={"limit": limit}, timeout=self.timeout_s)
            r.raise_for_status()
            body = r.json()
        except requests.RequestException as e:
            raise RetrievalError(f"telemetry store unreachable: {e}") from e
        except ValueError as e:
            raise RetrievalError("telemetry store returned non-JSON response") from e
        if not isinstance(body, list):
            raise RetrievalError("telemetry store returned unexpected body")
        return body

    def close(self) -> None:
        self.session.close()
