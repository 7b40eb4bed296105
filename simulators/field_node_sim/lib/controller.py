import logging
import threading
import time
from typing import Any, Dict, Optional

from simulators.field_node_sim.lib.configparser import FieldNodeParser
from simulators.field_node_sim.lib.control import ControlAuthority
from simulators.field_node_sim.lib.field_node_sim import FieldNode, SensorState
from simulators.field_node_sim.lib.ledger import LedgerAccountant
from simulators.field_node_sim.lib.uplink import TelemetryUplink

LOG = logging.getLogger("field_node_sim.controller")


class NodeController:
    """
    Periodic tick loop of the field node.

    Each tick advances the simulator and the ledger under the authority's lock,
    sends the resulting snapshot to the telemetry store and queues whatever
    directive comes back for the next tick. The next tick is scheduled only after
    the round trip has completed or timed out.
    """

    def __init__(self,
                 node: FieldNode,
                 authority: ControlAuthority,
                 ledger: LedgerAccountant,
                 uplink: Optional[TelemetryUplink] = None):
        self.node = node
        self.authority = authority
        self.ledger = ledger
        self.uplink = uplink
        self._tick_index = 0
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, config_file: str, seed: Optional[int] = None) -> "NodeController":
        """Build the node, ledger, authority and uplink from one INI file."""
        parser = FieldNodeParser(config_file)
        node = FieldNode(config_file)
        node.read_config()
        node.init_sim(seed if seed is not None else parser.parse_seed())

        ledger = LedgerAccountant(**parser.get_ledger_cfg())
        authority = ControlAuthority(node.new_state())
        uplink = TelemetryUplink(
            base_url=parser.parse_base_url(),
            timeout_s=parser.parse_request_timeout_s(),
            log_messages=parser.parse_log_messages(),
        )
        return cls(node, authority, ledger, uplink)

    @property
    def tick_index(self) -> int:
        return self._tick_index

    def _step(self, state: SensorState) -> Dict[str, Any]:
        readings = self.node.step(state)
        self.ledger.accrue(self._tick_index, readings.wilting_probability, state)
        return self.node.build_snapshot(state, readings)

    def tick(self) -> Dict[str, Any]:
        """Run one tick and return the snapshot it produced."""
        self._tick_index += 1
        snapshot = self.authority.advance(self._step)
        LOG.info(
            "[Sensor Tick %d] Moisture: %.1f%% | Pump: %s",
            self._tick_index,
            snapshot["soil_moisture"]["percentage"],
            "ON" if snapshot["actuators"]["pump_relay_active"] else "OFF",
        )

        if self.uplink is not None:
            directive = self.uplink.publish(snapshot)
            if directive is not None:
                self.authority.submit(directive)
        return snapshot

    def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick until stop() is called (or ``max_ticks`` ticks have run)."""
        interval = self.node.tick_interval_s
        LOG.info("Starting field node %s: tick interval %.2fs", self.node.node_id, interval)
        ticks = 0
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception:
                LOG.exception("Tick %d failed; continuing", self._tick_index)
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, interval - elapsed))
        LOG.info("Field node loop stopped after %d ticks", ticks)

    def stop(self) -> None:
        self._stop.set()
