import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional, TypeVar

from simulators.field_node_sim.lib.field_node_sim import SensorState

LOG = logging.getLogger("field_node_sim.control")

T = TypeVar("T")


@dataclass(frozen=True)
class ControlDirective:
    """
    Instruction merged into actuator state.

    force_pump is one-shot and can only switch the pump on. array_enable and
    clinostat_rpm are level-set; None leaves the current value untouched.
    """
    force_pump: bool = False
    array_enable: Optional[bool] = None
    clinostat_rpm: Optional[float] = None

    def merge(self, newer: "ControlDirective") -> "ControlDirective":
        """Combine two directives, ``newer`` winning on level-set fields."""
        return ControlDirective(
            force_pump=self.force_pump or newer.force_pump,
            array_enable=newer.array_enable if newer.array_enable is not None else self.array_enable,
            clinostat_rpm=newer.clinostat_rpm if newer.clinostat_rpm is not None else self.clinostat_rpm,
        )

    @property
    def is_empty(self) -> bool:
        return not self.force_pump and self.array_enable is None and self.clinostat_rpm is None


class ControlAuthority:
    """
    Sole owner of the node's SensorState.

    The tick loop and the command handler run on different threads; every read
    and write of the state happens under ``_lock``. Directives submitted between
    ticks are merged into a single pending directive and applied once at the
    start of the next advance().
    """

    def __init__(self, state: Optional[SensorState] = None):
        self._state = state if state is not None else SensorState()
        self._lock = threading.Lock()
        self._pending: Optional[ControlDirective] = None

    def _apply_locked(self, directive: ControlDirective) -> None:
        if directive.force_pump and not self._state.pump_active:
            LOG.info("Force directive received; activating pump relay")
            self._state.pump_active = True
        if directive.array_enable is not None:
            self._state.array_enable = directive.array_enable
        if directive.clinostat_rpm is not None:
            self._state.clinostat_rpm = float(directive.clinostat_rpm)

    def apply(self, directive: ControlDirective) -> None:
        """Apply ``directive`` to the state immediately."""
        with self._lock:
            self._apply_locked(directive)

    def submit(self, directive: ControlDirective) -> None:
        """Queue ``directive`` for the next tick."""
        if directive.is_empty:
            return
        with self._lock:
            if self._pending is None:
                self._pending = directive
            else:
                self._pending = self._pending.merge(directive)
            LOG.debug("Pending directive now %s", self._pending)

    def pending(self) -> Optional[ControlDirective]:
        with self._lock:
            return self._pending

    def advance(self, step: Callable[[SensorState], T]) -> T:
        """
        Drain the pending directive onto the state, then run ``step`` with
        exclusive access to the state and return its result.
        """
        with self._lock:
            pending, self._pending = self._pending, None
            if pending is not None:
                self._apply_locked(pending)
            return step(self._state)

    def read(self) -> SensorState:
        """Consistent copy of the current state."""
        with self._lock:
            return replace(self._state)
