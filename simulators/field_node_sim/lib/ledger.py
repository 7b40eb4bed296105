import logging
import math
from typing import Optional

LOG = logging.getLogger("field_node_sim.ledger")


def tokens_for(water_saved_liters: float, liters_per_token: float = 10.0) -> int:
    """Tokens minted for a given water total: one per full ``liters_per_token``."""
    return int(math.floor(water_saved_liters / liters_per_token))


class LedgerAccountant:
    """
    Local water-savings ledger.

    Credits a fixed volume to the sensor state whenever irrigation was not needed
    this tick (low wilting forecast and pump idle), then re-derives the token count
    from the water total. Each tick index is credited at most once.
    """

    def __init__(self,
                 liters_per_tick: float = 2.5,
                 liters_per_token: float = 10.0,
                 wilting_ceiling: float = 40.0):
        if liters_per_tick < 0.0:
            raise ValueError("liters_per_tick must be non-negative")
        if liters_per_token <= 0.0:
            raise ValueError("liters_per_token must be > 0")
        self.liters_per_tick = float(liters_per_tick)
        self.liters_per_token = float(liters_per_token)
        self.wilting_ceiling = float(wilting_ceiling)
        self._last_credited_tick: Optional[int] = None

    def qualifies(self, wilting_probability: float, pump_active: bool) -> bool:
        return wilting_probability < self.wilting_ceiling and not pump_active

    def accrue(self, tick: int, wilting_probability: float, state) -> bool:
        """
        Credit ``state`` for ``tick`` if it qualifies. Returns True when water was
        credited. Repeated calls for an already credited tick are no-ops.
        """
        if self._last_credited_tick is not None and tick <= self._last_credited_tick:
            LOG.debug("Tick %d already accounted; skipping", tick)
            return False
        if not self.qualifies(wilting_probability, state.pump_active):
            return False

        state.water_saved_liters += self.liters_per_tick
        state.tokens_minted = tokens_for(state.water_saved_liters, self.liters_per_token)
        self._last_credited_tick = tick
        LOG.debug("Credited %.2f L at tick %d (total %.2f L, %d tokens)",
                  self.liters_per_tick, tick, state.water_saved_liters, state.tokens_minted)
        return True
