"""
Demand-driven surge multipliers per grid cell.

Writers build a fresh mapping and swap the reference; readers grab whichever
snapshot is current and never see a half-built one. Records carry their own
validity window, so a cell whose record has expired reads as 1.0 without any
explicit clear.
"""
import logging
import threading
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Dict, List, Mapping

from database import Datastore
from schemas import COLLECTORS, WASTE_REQUESTS, GeoPoint, SurgeState
from wastebolt import geo
from wastebolt.settings import Settings

logger = logging.getLogger(__name__)


class SurgeController:
    def __init__(self, store: Datastore, settings: Settings):
        self._store = store
        self._settings = settings
        self._computed: Mapping[str, SurgeState] = MappingProxyType({})
        self._overrides: Mapping[str, SurgeState] = MappingProxyType({})
        # Serializes writers only; reads are lock-free
        self._write_lock = threading.Lock()

    def cell_for(self, lat: float, lng: float) -> str:
        return geo.cell_id(lat, lng, self._settings.grid_cell_deg)

    def current_multiplier(self, location: GeoPoint, now: datetime) -> float:
        return self.multiplier_for_cell(self.cell_for(location.lat, location.lng), now)

    def multiplier_for_cell(self, cell: str, now: datetime) -> float:
        best = 1.0
        for snapshot in (self._computed, self._overrides):
            state = snapshot.get(cell)
            if state is not None and state.is_active(now):
                best = max(best, state.multiplier)
        return best

    def active_states(self, now: datetime) -> List[SurgeState]:
        states = [s for s in self._computed.values() if s.is_active(now)]
        states.extend(s for s in self._overrides.values() if s.is_active(now))
        return sorted(states, key=lambda s: (s.area, -s.multiplier))

    def multiplier_for_ratio(self, demand: int, supply: int) -> float:
        cfg = self._settings
        ratio = demand / max(supply, 1)
        if ratio <= cfg.surge_threshold:
            return 1.0
        multiplier = 1.0 + cfg.surge_step * (ratio - cfg.surge_threshold)
        return round(min(cfg.surge_max_multiplier, multiplier), 2)

    def recompute(self, now: datetime) -> Dict[str, SurgeState]:
        """Rebuild the computed snapshot from open requests vs available collectors."""
        demand = self._store.count_by(WASTE_REQUESTS, "location.cell", {"status": "pending"})
        supply = self._store.count_by(COLLECTORS, "cell", {"status": "available"})
        valid_until = now + timedelta(seconds=self._settings.surge_validity_s)

        states: Dict[str, SurgeState] = {}
        for cell, open_requests in demand.items():
            if cell is None:
                continue
            available = supply.get(cell, 0)
            multiplier = self.multiplier_for_ratio(open_requests, available)
            if multiplier <= 1.0:
                continue
            states[cell] = SurgeState(
                area=cell,
                multiplier=multiplier,
                reason="high_demand",
                valid_from=now,
                valid_until=valid_until,
                demand=open_requests,
                supply=available,
            )

        with self._write_lock:
            self._computed = MappingProxyType(dict(states))
        if states:
            logger.info("Published surge snapshot: %d active cells, max x%.2f",
                        len(states), max(s.multiplier for s in states.values()))
        else:
            logger.debug("Published surge snapshot: no active cells")
        return states

    def publish_override(
        self,
        location: GeoPoint,
        multiplier: float,
        reason: str,
        duration: timedelta,
        now: datetime,
    ) -> SurgeState:
        """Manually surge one cell, e.g. for weather or a special event."""
        cell = self.cell_for(location.lat, location.lng)
        state = SurgeState(
            area=cell,
            multiplier=multiplier,
            reason=reason,
            valid_from=now,
            valid_until=now + duration,
        )
        with self._write_lock:
            overrides = {k: v for k, v in self._overrides.items() if v.valid_until > now}
            overrides[cell] = state
            self._overrides = MappingProxyType(overrides)
        logger.info("Surge override for cell %s: x%.2f (%s) until %s", cell, multiplier, reason, state.valid_until)
        return state
