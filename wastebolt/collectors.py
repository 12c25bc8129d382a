"""
Collector pool: registration, position reports and availability toggles.

Each collector document carries the grid cell of its last position, which is
what candidate search and surge supply counts index on.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from database import Datastore
from schemas import COLLECTORS, Actor, Collector, CollectorIn, GeoPoint
from wastebolt import geo
from wastebolt.errors import DispatchError, IllegalTransition, NotFound, PermissionDenied
from wastebolt.settings import Settings

logger = logging.getLogger(__name__)


class CollectorExists(DispatchError):
    status_code = 409
    code = "collector_exists"


class CollectorPool:
    def __init__(self, store: Datastore, settings: Settings, clock: Callable[[], datetime]):
        self._store = store
        self._settings = settings
        self._clock = clock

    def _get(self, collector_id: str) -> Dict[str, Any]:
        doc = self._store.get_document(COLLECTORS, collector_id)
        if doc is None:
            raise NotFound("Collector", collector_id)
        return doc

    def _owned(self, collector_id: str, actor: Actor) -> Dict[str, Any]:
        doc = self._get(collector_id)
        if actor.role != "admin" and doc["user_id"] != actor.id:
            raise PermissionDenied("Not your collector profile")
        return doc

    def get(self, collector_id: str) -> Collector:
        return Collector.model_validate(self._get(collector_id))

    def for_user(self, user_id: str) -> Optional[Collector]:
        docs = self._store.get_documents(COLLECTORS, {"user_id": user_id}, limit=1)
        return Collector.model_validate(docs[0]) if docs else None

    def register(self, payload: CollectorIn, actor: Actor) -> Collector:
        if self.for_user(actor.id) is not None:
            raise CollectorExists(f"User {actor.id} already has a collector profile")
        now = self._clock()
        collector = Collector(
            user_id=actor.id,
            name=payload.name,
            phone=payload.phone,
            vehicle_type=payload.vehicle_type,
            capacity_kg=payload.capacity_kg,
            specializations=sorted(set(payload.specializations)),
            status="offline",
            created_at=now,
            updated_at=now,
        )
        collector.id = self._store.create_document(COLLECTORS, collector.model_dump(exclude={"id"}))
        logger.info("Registered collector %s (%s, %.0fkg)", collector.id, collector.vehicle_type, collector.capacity_kg)
        return collector

    def update_location(self, collector_id: str, point: GeoPoint, actor: Actor) -> Collector:
        self._owned(collector_id, actor)
        now = self._clock()
        updated = self._store.update_document(
            COLLECTORS,
            collector_id,
            {
                "location": point.model_dump(),
                "cell": geo.cell_id(point.lat, point.lng, self._settings.grid_cell_deg),
                "location_updated_at": now,
                "updated_at": now,
            },
        )
        if updated is None:
            raise NotFound("Collector", collector_id)
        return Collector.model_validate(updated)

    def set_availability(self, collector_id: str, online: bool, actor: Actor) -> Collector:
        """Go online (offline -> available) or offline (available -> offline)."""
        doc = self._owned(collector_id, actor)
        source, target = ("offline", "available") if online else ("available", "offline")
        if doc["status"] == target:
            return Collector.model_validate(doc)

        updated = self._store.update_document_if(
            COLLECTORS, collector_id, {"status": source}, {"status": target, "updated_at": self._clock()}
        )
        if updated is None:
            current = self._get(collector_id)["status"]
            if current == target:
                return self.get(collector_id)
            raise IllegalTransition(current, target, kind="collector")
        logger.info("Collector %s is now %s", collector_id, target)
        return Collector.model_validate(updated)
