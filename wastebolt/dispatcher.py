"""
Matching pending requests to collectors.

assign() flips the collector available -> busy and the request
pending -> accepted with two conditional writes. Whichever write loses a race
makes the call fail with AlreadyAssigned; a flip that already went through is
undone before raising, so a failed assign leaves no Collection and no busy
collector behind.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from database import Datastore
from schemas import (
    COLLECTIONS,
    COLLECTORS,
    WASTE_REQUESTS,
    Candidate,
    Collection,
    Collector,
    GeoPoint,
    Payment,
    Timeline,
)
from wastebolt import geo, notifications
from wastebolt.errors import AlreadyAssigned, NoCandidatesFound, NotFound, ValidationError
from wastebolt.notifications import Notifier
from wastebolt.settings import Settings

logger = logging.getLogger(__name__)

# Scheduled pickups are only auto-dispatched this close to their slot
SCHEDULE_LEAD = timedelta(hours=1)


class Dispatcher:
    def __init__(
        self,
        store: Datastore,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime],
    ):
        self._store = store
        self._notifier = notifier
        self._settings = settings
        self._clock = clock

    # ------------------ Candidate search ------------------
    def find_candidates(
        self,
        location: GeoPoint,
        waste_type: str,
        quantity: float,
        now: Optional[datetime] = None,
    ) -> List[Candidate]:
        """Eligible available collectors, best rated first, then nearest."""
        now = now or self._clock()
        cfg = self._settings
        cells = geo.cells_within(location.lat, location.lng, cfg.dispatch_radius_km, cfg.grid_cell_deg)
        query = {
            "status": "available",
            "specializations": waste_type,
            "capacity_kg": {"$gte": quantity},
            "cell": {"$in": cells},
            "location_updated_at": {"$gte": now - timedelta(minutes=cfg.location_max_age_minutes)},
        }

        candidates: List[Candidate] = []
        for doc in self._store.get_documents(COLLECTORS, query):
            point = doc.get("location")
            if not point:
                continue
            distance = geo.haversine_km(location.lat, location.lng, point["lat"], point["lng"])
            if distance <= cfg.dispatch_radius_km:
                candidates.append(Candidate(collector=Collector.model_validate(doc), distance_km=round(distance, 3)))

        candidates.sort(key=lambda c: (-c.collector.rating_avg, c.distance_km))
        return candidates

    def candidates_for_request(self, request_id: str) -> List[Candidate]:
        request = self._get(WASTE_REQUESTS, "Request", request_id)
        return self.find_candidates(
            GeoPoint(**request["location"]["coordinates"]), request["waste_type"], request["quantity"]
        )

    # ------------------ Assignment ------------------
    def _get(self, collection_name: str, kind: str, doc_id: str) -> Dict[str, Any]:
        doc = self._store.get_document(collection_name, doc_id)
        if doc is None:
            raise NotFound(kind, doc_id)
        return doc

    def _release_collector(self, collector_id: str, now: datetime) -> None:
        released = self._store.update_document_if(
            COLLECTORS, collector_id, {"status": "busy"}, {"status": "available", "updated_at": now}
        )
        if released is None:
            logger.warning("Collector %s was not busy when releasing it", collector_id)

    def assign(self, request_id: str, collector_id: str) -> Collection:
        now = self._clock()
        request = self._get(WASTE_REQUESTS, "Request", request_id)
        collector = self._get(COLLECTORS, "Collector", collector_id)
        waste_type, quantity = request["waste_type"], request["quantity"]

        if waste_type not in collector.get("specializations", []) or collector["capacity_kg"] < quantity:
            raise ValidationError([{
                "field": "collector_id",
                "message": f"collector cannot carry {quantity:g} kg of {waste_type}",
            }])
        if request["status"] != "pending":
            raise AlreadyAssigned(f"Request {request_id} is {request['status']}", target="request")

        claimed = self._store.update_document_if(
            COLLECTORS,
            collector_id,
            {"status": "available", "specializations": waste_type, "capacity_kg": {"$gte": quantity}},
            {"status": "busy", "updated_at": now},
        )
        if claimed is None:
            raise AlreadyAssigned(f"Collector {collector_id} is not available", target="collector")

        accepted = self._store.update_document_if(
            WASTE_REQUESTS, request_id, {"status": "pending"}, {"status": "accepted", "updated_at": now}
        )
        if accepted is None:
            self._release_collector(collector_id, now)
            raise AlreadyAssigned(f"Request {request_id} is no longer pending", target="request")

        collection = Collection(
            request_id=request_id,
            collector_id=collector_id,
            customer_id=request["user_id"],
            collector_user_id=collector["user_id"],
            status="assigned",
            timeline=Timeline(assigned_at=now),
            payment=Payment(
                amount=request["price_estimate"]["final_price"],
                commission_rate=self._settings.commission_rate,
                platform_fee=self._settings.platform_fee,
            ),
            created_at=now,
            updated_at=now,
        )
        try:
            collection.id = self._store.create_document(COLLECTIONS, collection.model_dump(exclude={"id"}))
        except Exception:
            logger.exception("Could not persist collection for request %s; rolling back", request_id)
            self._store.update_document_if(
                WASTE_REQUESTS, request_id, {"status": "accepted"}, {"status": "pending", "updated_at": now}
            )
            self._release_collector(collector_id, now)
            raise

        logger.info("Assigned request %s to collector %s (collection %s)", request_id, collector_id, collection.id)
        self._notifier.send(
            request.get("contact_phone"),
            notifications.status_update(request_id, "assigned", collector.get("name")),
        )
        return collection

    def auto_dispatch(self, request_id: str) -> Collection:
        """Assign the best eligible collector, moving down the list on lost races."""
        candidates = self.candidates_for_request(request_id)
        if not candidates:
            raise NoCandidatesFound(f"No eligible collector near request {request_id}", request_id=request_id)

        for candidate in candidates:
            try:
                return self.assign(request_id, candidate.collector.id)
            except AlreadyAssigned as e:
                if e.extra.get("target") == "request":
                    raise
                logger.debug("Collector %s taken meanwhile; trying next", candidate.collector.id)
        raise NoCandidatesFound(f"All candidates for request {request_id} were taken", request_id=request_id)

    # ------------------ Notifications ------------------
    def notify_nearby_collectors(self, request: Dict[str, Any]) -> int:
        candidates = self.find_candidates(
            GeoPoint(**request["location"]["coordinates"]), request["waste_type"], request["quantity"]
        )
        for candidate in candidates:
            self._notifier.send(
                candidate.collector.phone,
                notifications.new_request_for_collector(request, candidate.distance_km),
            )
        logger.info("Notified %d collectors about request %s", len(candidates), request["id"])
        return len(candidates)

    # ------------------ Background sweeps ------------------
    def _pending_since(self, request: Dict[str, Any]) -> datetime:
        since = request["updated_at"]
        scheduled = (request.get("time_window") or {}).get("scheduled_time")
        if scheduled is not None and scheduled > since:
            return scheduled
        return since

    def expire_stale_requests(self, now: Optional[datetime] = None) -> int:
        """Cancel requests left pending past the timeout and tell the customer."""
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self._settings.pending_timeout_minutes)
        expired = 0
        for request in self._store.get_documents(WASTE_REQUESTS, {"status": "pending", "updated_at": {"$lt": cutoff}}):
            if self._pending_since(request) >= cutoff:
                continue
            cancelled = self._store.update_document_if(
                WASTE_REQUESTS,
                request["id"],
                {"status": "pending", "updated_at": request["updated_at"]},
                {"status": "cancelled", "cancel_reason": "no_collector_found", "updated_at": now},
            )
            if cancelled is None:
                continue
            expired += 1
            logger.info("Request %s expired without a collector", request["id"])
            self._notifier.send(request.get("contact_phone"), notifications.request_expired(request["id"]))
        return expired

    def redispatch_pending(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        now = now or self._clock()
        assigned = 0
        due = {
            "status": "pending",
            "$or": [
                {"time_window.scheduled_time": None},
                {"time_window.scheduled_time": {"$lte": now + SCHEDULE_LEAD}},
            ],
        }
        pending = self._store.get_documents(WASTE_REQUESTS, due, sort=[("created_at", 1)], limit=limit)
        for request in pending:
            try:
                self.auto_dispatch(request["id"])
                assigned += 1
            except (NoCandidatesFound, AlreadyAssigned) as e:
                logger.debug("Request %s not dispatched: %s", request["id"], e.detail)
        if assigned:
            logger.info("Re-dispatch sweep assigned %d of %d pending requests", assigned, len(pending))
        return assigned
