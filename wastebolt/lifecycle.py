"""
Collection state machine.

    assigned -> en_route -> arrived -> collecting -> completed
    (any non-terminal state) -> cancelled

Every transition is a conditional write from the status it was evaluated
against, so each timeline field is stamped exactly once. Asking for the status
a collection is already in returns it unchanged.
"""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from database import Datastore
from schemas import (
    COLLECTIONS,
    COLLECTORS,
    WASTE_REQUESTS,
    Actor,
    Collection,
    CollectionRating,
    ProofPhoto,
    WasteRequest,
)
from wastebolt import notifications
from wastebolt.errors import AlreadyAssigned, AlreadyRated, IllegalTransition, NotFound, PermissionDenied
from wastebolt.notifications import Notifier
from wastebolt.settings import Settings

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    "assigned": "en_route",
    "en_route": "arrived",
    "arrived": "collecting",
    "collecting": "completed",
}
TERMINAL = frozenset({"completed", "cancelled"})
PARTY_CANCELLABLE = frozenset({"assigned", "en_route", "arrived"})
PHOTO_STATUSES = frozenset({"arrived", "collecting", "completed"})
TIMELINE_FIELD = {
    "assigned": "assigned_at",
    "en_route": "en_route_at",
    "arrived": "arrived_at",
    "collecting": "started_at",
    "completed": "completed_at",
    "cancelled": "cancelled_at",
}
ACTIVE_REQUEST = ["accepted", "in_progress"]

MAX_CAS_ATTEMPTS = 5
# first pause while a request is accepted but its collection is not written yet
ASSIGN_SETTLE_S = 0.05


def is_noop(current: str, target: str) -> bool:
    """True if target is already reached; raises if the move is not allowed."""
    if current == target:
        return True
    if current in TERMINAL:
        raise IllegalTransition(current, target)
    if target == "cancelled" or NEXT_STATUS.get(current) == target:
        return False
    raise IllegalTransition(current, target)


def party_of(doc: Dict[str, Any], actor: Actor) -> str:
    if actor.role == "admin":
        return "admin"
    if actor.id == doc["collector_user_id"]:
        return "collector"
    if actor.id == doc["customer_id"]:
        return "customer"
    raise PermissionDenied("Not a party to this collection")


class CollectionStateMachine:
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

    def _get(self, collection_name: str, kind: str, doc_id: str) -> Dict[str, Any]:
        doc = self._store.get_document(collection_name, doc_id)
        if doc is None:
            raise NotFound(kind, doc_id)
        return doc

    def get(self, collection_id: str, actor: Actor) -> Collection:
        doc = self._get(COLLECTIONS, "Collection", collection_id)
        party_of(doc, actor)
        return Collection.model_validate(doc)

    @staticmethod
    def _authorize(party: str, current: str, target: str) -> None:
        if party == "admin":
            return
        if target == "cancelled":
            if current not in PARTY_CANCELLABLE and current not in TERMINAL:
                raise PermissionDenied("Only the platform can cancel once collection has started")
        elif party != "collector":
            raise PermissionDenied("Only the assigned collector can update collection progress")

    def transition(
        self,
        collection_id: str,
        target: str,
        actor: Actor,
        reason: Optional[str] = None,
        cancel_request: bool = False,
    ) -> Collection:
        """
        Move a collection to target on behalf of actor.

        Cancelling releases the request for re-dispatch unless the customer
        cancelled or cancel_request is set, in which case the request is
        cancelled too.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            now = self._clock()
            doc = self._get(COLLECTIONS, "Collection", collection_id)
            current = doc["status"]
            party = party_of(doc, actor)
            self._authorize(party, current, target)
            if is_noop(current, target):
                return Collection.model_validate(doc)

            changes: Dict[str, Any] = {
                "status": target,
                f"timeline.{TIMELINE_FIELD[target]}": now,
                "updated_at": now,
            }
            if target == "completed":
                changes.update(self._settle(doc["payment"], now))
            elif target == "cancelled":
                changes.update({
                    "payment.status": "void",
                    "cancelled_by": party,
                    "cancel_reason": reason,
                })

            updated = self._store.update_document_if(COLLECTIONS, collection_id, {"status": current}, changes)
            if updated is None:
                logger.debug("Collection %s changed while moving to %s; re-evaluating", collection_id, target)
                continue

            logger.info("Collection %s: %s -> %s by %s", collection_id, current, target, party)
            self._on_enter(updated, target, party, now, cancel_request, reason)
            return Collection.model_validate(updated)

        raise IllegalTransition(doc["status"], target)

    def _settle(self, payment: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        amount = payment["amount"]
        commission = round(amount * payment["commission_rate"], 2)
        net = round(amount - commission - payment["platform_fee"], 2)
        return {
            "payment.commission": commission,
            "payment.collector_net": net,
            "payment.status": "paid",
            "payment.paid_at": now,
        }

    def _on_enter(
        self,
        doc: Dict[str, Any],
        target: str,
        party: str,
        now: datetime,
        cancel_request: bool,
        reason: Optional[str],
    ) -> None:
        request_id = doc["request_id"]
        request = self._store.get_document(WASTE_REQUESTS, request_id) or {}
        phone = request.get("contact_phone")

        if target == "collecting":
            self._set_request(request_id, ["accepted"], {"status": "in_progress"}, now)

        elif target == "completed":
            net = doc["payment"]["collector_net"]
            released = self._store.update_document_if(
                COLLECTORS,
                doc["collector_id"],
                {"status": "busy"},
                {"status": "available", "updated_at": now},
                inc={"completed_jobs": 1, "total_earnings": net},
            )
            if released is None:
                logger.warning("Collector %s was not busy at completion of %s", doc["collector_id"], doc["id"])
            self._set_request(request_id, ACTIVE_REQUEST, {"status": "completed"}, now)
            self._notifier.send(phone, notifications.payment_confirmation(request_id, doc["payment"]["amount"]))

        elif target == "cancelled":
            self._store.update_document_if(
                COLLECTORS, doc["collector_id"], {"status": "busy"}, {"status": "available", "updated_at": now}
            )
            if party == "customer" or cancel_request:
                self._set_request(
                    request_id, ACTIVE_REQUEST, {"status": "cancelled", "cancel_reason": reason or "cancelled"}, now
                )
            else:
                self._set_request(request_id, ACTIVE_REQUEST, {"status": "pending"}, now)
                logger.info("Request %s released for re-dispatch", request_id)

        self._notifier.send(phone, notifications.status_update(request_id, target))

    def _set_request(self, request_id: str, from_statuses, changes: Dict[str, Any], now: datetime) -> None:
        changes = dict(changes, updated_at=now)
        updated = self._store.update_document_if(
            WASTE_REQUESTS, request_id, {"status": {"$in": list(from_statuses)}}, changes
        )
        if updated is None:
            logger.warning("Request %s not in %s; left unchanged", request_id, from_statuses)

    # ------------------ Request-level cancel ------------------
    def cancel_request(self, request_id: str, actor: Actor, reason: Optional[str] = None) -> WasteRequest:
        """Customer (or admin) withdraws a request, cancelling any active collection."""
        for attempt in range(MAX_CAS_ATTEMPTS):
            request = self._get(WASTE_REQUESTS, "Request", request_id)
            if actor.role != "admin" and actor.id != request["user_id"]:
                raise PermissionDenied("Only the customer can cancel this request")
            status = request["status"]
            if status == "cancelled":
                return WasteRequest.model_validate(request)
            if status == "completed":
                raise IllegalTransition(status, "cancelled")

            if status == "pending":
                updated = self._store.update_document_if(
                    WASTE_REQUESTS,
                    request_id,
                    {"status": "pending"},
                    {"status": "cancelled", "cancel_reason": reason or "cancelled", "updated_at": self._clock()},
                )
                if updated is not None:
                    logger.info("Request %s cancelled while pending", request_id)
                    return WasteRequest.model_validate(updated)
                continue

            active = self._store.get_documents(
                COLLECTIONS, {"request_id": request_id, "status": {"$nin": list(TERMINAL)}}, limit=1
            )
            if active:
                self.transition(active[0]["id"], "cancelled", actor, reason=reason, cancel_request=True)
                return WasteRequest.model_validate(self._get(WASTE_REQUESTS, "Request", request_id))
            if attempt < MAX_CAS_ATTEMPTS - 1:
                logger.debug("Request %s is %s without a collection yet; waiting", request_id, status)
                time.sleep(ASSIGN_SETTLE_S * 2 ** attempt)
        raise AlreadyAssigned(
            f"Request {request_id} is being assigned; retry shortly", target="request", retry_after_s=1
        )

    # ------------------ Ratings ------------------
    def rate(self, collection_id: str, actor: Actor, collector_rating: int, feedback: Optional[str] = None) -> Collection:
        now = self._clock()
        doc = self._get(COLLECTIONS, "Collection", collection_id)
        if actor.id != doc["customer_id"]:
            raise PermissionDenied("Only the customer can rate a collection")
        if doc["status"] != "completed":
            raise IllegalTransition(doc["status"], "rated")

        rating = CollectionRating(user_id=actor.id, collector_rating=collector_rating, feedback=feedback, rated_at=now)
        updated = self._store.update_document_if(
            COLLECTIONS,
            collection_id,
            {"status": "completed", "rating": None},
            {"rating": rating.model_dump(), "updated_at": now},
        )
        if updated is None:
            raise AlreadyRated(f"Collection {collection_id} has already been rated")

        self._apply_rating(doc["collector_id"], collector_rating, now)
        return Collection.model_validate(updated)

    def _apply_rating(self, collector_id: str, score: int, now: datetime) -> None:
        while True:
            collector = self._get(COLLECTORS, "Collector", collector_id)
            count = collector.get("rating_count", 0)
            average = ((collector.get("rating_avg", 0.0) * count) + score) / (count + 1)
            updated = self._store.update_document_if(
                COLLECTORS,
                collector_id,
                {"rating_count": count},
                {"rating_avg": round(average, 3), "updated_at": now},
                inc={"rating_count": 1},
            )
            if updated is not None:
                logger.debug("Collector %s rating now %.2f over %d", collector_id, average, count + 1)
                return

    # ------------------ Proof photos ------------------
    def check_photo_allowed(self, collection_id: str, actor: Actor) -> Dict[str, Any]:
        """Raise unless actor may add a proof photo to the collection now."""
        doc = self._get(COLLECTIONS, "Collection", collection_id)
        if party_of(doc, actor) == "customer":
            raise PermissionDenied("Only the collector can upload proof photos")
        if doc["status"] not in PHOTO_STATUSES:
            raise IllegalTransition(doc["status"], "photo")
        return doc

    def attach_photo(self, collection_id: str, actor: Actor, url: str, phash: str) -> ProofPhoto:
        while True:
            now = self._clock()
            doc = self.check_photo_allowed(collection_id, actor)

            dupes = self._store.get_documents(
                COLLECTIONS, {"photos.phash": phash, "request_id": {"$ne": doc["request_id"]}}, limit=1
            )
            photo = ProofPhoto(
                url=url, phash=phash, duplicate_of=dupes[0]["id"] if dupes else None, uploaded_at=now
            )
            photos = list(doc.get("photos") or []) + [photo.model_dump()]
            updated = self._store.update_document_if(
                COLLECTIONS,
                collection_id,
                {"updated_at": doc["updated_at"]},
                {"photos": photos, "updated_at": now},
            )
            if updated is not None:
                if photo.duplicate_of:
                    logger.warning("Photo on %s duplicates collection %s", collection_id, photo.duplicate_of)
                return photo
