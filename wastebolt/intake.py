"""
Request intake: validate, price and persist a customer's pickup request.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from pydantic import TypeAdapter
from pydantic import ValidationError as ModelValidationError

from database import Datastore
from schemas import (
    URGENCIES,
    WASTE_REQUESTS,
    WASTE_TYPES,
    Actor,
    CollectionRequestIn,
    GeoPoint,
    Location,
    PriceEstimate,
    TimeWindow,
    WasteRequest,
)
from wastebolt import geo, notifications
from wastebolt.dispatcher import Dispatcher
from wastebolt.errors import ValidationError
from wastebolt.notifications import Notifier
from wastebolt.pricing import PricingEngine
from wastebolt.settings import Settings

logger = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _as_float(value: Any) -> Optional[float]:
    """Numbers and numeric strings as a float, anything else as None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_datetime(value: Any) -> Optional[datetime]:
    try:
        return _aware(_DATETIME.validate_python(value))
    except ModelValidationError:
        return None


class Parsed(NamedTuple):
    point: Optional[GeoPoint]
    quantity: Optional[float]
    scheduled_time: Optional[datetime]


class RequestIntake:
    def __init__(
        self,
        store: Datastore,
        pricing: PricingEngine,
        dispatcher: Dispatcher,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime],
    ):
        self._store = store
        self._pricing = pricing
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._settings = settings
        self._clock = clock

    def validate(self, candidate: CollectionRequestIn, now: datetime) -> List[Dict[str, str]]:
        """Return every problem with the candidate; an empty list means valid."""
        return self._parse(candidate, now)[0]

    def _parse(self, candidate: CollectionRequestIn, now: datetime) -> Tuple[List[Dict[str, str]], Parsed]:
        errors: List[Dict[str, str]] = []

        if not isinstance(candidate.waste_type, str) or candidate.waste_type not in WASTE_TYPES:
            errors.append({
                "field": "waste_type",
                "message": f"must be one of {', '.join(WASTE_TYPES)}",
            })

        qty = _as_float(candidate.quantity)
        if qty is None or not math.isfinite(qty) or qty <= 0 or qty > self._settings.max_quantity_kg:
            errors.append({
                "field": "quantity",
                "message": f"must be a number greater than 0 and at most {self._settings.max_quantity_kg:g} kg",
            })

        if not isinstance(candidate.urgency, str) or candidate.urgency not in URGENCIES:
            errors.append({"field": "urgency", "message": f"must be one of {', '.join(URGENCIES)}"})

        point = None
        loc = candidate.location
        if loc is None or loc.lat is None or loc.lng is None:
            errors.append({"field": "location", "message": "coordinates are required"})
        else:
            lat, lng = _as_float(loc.lat), _as_float(loc.lng)
            lat_ok = lat is not None and -90 <= lat <= 90
            lng_ok = lng is not None and -180 <= lng <= 180
            if not lat_ok:
                errors.append({"field": "location.lat", "message": "must be a number between -90 and 90"})
            if not lng_ok:
                errors.append({"field": "location.lng", "message": "must be a number between -180 and 180"})
            if lat_ok and lng_ok:
                point = GeoPoint(lat=lat, lng=lng)

        scheduled = None
        if candidate.preferred_time not in ("asap", "scheduled"):
            errors.append({"field": "preferred_time", "message": "must be 'asap' or 'scheduled'"})
        elif candidate.preferred_time == "scheduled":
            if candidate.scheduled_time is None:
                errors.append({"field": "scheduled_time", "message": "required for scheduled pickups"})
            else:
                scheduled = _as_datetime(candidate.scheduled_time)
                if scheduled is None:
                    errors.append({"field": "scheduled_time", "message": "must be an ISO 8601 datetime"})
                elif scheduled <= now:
                    errors.append({"field": "scheduled_time", "message": "must be in the future"})

        return errors, Parsed(point, qty, scheduled)

    def _checked(self, candidate: CollectionRequestIn, now: datetime) -> Parsed:
        errors, parsed = self._parse(candidate, now)
        if errors:
            raise ValidationError(errors)
        return parsed

    def quote(self, candidate: CollectionRequestIn) -> PriceEstimate:
        """Price a candidate request without persisting it."""
        now = self._clock()
        parsed = self._checked(candidate, now)
        return self._pricing.estimate(candidate.waste_type, parsed.quantity, candidate.urgency, parsed.point, now)

    def submit(self, candidate: CollectionRequestIn, actor: Actor) -> WasteRequest:
        now = self._clock()
        parsed = self._checked(candidate, now)
        point = parsed.point
        estimate = self._pricing.estimate(candidate.waste_type, parsed.quantity, candidate.urgency, point, now)

        request = WasteRequest(
            user_id=actor.id,
            waste_type=candidate.waste_type,
            quantity=parsed.quantity,
            urgency=candidate.urgency,
            location=Location(
                address=candidate.location.address,
                coordinates=point,
                cell=geo.cell_id(point.lat, point.lng, self._settings.grid_cell_deg),
            ),
            time_window=TimeWindow(
                preferred_time=candidate.preferred_time,
                requested_at=now,
                scheduled_time=parsed.scheduled_time,
            ),
            contact_phone=candidate.contact_phone,
            notes=candidate.notes,
            price_estimate=estimate,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        request.id = self._store.create_document(WASTE_REQUESTS, request.model_dump(exclude={"id"}))
        logger.info(
            "Accepted request %s: %s %.1fkg %s, %s %d",
            request.id, request.waste_type, request.quantity, request.urgency,
            estimate.currency, estimate.final_price,
        )

        doc = request.model_dump()
        self._notifier.send(request.contact_phone, notifications.request_confirmation(doc))
        self._notifier.submit(self._dispatcher.notify_nearby_collectors, doc)
        return request
