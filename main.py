import io
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

import imagehash
import numpy as np
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel
from sklearn.cluster import KMeans

from schemas import (
    COLLECTIONS,
    COLLECTORS,
    USERS,
    WASTE_REQUESTS,
    Actor,
    AvailabilityUpdate,
    CancelIn,
    Candidate,
    Collection,
    CollectionRequestIn,
    Collector,
    CollectorIn,
    GeoPoint,
    LocationUpdate,
    PickupRouteRequest,
    PriceEstimate,
    ProofPhoto,
    RatingIn,
    StatusUpdate,
    SurgeOverrideIn,
    SurgeState,
    User,
    WasteRequest,
)
from wastebolt import geo
from wastebolt.auth import (
    create_access_token,
    get_current_actor,
    get_password_hash,
    require_role,
    verify_password,
)
from wastebolt.container import Services, build_services
from wastebolt.errors import DispatchError, NotFound, PermissionDenied, ValidationError
from wastebolt.logs import configure_logging
from wastebolt.settings import Settings

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)
    os.makedirs(settings.storage_dir, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.start()
        yield
        services.shutdown()

    app = FastAPI(title="Waste Collection Dispatch API", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=422, content=ValidationError(errors).to_dict())

    _register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


# ------------------ Auth helpers ------------------
class Token(BaseModel):
    access_token: str
    token_type: str


def _issue_token(services: Services, user_id: str, role: str) -> Dict[str, str]:
    token = create_access_token(
        {"sub": user_id, "role": role},
        services.settings.jwt_secret,
        timedelta(minutes=services.settings.access_token_expire_minutes),
    )
    return {"access_token": token, "token_type": "bearer"}


# ------------------ File Storage (local disk; swap for object storage in prod) ------------------
def save_image_locally(storage_dir: str, prefix: str, filename: Optional[str], contents: bytes) -> str:
    safe_name = os.path.basename(filename or "photo.jpg")
    path = os.path.join(storage_dir, f"{prefix}_{uuid.uuid4().hex[:8]}_{safe_name}")
    with open(path, "wb") as f:
        f.write(contents)
    return path


def image_perceptual_hash(image_bytes: bytes) -> str:
    return str(imagehash.phash(Image.open(io.BytesIO(image_bytes))))


def _register_routes(app: FastAPI) -> None:
    # ------------------ Public & Utility ------------------
    @app.get("/")
    def read_root():
        return {"message": "Waste Collection Dispatch Backend Running"}

    @app.get("/test")
    def test_database(services: Services = Depends(get_services)):
        try:
            collections = services.store.list_collection_names()
            return {
                "backend": "✅ Running",
                "database": "✅ Connected",
                "collections": collections[:10],
            }
        except Exception as e:
            return {"backend": "✅ Running", "database": f"❌ {str(e)[:80]}"}

    # ------------------ Auth Endpoints (email) ------------------
    @app.post("/auth/register", response_model=Token)
    def register(
        name: str = Form(...),
        email: str = Form(...),
        password: str = Form(...),
        role: str = Form("user"),
        phone: Optional[str] = Form(None),
        services: Services = Depends(get_services),
    ):
        if role not in ("user", "collector"):
            raise ValidationError([{"field": "role", "message": "must be 'user' or 'collector'"}])
        if services.store.get_documents(USERS, {"email": email}, limit=1):
            raise HTTPException(status_code=400, detail="Email already registered")
        if email.lower() in services.settings.admin_emails:
            role = "admin"
        user = User(
            name=name,
            email=email,
            password_hash=get_password_hash(password),
            role=role,
            provider="email",
            phone=phone,
        )
        uid = services.store.create_document(USERS, user)
        logger.info("Registered %s account %s", user.role, uid)
        return _issue_token(services, uid, user.role)

    @app.post("/auth/login", response_model=Token)
    def login(form_data: OAuth2PasswordRequestForm = Depends(), services: Services = Depends(get_services)):
        users = services.store.get_documents(USERS, {"email": form_data.username}, limit=1)
        user = users[0] if users else None
        if not user or not verify_password(form_data.password, user.get("password_hash", "")):
            raise HTTPException(status_code=400, detail="Incorrect email or password")
        return _issue_token(services, user["id"], user.get("role", "user"))

    # ------------------ Pricing ------------------
    @app.post("/pricing/estimate", response_model=PriceEstimate)
    def estimate_price(candidate: CollectionRequestIn, services: Services = Depends(get_services)):
        return services.intake.quote(candidate)

    # ------------------ Requests ------------------
    @app.post("/requests", response_model=WasteRequest, status_code=201)
    def create_request(
        candidate: CollectionRequestIn,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.intake.submit(candidate, actor)

    @app.get("/requests", response_model=List[WasteRequest])
    def list_requests(
        status: Optional[str] = None,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        filt: Dict[str, Any] = {}
        if actor.role != "admin":
            filt["user_id"] = actor.id
        if status:
            filt["status"] = status
        docs = services.store.get_documents(WASTE_REQUESTS, filt, sort=[("created_at", -1)], limit=200)
        return [WasteRequest.model_validate(d) for d in docs]

    @app.get("/requests/{request_id}", response_model=WasteRequest)
    def get_request(
        request_id: str,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        doc = services.store.get_document(WASTE_REQUESTS, request_id)
        if doc is None:
            raise NotFound("Request", request_id)
        if actor.role == "user" and doc["user_id"] != actor.id:
            raise PermissionDenied("Not your request")
        return WasteRequest.model_validate(doc)

    @app.post("/requests/{request_id}/cancel", response_model=WasteRequest)
    def cancel_request(
        request_id: str,
        body: Optional[CancelIn] = None,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.lifecycle.cancel_request(request_id, actor, reason=body.reason if body else None)

    @app.get("/requests/{request_id}/candidates", response_model=List[Candidate])
    def request_candidates(
        request_id: str,
        actor: Actor = Depends(require_role(["admin", "collector"])),
        services: Services = Depends(get_services),
    ):
        return services.dispatcher.candidates_for_request(request_id)

    @app.post("/requests/{request_id}/dispatch", response_model=Collection)
    def dispatch_request(
        request_id: str,
        actor: Actor = Depends(require_role(["admin"])),
        services: Services = Depends(get_services),
    ):
        return services.dispatcher.auto_dispatch(request_id)

    @app.post("/requests/{request_id}/assign/{collector_id}", response_model=Collection)
    def assign_request(
        request_id: str,
        collector_id: str,
        actor: Actor = Depends(require_role(["admin"])),
        services: Services = Depends(get_services),
    ):
        return services.dispatcher.assign(request_id, collector_id)

    @app.post("/requests/{request_id}/accept", response_model=Collection)
    def accept_request(
        request_id: str,
        actor: Actor = Depends(require_role(["collector"])),
        services: Services = Depends(get_services),
    ):
        collector = services.collectors.for_user(actor.id)
        if collector is None:
            raise NotFound("Collector profile for user", actor.id)
        return services.dispatcher.assign(request_id, collector.id)

    # ------------------ Collectors ------------------
    @app.post("/collectors", response_model=Collector, status_code=201)
    def register_collector(
        payload: CollectorIn,
        actor: Actor = Depends(require_role(["collector", "admin"])),
        services: Services = Depends(get_services),
    ):
        return services.collectors.register(payload, actor)

    @app.get("/collectors/{collector_id}", response_model=Collector)
    def get_collector(
        collector_id: str,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.collectors.get(collector_id)

    @app.put("/collectors/{collector_id}/location", response_model=Collector)
    def update_collector_location(
        collector_id: str,
        update: LocationUpdate,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.collectors.update_location(collector_id, GeoPoint(lat=update.lat, lng=update.lng), actor)

    @app.put("/collectors/{collector_id}/availability", response_model=Collector)
    def update_collector_availability(
        collector_id: str,
        update: AvailabilityUpdate,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.collectors.set_availability(collector_id, update.online, actor)

    # ------------------ Collections ------------------
    @app.get("/collections/{collection_id}", response_model=Collection)
    def get_collection(
        collection_id: str,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.lifecycle.get(collection_id, actor)

    @app.post("/collections/{collection_id}/status", response_model=Collection)
    def update_collection_status(
        collection_id: str,
        update: StatusUpdate,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.lifecycle.transition(collection_id, update.status, actor, reason=update.reason)

    @app.post("/collections/{collection_id}/rating", response_model=Collection)
    def rate_collection(
        collection_id: str,
        rating: RatingIn,
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        return services.lifecycle.rate(collection_id, actor, rating.collector_rating, rating.feedback)

    @app.post("/collections/{collection_id}/photos", response_model=ProofPhoto, status_code=201)
    async def upload_collection_photo(
        collection_id: str,
        image: UploadFile = File(...),
        actor: Actor = Depends(get_current_actor),
        services: Services = Depends(get_services),
    ):
        services.lifecycle.check_photo_allowed(collection_id, actor)
        image_bytes = await image.read()
        try:
            phash = image_perceptual_hash(image_bytes)
        except UnidentifiedImageError:
            raise ValidationError([{"field": "image", "message": "not a readable image"}])
        saved_path = save_image_locally(services.settings.storage_dir, collection_id, image.filename, image_bytes)
        try:
            return services.lifecycle.attach_photo(collection_id, actor, saved_path, phash)
        except DispatchError:
            # the collection moved on between the check and the write
            os.remove(saved_path)
            raise

    # ------------------ Surge ------------------
    @app.get("/surge", response_model=List[SurgeState])
    def list_surge(services: Services = Depends(get_services)):
        return services.surge.active_states(services.clock())

    @app.post("/admin/surge", response_model=SurgeState, status_code=201)
    def publish_surge_override(
        override: SurgeOverrideIn,
        actor: Actor = Depends(require_role(["admin"])),
        services: Services = Depends(get_services),
    ):
        return services.surge.publish_override(
            GeoPoint(lat=override.lat, lng=override.lng),
            override.multiplier,
            override.reason,
            timedelta(minutes=override.duration_minutes),
            services.clock(),
        )

    # ------------------ Analytics ------------------
    @app.get("/analytics/summary")
    def analytics_summary(
        actor: Actor = Depends(require_role(["admin"])),
        services: Services = Depends(get_services),
    ):
        store = services.store
        collections_by_status = store.count_by(COLLECTIONS, "status")
        paid = store.get_documents(COLLECTIONS, {"payment.status": "paid"})
        finished = collections_by_status.get("completed", 0) + collections_by_status.get("cancelled", 0)
        return {
            "total_requests": store.count_documents(WASTE_REQUESTS),
            "requests_by_status": store.count_by(WASTE_REQUESTS, "status"),
            "requests_by_waste_type": store.count_by(WASTE_REQUESTS, "waste_type"),
            "collections_by_status": collections_by_status,
            "active_collectors": store.count_documents(COLLECTORS, {"status": {"$in": ["available", "busy"]}}),
            "completion_rate": round(collections_by_status.get("completed", 0) / finished, 3) if finished else None,
            "gross_volume": round(sum(c["payment"]["amount"] for c in paid), 2),
            "platform_revenue": round(
                sum(c["payment"]["commission"] + c["payment"]["platform_fee"] for c in paid), 2
            ),
        }

    @app.get("/analytics/hotspots")
    def analytics_hotspots(
        k: int = 4,
        actor: Actor = Depends(require_role(["admin"])),
        services: Services = Depends(get_services),
    ):
        points = services.store.get_documents(WASTE_REQUESTS, {"status": "pending"})
        if not points:
            return {"centers": []}
        X = np.array([[p["location"]["coordinates"]["lat"], p["location"]["coordinates"]["lng"]] for p in points])
        k = max(1, min(k, len(X)))
        km = KMeans(n_clusters=k, n_init=10, random_state=42)
        km.fit(X)
        sizes = np.bincount(km.labels_, minlength=k)
        return {
            "centers": [
                {"lat": float(c[0]), "lng": float(c[1]), "pending": int(n)}
                for c, n in zip(km.cluster_centers_, sizes)
            ]
        }

    # ------------------ Routing (nearest-neighbor heuristic) ------------------
    @app.post("/routes/optimize")
    def optimize_route(
        req: PickupRouteRequest,
        actor: Actor = Depends(require_role(["admin", "collector"])),
    ):
        pts = [req.start] + req.stops
        order = geo.nearest_neighbor_order([(p.lat, p.lng) for p in pts])
        route = [pts[i] for i in order]
        distance = sum(
            geo.haversine_km(a.lat, a.lng, b.lat, b.lng) for a, b in zip(route, route[1:])
        )
        return {"order": order, "route": [r.model_dump() for r in route], "distance_km": round(distance, 3)}


_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(_settings)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
