import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

import stripe
import uvicorn
from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import config
import database
from auth import Claims, find_active_subscription, get_current_user, has_entitlement, require_admin
from course_ordering import CourseOrderingService
from database import DocumentStore, ensure_indexes, get_store, to_object_id
from errors import CoursePlatformError
from reconciler import SubscriptionReconciler
from schemas import Course, Payment, RegionalPricing, Subscription, Video, WatchHistory

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a database")
    else:
        try:
            ensure_indexes(database.db)
        except PyMongoError as e:
            logger.error("Failed to create indexes: %s", e)
    yield


app = FastAPI(title="Course Platform API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Helpers
class CourseOut(Course):
    id: str
    video_order: List[str] = []


class VideoOut(Video):
    id: str
    course_id: Optional[str] = None


class SubscriptionOut(Subscription):
    id: str


class PaymentOut(Payment):
    id: str


class RegionalPricingOut(RegionalPricing):
    id: str


class WatchHistoryOut(WatchHistory):
    id: str


class VideoPositionIn(BaseModel):
    video_id: str
    position: int


class VideoOrderIn(BaseModel):
    video_order: List[str]


class CheckoutIn(BaseModel):
    plan_type: Literal["monthly", "yearly"]
    region: str


class PricingIn(BaseModel):
    currency: str
    monthly_price: int = Field(..., gt=0)
    yearly_price: int = Field(..., gt=0)
    currency_symbol: Optional[str] = None


class WatchProgressIn(BaseModel):
    progress_seconds: int = Field(..., ge=0)


class PaymentMethodIn(BaseModel):
    payment_method_id: str


class Pagination(BaseModel):
    page: int
    limit: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def pagination(page: int = 1, limit: int = 10) -> Pagination:
    if page < 1:
        page = 1
    if limit < 1 or limit > 100:
        limit = 10
    return Pagination(page=page, limit=limit)


def parse_id(value: str, name: str) -> ObjectId:
    obj_id = to_object_id(value)
    if obj_id is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name} id")
    return obj_id


def _public_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [_public_value(v) for v in value]
    return value


def to_public(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Render a stored document with string ids, "_id" becoming "id"."""
    return {("id" if k == "_id" else k): _public_value(v) for k, v in doc.items()}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _get_or_404(store: DocumentStore, collection: str, doc_id: ObjectId, label: str) -> Dict[str, Any]:
    doc = store.get(collection, doc_id)
    if doc is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


@app.exception_handler(CoursePlatformError)
async def platform_error_handler(request: Request, exc: CoursePlatformError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.get("/")
def root():
    return {"message": "Course Platform API running"}


@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "database_name": None,
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "connected"
            response["database_name"] = database.db.name
        except PyMongoError as e:
            response["database"] = f"error: {str(e)[:80]}"
    return response


# Courses
@app.get("/api/courses")
def list_courses(
    paging: Pagination = Depends(pagination),
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    docs = store.find("course", {}, skip=paging.skip, limit=paging.limit, sort=[("created_at", -1)])
    return {
        "courses": [CourseOut(**to_public(d)) for d in docs],
        "total": store.count("course"),
        "page": paging.page,
        "limit": paging.limit,
    }


@app.post("/api/courses", response_model=CourseOut, status_code=201)
def create_course(
    course: Course,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    doc = course.model_dump()
    doc.update(
        video_order=[],
        created_by=to_object_id(user.user_id),
        created_at=_now(),
        updated_at=_now(),
    )
    doc["_id"] = store.insert("course", doc)
    return CourseOut(**to_public(doc))


@app.get("/api/courses/{course_id}")
def get_course(
    course_id: str,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(course_id, "course")
    doc = _get_or_404(store, "course", obj_id, "Course")
    videos = CourseOrderingService(store).resolve(obj_id)
    return {
        "course": CourseOut(**to_public(doc)),
        "videos": [VideoOut(**to_public(v)) for v in videos],
    }


@app.put("/api/courses/{course_id}", response_model=CourseOut)
def update_course(
    course_id: str,
    course: Course,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(course_id, "course")
    _get_or_404(store, "course", obj_id, "Course")
    update_data = course.model_dump()
    update_data["updated_at"] = _now()
    store.update_fields("course", obj_id, update_data)
    return CourseOut(**to_public(store.get("course", obj_id)))


@app.delete("/api/courses/{course_id}")
def delete_course(
    course_id: str,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(course_id, "course")
    if not store.delete("course", obj_id):
        raise HTTPException(status_code=404, detail="Course not found")
    detached = store.update_many("video", {"course_id": obj_id}, {"course_id": None})
    logger.info("Deleted course %s, detached %d videos", obj_id, detached)
    return {"status": "ok"}


# Course video order
@app.get("/api/courses/{course_id}/videos", response_model=List[VideoOut])
def list_course_videos(
    course_id: str,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    videos = CourseOrderingService(store).resolve(parse_id(course_id, "course"))
    return [VideoOut(**to_public(v)) for v in videos]


@app.post("/api/courses/{course_id}/videos")
def add_video_to_course(
    course_id: str,
    body: VideoPositionIn,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(course_id, "course")
    video_id = parse_id(body.video_id, "video")
    video = _get_or_404(store, "video", video_id, "Video")
    owner = video.get("course_id")
    if owner is not None and owner != obj_id:
        raise HTTPException(status_code=409, detail="Video belongs to another course")

    order = CourseOrderingService(store).insert_at(obj_id, video_id, body.position)
    if owner is None:
        store.update_fields("video", video_id, {"course_id": obj_id})
    return {"video_order": _public_value(order)}


@app.put("/api/courses/{course_id}/videos/order")
def reorder_course_videos(
    course_id: str,
    body: VideoOrderIn,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(course_id, "course")
    new_order = [parse_id(v, "video") for v in body.video_order]
    order = CourseOrderingService(store).reorder(obj_id, new_order)
    return {"video_order": _public_value(order)}


@app.delete("/api/courses/{course_id}/videos/{video_id}")
def remove_video_from_course(
    course_id: str,
    video_id: str,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    order = CourseOrderingService(store).remove(parse_id(course_id, "course"), parse_id(video_id, "video"))
    return {"video_order": _public_value(order)}


# Videos
@app.get("/api/videos")
def list_videos(
    course_id: Optional[str] = None,
    paging: Pagination = Depends(pagination),
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    filter_query = {}
    if course_id is not None:
        filter_query["course_id"] = parse_id(course_id, "course")
    docs = store.find("video", filter_query, skip=paging.skip, limit=paging.limit, sort=[("created_at", -1)])
    return {
        "videos": [VideoOut(**to_public(d)) for d in docs],
        "total": store.count("video", filter_query),
        "page": paging.page,
        "limit": paging.limit,
    }


@app.post("/api/videos", response_model=VideoOut, status_code=201)
def create_video(
    video: Video,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    course_id = parse_id(video.course_id, "course")
    course = _get_or_404(store, "course", course_id, "Course")

    doc = video.model_dump()
    doc.update(course_id=course_id, created_at=_now())
    doc["_id"] = store.insert("video", doc)

    try:
        CourseOrderingService(store).insert_at(course_id, doc["_id"], len(course.get("video_order") or []))
    except CoursePlatformError:
        # the video must not outlive a failed append
        store.delete("video", doc["_id"])
        raise
    return VideoOut(**to_public(doc))


# Watch history
@app.get("/api/videos/history")
def list_watch_history(
    paging: Pagination = Depends(pagination),
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    filter_query = {"user_id": to_object_id(user.user_id)}
    docs = store.find(
        "watch_history", filter_query, skip=paging.skip, limit=paging.limit, sort=[("last_watched_at", -1)]
    )
    return {
        "history": [WatchHistoryOut(**to_public(d)) for d in docs],
        "total": store.count("watch_history", filter_query),
        "page": paging.page,
        "limit": paging.limit,
    }


@app.post("/api/videos/{video_id}/watch", response_model=WatchHistoryOut)
def update_watch_history(
    video_id: str,
    body: WatchProgressIn,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(video_id, "video")
    _get_or_404(store, "video", obj_id, "Video")
    key = {"user_id": to_object_id(user.user_id), "video_id": obj_id}
    store.upsert_fields(
        "watch_history", key, {"progress_seconds": body.progress_seconds, "last_watched_at": _now()}
    )
    return WatchHistoryOut(**to_public(store.find_one("watch_history", key)))


@app.get("/api/videos/{video_id}", response_model=VideoOut)
def get_video(
    video_id: str,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    doc = _get_or_404(store, "video", parse_id(video_id, "video"), "Video")
    if doc.get("is_paid") and not has_entitlement(store, user):
        raise HTTPException(status_code=403, detail="Active subscription required")
    return VideoOut(**to_public(doc))


@app.put("/api/videos/{video_id}", response_model=VideoOut)
def update_video(
    video_id: str,
    video: Video,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(video_id, "video")
    existing = _get_or_404(store, "video", obj_id, "Video")
    new_course_id = parse_id(video.course_id, "course")

    if existing.get("course_id") != new_course_id:
        new_course = _get_or_404(store, "course", new_course_id, "Course")
        if existing.get("course_id") is not None:
            store.pull("course", {"_id": existing["course_id"]}, "video_order", obj_id)
        CourseOrderingService(store).insert_at(new_course_id, obj_id, len(new_course.get("video_order") or []))

    update_data = video.model_dump()
    update_data["course_id"] = new_course_id
    store.update_fields("video", obj_id, update_data)
    return VideoOut(**to_public(store.get("video", obj_id)))


@app.delete("/api/videos/{video_id}")
def delete_video(
    video_id: str,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    obj_id = parse_id(video_id, "video")
    _get_or_404(store, "video", obj_id, "Video")
    store.delete("video", obj_id)

    # every course listing the id, however many times, drops it
    try:
        cleaned = store.pull("course", {"video_order": obj_id}, "video_order", obj_id)
        logger.info("Deleted video %s, removed from %d course orders", obj_id, cleaned)
    except CoursePlatformError as e:
        logger.warning("Could not remove video %s from course orders: %s", obj_id, e)
    return {"status": "ok"}


# Subscriptions
def _own_subscription(store: DocumentStore, subscription_id: str, user: Claims) -> Dict[str, Any]:
    doc = _get_or_404(store, "subscription", parse_id(subscription_id, "subscription"), "Subscription")
    if str(doc.get("user_id")) != user.user_id:
        raise HTTPException(status_code=403, detail="Not authorized to access this subscription")
    return doc


@app.get("/api/subscriptions")
def list_subscriptions(
    paging: Pagination = Depends(pagination),
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    filter_query = {"user_id": to_object_id(user.user_id)}
    docs = store.find("subscription", filter_query, skip=paging.skip, limit=paging.limit, sort=[("created_at", -1)])
    return {
        "subscriptions": [SubscriptionOut(**to_public(d)) for d in docs],
        "total": store.count("subscription", filter_query),
        "page": paging.page,
        "limit": paging.limit,
    }


@app.get("/api/subscriptions/active", response_model=SubscriptionOut)
def get_active_subscription(
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    doc = find_active_subscription(store, user.user_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="No active subscription")
    return SubscriptionOut(**to_public(doc))


@app.get("/api/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(
    subscription_id: str,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    return SubscriptionOut(**to_public(_own_subscription(store, subscription_id, user)))


def _set_subscription_fields(store: DocumentStore, subscription_id: str, user: Claims, fields: Dict[str, Any]):
    doc = _own_subscription(store, subscription_id, user)
    fields["updated_at"] = _now()
    store.update_fields("subscription", doc["_id"], fields)
    return SubscriptionOut(**to_public(store.get("subscription", doc["_id"])))


@app.post("/api/subscriptions/{subscription_id}/cancel", response_model=SubscriptionOut)
def cancel_subscription(
    subscription_id: str,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    return _set_subscription_fields(
        store, subscription_id, user, {"status": "canceled", "cancel_at_period_end": True}
    )


@app.post("/api/subscriptions/{subscription_id}/reactivate", response_model=SubscriptionOut)
def reactivate_subscription(
    subscription_id: str,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    return _set_subscription_fields(
        store, subscription_id, user, {"status": "active", "cancel_at_period_end": False}
    )


@app.put("/api/subscriptions/{subscription_id}/payment-method", response_model=SubscriptionOut)
def update_payment_method(
    subscription_id: str,
    body: PaymentMethodIn,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    return _set_subscription_fields(
        store, subscription_id, user, {"payment_method_id": body.payment_method_id}
    )


# Payments
@app.get("/api/payments")
def list_payments(
    paging: Pagination = Depends(pagination),
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    filter_query = {"user_id": to_object_id(user.user_id)}
    docs = store.find("payment", filter_query, skip=paging.skip, limit=paging.limit, sort=[("timestamp", -1)])
    return {
        "payments": [PaymentOut(**to_public(d)) for d in docs],
        "total": store.count("payment", filter_query),
        "page": paging.page,
        "limit": paging.limit,
    }


def _regional_pricing(store: DocumentStore, region: str) -> Optional[Dict[str, Any]]:
    return store.find_one("regional_pricing", {"region_code": region})


@app.get("/api/payments/pricing", response_model=RegionalPricingOut)
def get_regional_pricing(
    region: Optional[str] = None,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    if not region:
        raise HTTPException(status_code=400, detail="Region code is required")
    pricing = _regional_pricing(store, region)
    if pricing is None:
        raise HTTPException(status_code=404, detail="Pricing not found for region")
    return RegionalPricingOut(**to_public(pricing))


@app.get("/api/payments/{payment_id}", response_model=PaymentOut)
def get_payment(
    payment_id: str,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    doc = _get_or_404(store, "payment", parse_id(payment_id, "payment"), "Payment")
    if str(doc.get("user_id")) != user.user_id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied")
    return PaymentOut(**to_public(doc))


@app.post("/api/payments/checkout")
def create_checkout(
    body: CheckoutIn,
    user: Claims = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    pricing = _regional_pricing(store, body.region)
    if pricing is None:
        raise HTTPException(status_code=400, detail="Invalid region or pricing not found")

    if not config.STRIPE_SECRET_KEY:
        logger.error("Stripe API key is not configured")
        raise HTTPException(status_code=503, detail="Payment system is not properly configured")
    stripe.api_key = config.STRIPE_SECRET_KEY

    if body.plan_type == "yearly":
        price, interval = pricing["yearly_price"], "year"
    else:
        price, interval = pricing["monthly_price"], "month"
    metadata = {"user_id": user.user_id}

    try:
        existing = stripe.Customer.list(email=user.email, limit=1)
        if existing.data:
            customer_id = existing.data[0].id
        else:
            customer_id = stripe.Customer.create(email=user.email, metadata=metadata).id

        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": pricing["currency"],
                        "product_data": {"name": "Course Subscription"},
                        "unit_amount": price,
                        "recurring": {"interval": interval},
                    },
                    "quantity": 1,
                }
            ],
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=config.CHECKOUT_SUCCESS_URL,
            cancel_url=config.CHECKOUT_CANCEL_URL,
        )
    except stripe.StripeError as e:
        logger.error("Failed to create checkout session for user %s (region %s): %s", user.user_id, body.region, e)
        raise HTTPException(status_code=502, detail="Failed to create payment session")

    return {"session_id": session.id, "url": session.url}


@app.post("/api/webhook/stripe")
async def stripe_webhook(request: Request, store: DocumentStore = Depends(get_store)):
    if not config.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook secret is not configured")
        raise HTTPException(status_code=503, detail="Webhook configuration is missing")

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
        event = json.loads(payload)
        event_type = event["type"]
        data_object = event["data"]["object"]
    except stripe.SignatureVerificationError as e:
        logger.error("Invalid Stripe webhook signature: %s", e)
        raise HTTPException(status_code=400, detail="Invalid webhook signature")
    except (ValueError, KeyError, TypeError) as e:
        logger.error("Invalid Stripe webhook payload: %s", e)
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    logger.info("Received Stripe webhook %s (%s)", event_type, event.get("id"))
    reconciler = SubscriptionReconciler(store)
    await run_in_threadpool(reconciler.handle_event, event_type, json.dumps(data_object).encode())
    return {"status": "ok"}


# Users
@app.get("/api/users/me")
def get_me(user: Claims = Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    subscription = find_active_subscription(store, user.user_id)
    return {
        "user": user.model_dump(),
        "subscription": SubscriptionOut(**to_public(subscription)) if subscription else None,
    }


# Admin summary
class AdminSummary(BaseModel):
    total_courses: int
    total_videos: int
    total_payments: int
    revenue: int
    active_subscriptions: int


@app.get("/api/admin/summary", response_model=AdminSummary)
def admin_summary(user: Claims = Depends(require_admin), store: DocumentStore = Depends(get_store)):
    payments = store.find("payment", {"status": "completed"})
    active_subscriptions = store.count(
        "subscription",
        {"status": {"$in": ["active", "trial"]}, "current_period_end": {"$gt": _now()}},
    )
    return AdminSummary(
        total_courses=store.count("course"),
        total_videos=store.count("video"),
        total_payments=len(payments),
        revenue=sum(int(p.get("amount", 0)) for p in payments),
        active_subscriptions=active_subscriptions,
    )


@app.put("/api/admin/pricing/{region}", response_model=RegionalPricingOut)
def update_regional_pricing(
    region: str,
    body: PricingIn,
    user: Claims = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    store.upsert_fields("regional_pricing", {"region_code": region}, body.model_dump())
    logger.info("Updated pricing for region %s", region)
    return RegionalPricingOut(**to_public(_regional_pricing(store, region)))


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
