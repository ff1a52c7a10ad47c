import logging
import re
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import FirebaseIdentityProvider, Identity, ensure_owner, get_current_identity, is_admin, require_admin
from config import settings
from database import (
    PARCELS, PAYMENTS, RIDERS, TRACKING, USERS,
    connect, create_document, delete_document_by_id, ensure_indexes, get_db, get_document_by_id,
    get_documents, now_utc, parse_object_id, serialize, write_result,
)
from payments import PaymentGatewayError, StripeConfig, StripeGateway, get_payment_gateway
from schemas import (
    AssignRider, DeliveryStatus, Parcel, Payment, PaymentIntentRequest, PaymentStatus, RiderApplication,
    RiderStatusUpdate, RoleUpdate, TrackingEntry, User,
    DELIVERY_TRANSITIONS, PAYMENT_TRANSITIONS, RIDER_TRANSITIONS, can_transition,
)

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    client, app.state.db = connect(settings.DATABASE_URL, settings.DATABASE_NAME)
    ensure_indexes(app.state.db)
    app.state.identity_provider = FirebaseIdentityProvider(settings.FIREBASE_CREDENTIALS)
    app.state.payment_gateway = StripeGateway(
        StripeConfig(api_key=settings.PAYMENT_GATEWAY_KEY, currency=settings.PAYMENT_CURRENCY)
    )
    logger.info("%s ready", settings.APP_NAME)
    yield
    client.close()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {time.time() - start_time:.4f}s"
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def server_error(e: Exception) -> HTTPException:
    logger.exception("Request failed: %s", e)
    return HTTPException(status_code=500, detail=str(e))


@app.get("/")
async def root():
    return {"message": "FastFare Server is running..."}


# Users
@app.post("/users")
async def upsert_user(user: User, db: Database = Depends(get_db)):
    now = now_utc()
    try:
        res = db[USERS].update_one({"email": user.email}, {"$set": {"last_log_in": now}})
        if res.matched_count:
            return {"message": "user already exists", "inserted": False, "update": res.modified_count > 0}
        doc = user.model_dump(exclude_none=True)
        doc.update(role="user", created_at=now, last_log_in=now)
        user_id = create_document(db, USERS, doc)
    except DuplicateKeyError:
        # a concurrent login inserted the same email first
        return {"message": "user already exists", "inserted": False, "update": False}
    except PyMongoError as e:
        raise server_error(e)
    return {"inserted": True, "insertedId": user_id}


@app.get("/users/search")
async def search_users(email: str, db: Database = Depends(get_db)):
    if not email.strip():
        raise HTTPException(status_code=400, detail="email query is required")
    flt = {"email": {"$regex": re.escape(email.strip()), "$options": "i"}}
    try:
        return get_documents(db, USERS, flt, sort_field="created_at", limit=10)
    except PyMongoError as e:
        raise server_error(e)


@app.get("/users/role")
async def get_user_role(email: str, db: Database = Depends(get_db)):
    try:
        user = db[USERS].find_one({"email": email})
    except PyMongoError as e:
        raise server_error(e)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"email": user["email"], "role": user.get("role", "user")}


@app.patch("/users/{user_id}/role")
async def update_user_role(
    user_id: str,
    payload: RoleUpdate,
    db: Database = Depends(get_db),
    me: Identity = Depends(require_admin),
):
    oid = parse_object_id(user_id)
    try:
        res = db[USERS].update_one({"_id": oid}, {"$set": {"role": payload.role}})
    except PyMongoError as e:
        raise server_error(e)
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("%s set role of user %s to %s", me.email, user_id, payload.role)
    return {"message": f"User role updated to {payload.role}", **write_result(res)}


# Parcels
@app.get("/parcels")
async def list_parcels(
    email: Optional[str] = None,
    delivery_status: Optional[DeliveryStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    db: Database = Depends(get_db),
    me: Identity = Depends(get_current_identity),
):
    if email is not None:
        ensure_owner(email, me)
    flt = {"created_by": email, "delivery_status": delivery_status, "payment_status": payment_status}
    try:
        return get_documents(db, PARCELS, flt)
    except PyMongoError as e:
        raise server_error(e)


@app.get("/parcels/{parcel_id}")
async def get_parcel(parcel_id: str, db: Database = Depends(get_db), me: Identity = Depends(get_current_identity)):
    try:
        parcel = get_document_by_id(db, PARCELS, parcel_id, "Parcel")
    except PyMongoError as e:
        raise server_error(e)
    return {"success": True, "data": serialize(parcel)}


@app.post("/parcels", status_code=201)
async def create_parcel(parcel: Parcel, db: Database = Depends(get_db), me: Identity = Depends(get_current_identity)):
    doc = parcel.model_dump(exclude_none=True)
    for key in ("_id", "id", "assigned_to"):
        doc.pop(key, None)
    doc.update(
        created_by=me.email,
        delivery_status="not_collected",
        payment_status="unpaid",
        createdAt=now_utc(),
    )
    try:
        parcel_id = create_document(db, PARCELS, doc)
    except PyMongoError as e:
        raise server_error(e)
    return {"insertedId": parcel_id, "created_by": me.email}


@app.delete("/parcels/{parcel_id}")
async def delete_parcel(parcel_id: str, db: Database = Depends(get_db), me: Identity = Depends(get_current_identity)):
    try:
        parcel = get_document_by_id(db, PARCELS, parcel_id, "Parcel")
        if parcel.get("created_by") != me.email and not is_admin(db, me):
            raise HTTPException(status_code=403, detail="forbidden access")
        delete_document_by_id(db, PARCELS, parcel_id, "Parcel")
    except PyMongoError as e:
        raise server_error(e)
    return {"success": True, "message": "Parcel deleted"}


@app.patch("/parcels/assignRider/{parcel_id}")
async def assign_rider(parcel_id: str, payload: AssignRider, db: Database = Depends(get_db)):
    if not payload.riderEmail:
        raise HTTPException(status_code=400, detail="riderEmail is required")
    try:
        parcel = get_document_by_id(db, PARCELS, parcel_id, "Parcel")
        previous_status = parcel.get("delivery_status", "not_collected")
        if parcel.get("assigned_to") or not can_transition(DELIVERY_TRANSITIONS, previous_status, "assigned"):
            raise HTTPException(status_code=400, detail="Parcel cannot be assigned")

        rider = db[RIDERS].find_one({"email": payload.riderEmail, "status": {"$ne": "rejected"}})
        if not rider:
            raise HTTPException(status_code=404, detail="Rider not found")
        if not can_transition(RIDER_TRANSITIONS, rider.get("status"), "on_delivery"):
            raise HTTPException(status_code=400, detail="Rider is not available for delivery")

        parcel_res = db[PARCELS].update_one(
            {"_id": parcel["_id"]},
            {"$set": {"assigned_to": payload.riderEmail, "delivery_status": "assigned"}},
        )
        try:
            rider_res = db[RIDERS].update_one({"_id": rider["_id"]}, {"$set": {"status": "on_delivery"}})
        except PyMongoError:
            db[PARCELS].update_one(
                {"_id": parcel["_id"]},
                {"$set": {"delivery_status": previous_status}, "$unset": {"assigned_to": ""}},
            )
            raise
    except PyMongoError as e:
        raise server_error(e)
    logger.info("Parcel %s assigned to %s", parcel_id, payload.riderEmail)
    return {"parcel": write_result(parcel_res), "rider": write_result(rider_res)}


# Riders
@app.post("/riders", status_code=201)
async def submit_rider_application(application: RiderApplication, db: Database = Depends(get_db)):
    try:
        existing = db[RIDERS].find_one({"email": application.email, "status": {"$ne": "rejected"}})
        if existing:
            raise HTTPException(status_code=400, detail="Rider application already exists")
        doc = application.model_dump(exclude_none=True)
        doc.pop("_id", None)
        doc.update(status="pending", created_at=now_utc())
        rider_id = create_document(db, RIDERS, doc)
    except PyMongoError as e:
        raise server_error(e)
    return {"insertedId": rider_id, "status": "pending"}


@app.get("/pending")
async def list_pending_riders(db: Database = Depends(get_db), me: Identity = Depends(require_admin)):
    try:
        return get_documents(db, RIDERS, {"status": "pending"}, sort_field="created_at")
    except PyMongoError as e:
        raise server_error(e)


@app.get("/riders/active")
async def list_active_riders(
    district: Optional[str] = None,
    db: Database = Depends(get_db),
    me: Identity = Depends(require_admin),
):
    try:
        return get_documents(db, RIDERS, {"status": "active", "district": district}, sort_field="created_at")
    except PyMongoError as e:
        raise server_error(e)


@app.patch("/riders/{rider_id}")
async def update_rider_status(rider_id: str, payload: RiderStatusUpdate, db: Database = Depends(get_db)):
    try:
        rider = get_document_by_id(db, RIDERS, rider_id, "Rider")
        current = rider.get("status", "pending")
        if not can_transition(RIDER_TRANSITIONS, current, payload.status):
            raise HTTPException(
                status_code=400,
                detail=f"Cannot change rider status from {current} to {payload.status}",
            )
        res = db[RIDERS].update_one({"_id": rider["_id"]}, {"$set": {"status": payload.status}})

        user = None
        if payload.status == "active":
            try:
                user = db[USERS].find_one_and_update(
                    {"email": rider["email"]},
                    {"$set": {"role": "rider"}, "$setOnInsert": {"created_at": now_utc()}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except PyMongoError:
                db[RIDERS].update_one({"_id": rider["_id"]}, {"$set": {"status": current}})
                raise
    except PyMongoError as e:
        raise server_error(e)
    logger.info("Rider %s status %s -> %s", rider_id, current, payload.status)
    out = {"rider": write_result(res), "status": payload.status}
    if user:
        out["user"] = {"email": user["email"], "role": user["role"]}
    return out


@app.delete("/riders/{rider_id}")
async def delete_rider(rider_id: str, db: Database = Depends(get_db)):
    try:
        delete_document_by_id(db, RIDERS, rider_id, "Rider")
    except PyMongoError as e:
        raise server_error(e)
    return {"success": True, "message": "Rider deleted"}


# Tracking
@app.post("/tracking", status_code=201)
async def add_tracking_entry(entry: TrackingEntry, db: Database = Depends(get_db)):
    doc = entry.model_dump()
    doc["parcel_id"] = parse_object_id(entry.parcel_id) if entry.parcel_id else None
    doc["time"] = now_utc()
    try:
        entry_id = create_document(db, TRACKING, doc)
    except PyMongoError as e:
        raise server_error(e)
    return {"success": True, "insertedId": entry_id}


@app.get("/tracking/{parcel_id}")
async def get_tracking_history(parcel_id: str, db: Database = Depends(get_db)):
    oid = parse_object_id(parcel_id)
    try:
        return [serialize(d) for d in db[TRACKING].find({"parcel_id": oid}).sort("time", ASCENDING)]
    except PyMongoError as e:
        raise server_error(e)


# Payments
@app.get("/payments/user/{email}")
async def user_payment_history(email: str, db: Database = Depends(get_db), me: Identity = Depends(get_current_identity)):
    ensure_owner(email, me)
    try:
        return get_documents(db, PAYMENTS, {"userEmail": email}, sort_field="paid_at")
    except PyMongoError as e:
        raise server_error(e)


@app.get("/payments")
async def list_payments(db: Database = Depends(get_db), me: Identity = Depends(get_current_identity)):
    try:
        return get_documents(db, PAYMENTS, sort_field="paid_at")
    except PyMongoError as e:
        raise server_error(e)


@app.post("/create-payment-intent")
async def create_payment_intent(payload: PaymentIntentRequest, gateway=Depends(get_payment_gateway)):
    try:
        client_secret = gateway.create_payment_intent(payload.amount)
    except PaymentGatewayError as e:
        raise server_error(e)
    return {"clientSecret": client_secret}


def _already_recorded(payment: dict) -> dict:
    return {"message": "Payment already recorded", "inserted": False, "paymentId": str(payment["_id"])}


@app.post("/payments")
async def record_payment(payment: Payment, db: Database = Depends(get_db), me: Identity = Depends(get_current_identity)):
    parcel_oid = parse_object_id(payment.parcelId)
    try:
        # transactionId is the idempotency key for retried submissions
        existing = db[PAYMENTS].find_one({"transactionId": payment.transactionId})
        if existing:
            return _already_recorded(existing)

        parcel = db[PARCELS].find_one({"_id": parcel_oid})
        if not parcel:
            raise HTTPException(status_code=404, detail="Parcel not found")
        if not can_transition(PAYMENT_TRANSITIONS, parcel.get("payment_status", "unpaid"), "paid"):
            raise HTTPException(status_code=400, detail="Parcel is already paid")

        now = now_utc()
        doc = payment.model_dump()
        doc.update(paid_at=now, paid_at_string=now.isoformat())
        try:
            payment_id = db[PAYMENTS].insert_one(doc).inserted_id
        except DuplicateKeyError:
            return _already_recorded(db[PAYMENTS].find_one({"transactionId": payment.transactionId}))

        try:
            res = db[PARCELS].update_one(
                {"_id": parcel_oid, "payment_status": {"$ne": "paid"}},
                {"$set": {"payment_status": "paid"}},
            )
        except PyMongoError:
            db[PAYMENTS].delete_one({"_id": payment_id})
            raise
        if res.matched_count == 0:
            # paid by a concurrent request since the check above
            db[PAYMENTS].delete_one({"_id": payment_id})
            raise HTTPException(status_code=400, detail="Parcel is already paid")
    except PyMongoError as e:
        raise server_error(e)
    logger.info("Payment %s recorded for parcel %s", payment.transactionId, payment.parcelId)
    return {"message": "Payment saved", "inserted": True, "paymentId": str(payment_id)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
