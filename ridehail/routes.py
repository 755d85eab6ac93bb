from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from typing import List, Optional
from datetime import datetime, timedelta, timezone
import logging

from . import models, schemas, services
from .auth import Principal, create_access_token, get_principal, require_driver
from .config import settings
from .errors import RideError
from .maps import haversine_km

logger = logging.getLogger(__name__)

router = APIRouter()

RIDE_REQUESTS_LIMIT = 20

EARNINGS_PERIODS = {
    "today": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


async def _dispatch_in_background(ride_id: int):
    try:
        await services.dispatcher.dispatch(ride_id)
    except RideError as e:
        logger.info("background_dispatch_skipped: ride=%s reason=%s", ride_id, e.code)


# ---- auth ----

@router.post("/auth/otp")
async def request_otp(req: schemas.OtpRequest):
    if await services.store.find_user(email=req.email, phone=req.phone):
        raise HTTPException(status_code=400, detail="user already exists with this email or phone")
    if req.role == models.ROLE_DRIVER and req.vehicle_class not in models.VEHICLE_CLASSES:
        raise HTTPException(status_code=422, detail="drivers must register a known vehicle class")
    code = await services.signups.stash(req.email, req.model_dump())
    services.notifier.otp(req.email, code)
    return {"status": "ok", "message": "OTP sent"}


@router.post("/auth/verify", response_model=schemas.TokenOut)
async def verify_otp(req: schemas.OtpVerify):
    profile = await services.signups.verify(req.email.lower(), req.otp)
    if profile is None:
        raise HTTPException(status_code=400, detail="invalid or expired OTP")
    user = await services.store.insert_user({
        "name": profile["name"],
        "email": profile["email"],
        "phone": profile["phone"],
        "role": profile["role"],
        "is_active": True,
        "is_verified": True,
        "vehicle_class": profile.get("vehicle_class"),
        "vehicle_number": profile.get("vehicle_number"),
        "license_number": profile.get("license_number"),
    })
    token = create_access_token(user["id"], user["role"])
    return schemas.TokenOut(access_token=token, user_id=user["id"], role=user["role"])


@router.post("/auth/login-otp")
async def request_login_otp(req: schemas.LoginOtpRequest):
    user = await services.store.find_user(email=req.email)
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    if not user["is_active"]:
        raise HTTPException(status_code=403, detail="account is deactivated")
    code = await services.logins.stash(req.email, {"user_id": user["id"]})
    services.notifier.otp(req.email, code, template="login_otp")
    return {"status": "ok", "message": "OTP sent"}


@router.post("/auth/verify-login-otp", response_model=schemas.TokenOut)
async def verify_login_otp(req: schemas.OtpVerify):
    record = await services.logins.verify(req.email.lower(), req.otp)
    if record is None:
        raise HTTPException(status_code=400, detail="invalid or expired OTP")
    user = await services.store.get_user(record["user_id"])
    if not user or not user["is_active"]:
        raise HTTPException(status_code=403, detail="account is deactivated")
    logger.info("login_verified: user=%s", user["id"])
    token = create_access_token(user["id"], user["role"])
    return schemas.TokenOut(access_token=token, user_id=user["id"], role=user["role"])


# ---- rides ----

@router.post("/rides", response_model=schemas.RideOut, status_code=201)
async def create_ride(
    req: schemas.RideCreate,
    background_tasks: BackgroundTasks,
    idempotency_key: Optional[str] = Header(None),
    principal: Principal = Depends(get_principal),
):
    # idempotency
    if idempotency_key:
        cached = await services.store.get_idempotent_response(idempotency_key, principal.id)
        if cached:
            return cached

    logger.info("create_ride: rider=%s pickup=%s class=%s", principal.id, req.pickup.model_dump(), req.vehicle_class)
    ride = await services.lifecycle.create_ride(principal, req)
    output = schemas.RideOut.from_row(ride)
    if idempotency_key:
        await services.store.save_idempotent_response(idempotency_key, principal.id, output.model_dump(mode="json"))
    background_tasks.add_task(_dispatch_in_background, ride["id"])
    return output


@router.get("/rides/current/active", response_model=schemas.RideOut)
async def current_ride(principal: Principal = Depends(get_principal)):
    ride = await services.lifecycle.current_ride(principal)
    if not ride:
        raise HTTPException(status_code=404, detail="no active ride found")
    return schemas.RideOut.from_row(ride)


@router.get("/rides/{ride_id}", response_model=schemas.RideOut)
async def get_ride(ride_id: int, principal: Principal = Depends(get_principal)):
    ride = await services.lifecycle.get_ride(ride_id, principal)
    return schemas.RideOut.from_row(ride)


@router.post("/rides/{ride_id}/dispatch", response_model=schemas.DispatchOut)
async def redispatch(ride_id: int, principal: Principal = Depends(get_principal)):
    await services.lifecycle.get_ride(ride_id, principal)
    result = await services.dispatcher.dispatch(ride_id)
    return schemas.DispatchOut(
        ride_id=ride_id,
        outcome=result.outcome,
        candidates=len(result.candidates),
        radius_km=result.radius_km,
        attempt=result.attempt,
        expires_at=result.expires_at,
    )


@router.post("/rides/{ride_id}/cancel", response_model=schemas.CancelOut)
async def cancel_ride(ride_id: int, req: schemas.CancelRequest, principal: Principal = Depends(get_principal)):
    result = await services.dispatcher.cancel(ride_id, principal, req.reason)
    return schemas.CancelOut(
        ride_id=ride_id,
        status=result.ride["status"],
        cancellation_fee=result.fee,
        refund_amount=result.refund,
    )


@router.post("/rides/{ride_id}/rate")
async def rate_ride(ride_id: int, req: schemas.RateRequest, principal: Principal = Depends(get_principal)):
    ride = await services.lifecycle.rate(ride_id, principal, req.rating, req.feedback)
    return {"ride_id": ride["id"], "rating": ride["rating"]}


@router.post("/rides/{ride_id}/track")
async def track_ride(ride_id: int, req: schemas.TrackRequest, principal: Principal = Depends(require_driver)):
    point = await services.lifecycle.track(ride_id, principal, req.lat, req.lon, req.speed, req.heading)
    return {"status": "ok", "recorded_at": point["recorded_at"]}


@router.patch("/rides/{ride_id}/status", response_model=schemas.RideOut)
async def update_status(ride_id: int, req: schemas.StatusUpdate, principal: Principal = Depends(require_driver)):
    ride = await services.lifecycle.advance(ride_id, principal, req.status)
    return schemas.RideOut.from_row(ride)


# ---- drivers ----

@router.post("/drivers/rides/{ride_id}/accept", response_model=schemas.RideOut)
async def accept_ride(ride_id: int, principal: Principal = Depends(require_driver)):
    logger.info("driver_accept: driver=%s ride=%s", principal.id, ride_id)
    ride = await services.dispatcher.accept(ride_id, principal)
    return schemas.RideOut.from_row(ride)


@router.post("/drivers/rides/{ride_id}/decline")
async def decline_ride(ride_id: int, principal: Principal = Depends(require_driver)):
    result = await services.dispatcher.decline(ride_id, principal.id)
    return {"status": "ok", "redispatched": result is not None}


@router.get("/drivers/ride-requests", response_model=List[schemas.RideRequestOut])
async def ride_requests(
    lat: Optional[float] = None,
    lon: Optional[float] = None,
    radius_km: Optional[float] = None,
    principal: Principal = Depends(require_driver),
):
    """Open rides of the driver's class near the driver, nearest first."""
    if lat is None or lon is None:
        state = await services.locator.get_state(principal.id)
        if state is None:
            raise HTTPException(status_code=409, detail="send a location update first")
        lat, lon = state["lat"], state["lon"]
    radius = radius_km or settings.MATCH_RADIUS_KM
    nearby = []
    for ride in await services.store.open_rides(principal.vehicle_class):
        distance = haversine_km((lat, lon), (ride["pickup"]["lat"], ride["pickup"]["lon"]))
        if distance <= radius:
            nearby.append((distance, ride))
    nearby.sort(key=lambda item: item[0])
    return [
        schemas.RideRequestOut(**schemas.RideOut.from_row(ride).model_dump(), distance_to_pickup_km=round(distance, 3))
        for distance, ride in nearby[:RIDE_REQUESTS_LIMIT]
    ]

@router.get("/drivers/me/current-ride", response_model=schemas.RideOut)
async def driver_current_ride(principal: Principal = Depends(require_driver)):
    ride = await services.lifecycle.current_ride(principal)
    if not ride:
        raise HTTPException(status_code=404, detail="no current ride found")
    return schemas.RideOut.from_row(ride)


@router.post("/drivers/me/location")
async def driver_location(loc: schemas.Location, principal: Principal = Depends(require_driver)):
    state = await services.locator.update_location(principal.id, loc.lat, loc.lon, principal.vehicle_class)
    return {"status": "ok", "available": state["available"]}


@router.patch("/drivers/me/availability")
async def driver_availability(req: schemas.AvailabilityUpdate, principal: Principal = Depends(require_driver)):
    if req.is_available and await services.store.active_ride_for(principal.id, principal.role):
        raise HTTPException(status_code=409, detail="finish the current ride first")
    if not await services.locator.set_availability(principal.id, req.is_available):
        raise HTTPException(status_code=409, detail="send a location update first")
    return {"status": "ok", "is_available": req.is_available}


@router.patch("/drivers/me/profile")
async def driver_profile(req: schemas.DriverProfileUpdate, principal: Principal = Depends(require_driver)):
    changes = req.model_dump(exclude_unset=True)
    if "vehicle_class" in changes and changes["vehicle_class"] not in models.VEHICLE_CLASSES:
        raise HTTPException(status_code=422, detail="unknown vehicle class")
    if not changes:
        return {"status": "ok", "updated": []}
    await services.store.update_user(principal.id, changes)
    if "vehicle_class" in changes:
        # move the driver out of the old class's proximity index
        await services.locator.invalidate(principal.id, principal.vehicle_class)
    return {"status": "ok", "updated": sorted(changes)}


@router.get("/drivers/me/earnings", response_model=schemas.EarningsOut)
async def driver_earnings(period: str = "week", principal: Principal = Depends(require_driver)):
    window = EARNINGS_PERIODS.get(period, EARNINGS_PERIODS["week"])
    since = datetime.now(timezone.utc) - window
    summary = await services.store.earnings_summary(principal.id, since)
    return schemas.EarningsOut(period=period if period in EARNINGS_PERIODS else "week", **summary)
