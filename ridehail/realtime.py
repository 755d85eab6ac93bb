from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging

from . import events, services
from .auth import AuthError, Principal, resolve_token

logger = logging.getLogger(__name__)

router = APIRouter()


def _token_from(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header.split(" ", 1)[1]
    return None


async def _send_error(websocket: WebSocket, message: str):
    await websocket.send_json({"event": "error", "data": {"message": message}})


async def _join_ride(websocket: WebSocket, principal: Principal, data: dict):
    ride_id = data.get("rideId")
    ride = await services.store.get_ride(int(ride_id)) if ride_id is not None else None
    if not ride or principal.id not in (ride["rider_id"], ride["driver_id"]):
        await _send_error(websocket, "not a party to this ride")
        return
    await services.bus.join(events.ride_room(ride["id"]), websocket)
    logger.info("join_ride: user=%s ride=%s", principal.id, ride["id"])


async def _update_location(websocket: WebSocket, principal: Principal, data: dict):
    if not principal.is_driver:
        await _send_error(websocket, "only drivers can update location")
        return
    lat, lon = float(data["latitude"]), float(data["longitude"])
    await services.locator.update_location(principal.id, lat, lon, principal.vehicle_class)
    ride_id = data.get("rideId")
    if ride_id is None:
        return
    # only the parties of the ride see the position, never every client
    ride = await services.store.get_ride(int(ride_id))
    if ride and ride["driver_id"] == principal.id:
        await services.bus.publish(events.ride_room(ride["id"]), events.RIDE_LOCATION_UPDATE, {
            "rideId": ride["id"],
            "driverId": principal.id,
            "coordinates": {"lat": lat, "lon": lon},
        })


async def _update_availability(websocket: WebSocket, principal: Principal, data: dict):
    if not principal.is_driver:
        await _send_error(websocket, "only drivers can update availability")
        return
    available = bool(data.get("isAvailable"))
    if not await services.locator.set_availability(principal.id, available):
        await _send_error(websocket, "send a location update first")
        return
    await services.bus.publish(events.user_room(principal.id), events.DRIVER_AVAILABILITY_UPDATE, {
        "driverId": principal.id,
        "isAvailable": available,
    })


async def handle_message(websocket: WebSocket, principal: Principal, message: dict):
    kind = message.get("type")
    data = message.get("data") or {}
    if kind == "join-ride":
        await _join_ride(websocket, principal, data)
    elif kind == "leave-ride":
        if data.get("rideId") is not None:
            await services.bus.leave(events.ride_room(int(data["rideId"])), websocket)
    elif kind == "update-location":
        await _update_location(websocket, principal, data)
    elif kind == "update-availability":
        await _update_availability(websocket, principal, data)
    else:
        await _send_error(websocket, f"unknown message type {kind!r}")


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    token = _token_from(websocket)
    if not token:
        await websocket.close(code=4401)
        return
    try:
        principal = await resolve_token(services.store, token)
    except AuthError as e:
        logger.info("ws_rejected: reason=%s", e)
        await websocket.close(code=e.close_code)
        return

    await websocket.accept()
    await services.bus.join(events.user_room(principal.id), websocket)
    if principal.is_driver and principal.vehicle_class:
        await services.bus.join(events.drivers_room(principal.vehicle_class), websocket)
    logger.info("ws_connected: user=%s role=%s", principal.id, principal.role)
    try:
        while True:
            message = await websocket.receive_json()
            try:
                await handle_message(websocket, principal, message)
            except (KeyError, TypeError, ValueError) as e:
                await _send_error(websocket, f"malformed message: {e}")
    except WebSocketDisconnect:
        logger.info("ws_disconnected: user=%s", principal.id)
    finally:
        await services.bus.leave_all(websocket)
        if principal.is_driver:
            await services.locator.set_availability(principal.id, False)
