import asyncio
from datetime import timedelta

from ridehail import models
from ridehail.store import RideStore, utcnow


def ride_values(rider_id, **extra):
    values = {
        "rider_id": rider_id,
        "vehicle_class": "Car",
        "pickup": {"lat": 12.9, "lon": 77.6, "address": "A"},
        "destination": {"lat": 12.95, "lon": 77.65, "address": "B"},
        "distance_km": 6.2,
        "duration_min": 18.0,
        "base_fare": 50.0,
        "distance_fare": 93.0,
        "time_fare": 36.0,
        "total_fare": 179.0,
        "final_amount": 179.0,
        "status": models.RIDE_SEARCHING,
        "created_at": utcnow(),
    }
    values.update(extra)
    return values


async def test_conditional_update_checks_status_and_fields(engine):
    store = RideStore(engine)
    rider = await store.insert_user({"name": "r", "email": "r@example.com", "role": models.ROLE_REQUESTER})
    ride = await store.insert_ride(ride_values(rider["id"]))
    assert ride["pickup"]["address"] == "A"

    missed = await store.conditional_update(ride["id"], {"status": models.RIDE_ARRIVED}, [models.RIDE_ACCEPTED])
    assert missed is None

    claimed = await store.conditional_update(
        ride["id"], {"status": models.RIDE_ACCEPTED, "driver_id": 42}, models.OPEN_STATUSES, driver_id=None
    )
    assert claimed["status"] == models.RIDE_ACCEPTED
    assert claimed["driver_id"] == 42

    again = await store.conditional_update(
        ride["id"], {"status": models.RIDE_ACCEPTED, "driver_id": 43}, models.OPEN_STATUSES, driver_id=None
    )
    assert again is None
    assert (await store.get_ride(ride["id"]))["driver_id"] == 42


async def test_concurrent_claims_have_one_winner(engine):
    store = RideStore(engine)
    rider = await store.insert_user({"name": "r", "email": "r@example.com", "role": models.ROLE_REQUESTER})
    ride = await store.insert_ride(ride_values(rider["id"]))

    async def claim(driver_id):
        return await store.conditional_update(
            ride["id"],
            {"status": models.RIDE_ACCEPTED, "driver_id": driver_id},
            models.OPEN_STATUSES,
            driver_id=None,
        )

    results = await asyncio.gather(*(claim(d) for d in range(100, 108)))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    stored = await store.get_ride(ride["id"])
    assert stored["driver_id"] == winners[0]["driver_id"]


async def test_active_ride_for_roles(engine):
    store = RideStore(engine)
    rider = await store.insert_user({"name": "r", "email": "r@example.com", "role": models.ROLE_REQUESTER})
    ride = await store.insert_ride(ride_values(rider["id"], status=models.RIDE_PENDING))

    assert (await store.active_ride_for(rider["id"], models.ROLE_REQUESTER))["id"] == ride["id"]
    # an unassigned ride is not the driver's concern
    assert await store.active_ride_for(7, models.ROLE_DRIVER) is None

    await store.conditional_update(ride["id"], {"status": models.RIDE_ACCEPTED, "driver_id": 7}, [models.RIDE_PENDING])
    assert (await store.active_ride_for(7, models.ROLE_DRIVER))["id"] == ride["id"]

    await store.conditional_update(ride["id"], {"status": models.RIDE_CANCELLED}, [models.RIDE_ACCEPTED])
    assert await store.active_ride_for(rider["id"], models.ROLE_REQUESTER) is None


async def test_tracking_only_for_started_ride_of_that_driver(engine):
    store = RideStore(engine)
    rider = await store.insert_user({"name": "r", "email": "r@example.com", "role": models.ROLE_REQUESTER})
    ride = await store.insert_ride(ride_values(rider["id"], status=models.RIDE_ACCEPTED, driver_id=7))

    assert await store.append_tracking(ride["id"], 7, 12.9, 77.6, 10.0, 90.0) is None

    await store.conditional_update(ride["id"], {"status": models.RIDE_STARTED}, [models.RIDE_ACCEPTED])
    assert await store.append_tracking(ride["id"], 8, 12.9, 77.6, 10.0, 90.0) is None
    first = await store.append_tracking(ride["id"], 7, 12.9, 77.6, 10.0, 90.0)
    second = await store.append_tracking(ride["id"], 7, 12.91, 77.61, 12.0, 95.0)
    assert first and second
    assert second["recorded_at"] >= first["recorded_at"]

    log = await store.tracking_log(ride["id"])
    assert [p["lat"] for p in log] == [12.9, 12.91]


async def test_idempotent_responses_are_scoped_per_rider(engine):
    store = RideStore(engine)
    alice = await store.insert_user({"name": "a", "email": "a@example.com", "role": models.ROLE_REQUESTER})
    bob = await store.insert_user({"name": "b", "email": "b@example.com", "role": models.ROLE_REQUESTER})
    assert await store.get_idempotent_response("k1", alice["id"]) is None

    await store.save_idempotent_response("k1", alice["id"], {"id": 1, "status": "pending"})
    assert await store.get_idempotent_response("k1", alice["id"]) == {"id": 1, "status": "pending"}
    # the same key from someone else is a different request
    assert await store.get_idempotent_response("k1", bob["id"]) is None

    await store.save_idempotent_response("k1", bob["id"], {"id": 2, "status": "pending"})
    assert await store.get_idempotent_response("k1", alice["id"]) == {"id": 1, "status": "pending"}
    assert await store.get_idempotent_response("k1", bob["id"]) == {"id": 2, "status": "pending"}


async def test_claim_ride_gives_a_driver_one_ride_at_a_time(engine):
    store = RideStore(engine)
    rider = await store.insert_user({"name": "r", "email": "r@example.com", "role": models.ROLE_REQUESTER})
    driver = await store.insert_user({"name": "d", "email": "d@example.com", "role": models.ROLE_DRIVER, "vehicle_class": "Car"})
    rides = [await store.insert_ride(ride_values(rider["id"])) for _ in range(4)]
    accepted = {"status": models.RIDE_ACCEPTED, "accepted_at": utcnow()}

    results = await asyncio.gather(*(store.claim_ride(r["id"], driver["id"], "Car", accepted) for r in rides))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0]["driver_id"] == driver["id"]
    assert (await store.active_ride_for(driver["id"], models.ROLE_DRIVER))["id"] == winners[0]["id"]

    # class must match, and the ride must still be open
    other = await store.insert_ride(ride_values(rider["id"], vehicle_class="Bike"))
    assert await store.claim_ride(other["id"], 77, "Car", accepted) is None
    assert await store.claim_ride(winners[0]["id"], 77, "Car", accepted) is None


async def test_open_rides_lists_unassigned_rides_of_class(engine):
    store = RideStore(engine)
    rider = await store.insert_user({"name": "r", "email": "r@example.com", "role": models.ROLE_REQUESTER})
    pending = await store.insert_ride(ride_values(rider["id"], status=models.RIDE_PENDING))
    searching = await store.insert_ride(ride_values(rider["id"]))
    await store.insert_ride(ride_values(rider["id"], vehicle_class="Bike"))
    await store.insert_ride(ride_values(rider["id"], status=models.RIDE_ACCEPTED, driver_id=9))
    await store.insert_ride(ride_values(rider["id"], status=models.RIDE_CANCELLED))

    ids = {r["id"] for r in await store.open_rides("Car")}
    assert ids == {pending["id"], searching["id"]}


async def test_earnings_summary_counts_completed_rides(engine):
    store = RideStore(engine)
    rider = await store.insert_user({"name": "r", "email": "r@example.com", "role": models.ROLE_REQUESTER})
    now = utcnow()
    for amount, status in [(100.0, models.RIDE_COMPLETED), (50.0, models.RIDE_COMPLETED), (70.0, models.RIDE_CANCELLED)]:
        await store.insert_ride(ride_values(
            rider["id"], status=status, driver_id=9, final_amount=amount, completed_at=now if status == models.RIDE_COMPLETED else None,
        ))

    summary = await store.earnings_summary(9, now - timedelta(days=1))
    assert summary == {"total_earnings": 150.0, "total_rides": 2, "average_fare": 75.0}
