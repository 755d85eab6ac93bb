import asyncio

import pytest

from ridehail import dispatch, events, models
from ridehail.errors import AlreadyFinalized, InvalidTransition, RideNotFound, RideUnavailable, VehicleMismatch
from ridehail.test.conftest import PICKUP, Collector, ride_request


async def listen(core, *principals):
    conns = []
    for p in principals:
        conn = Collector()
        await core.bus.join(events.user_room(p.id), conn)
        conns.append(conn)
    return conns


async def test_dispatch_offers_nearest_drivers_of_class(core, make_user, online_driver):
    rider = await make_user()
    near = await online_driver(lat=PICKUP["lat"] + 0.005)
    far = await online_driver(lat=PICKUP["lat"] + 0.03)
    bike = await online_driver(vehicle_class="Bike")
    busy = await online_driver()
    await core.locator.set_availability(busy.id, False)
    near_conn, far_conn, bike_conn, busy_conn = await listen(core, near, far, bike, busy)

    ride = await core.lifecycle.create_ride(rider, ride_request())
    result = await core.dispatcher.dispatch(ride["id"])

    assert result.outcome == dispatch.OFFERED
    assert [d for d, _ in result.candidates] == [near.id, far.id]
    assert result.radius_km == 10
    assert (await core.store.get_ride(ride["id"]))["status"] == models.RIDE_SEARCHING

    offer = near_conn.messages[0]
    assert offer["event"] == events.NEW_RIDE_REQUEST
    assert offer["data"]["rideId"] == ride["id"]
    assert offer["data"]["fare"] == 179.0
    assert far_conn.events() == [events.NEW_RIDE_REQUEST]
    assert bike_conn.messages == [] and busy_conn.messages == []


async def test_concurrent_accepts_have_one_winner(core, make_user, online_driver):
    rider = await make_user()
    drivers = [await online_driver() for _ in range(5)]
    conns = await listen(core, *drivers)
    rider_conn, = await listen(core, rider)
    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])

    results = await asyncio.gather(
        *(core.dispatcher.accept(ride["id"], d) for d in drivers), return_exceptions=True
    )

    winners = [r for r in results if isinstance(r, dict)]
    losers = [r for r in results if not isinstance(r, dict)]
    assert len(winners) == 1
    assert all(isinstance(e, RideUnavailable) for e in losers)

    stored = await core.store.get_ride(ride["id"])
    assert stored["status"] == models.RIDE_ACCEPTED
    assert stored["driver_id"] == winners[0]["driver_id"]
    assert core.dispatcher.current_round(ride["id"]) is None
    assert rider_conn.events().count(events.RIDE_ACCEPTED) == 1

    for driver, conn in zip(drivers, conns):
        if driver.id == stored["driver_id"]:
            assert events.OFFER_WITHDRAWN not in conn.events()
        else:
            assert conn.events()[-1] == events.OFFER_WITHDRAWN


async def test_accept_after_cancel_is_rejected(core, make_user, online_driver):
    rider = await make_user()
    driver = await online_driver()
    driver_conn, = await listen(core, driver)
    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])

    result = await core.dispatcher.cancel(ride["id"], rider, "no longer needed")
    assert result.fee == 0.0
    assert driver_conn.events() == [events.NEW_RIDE_REQUEST, events.OFFER_WITHDRAWN]

    with pytest.raises(RideUnavailable):
        await core.dispatcher.accept(ride["id"], driver)
    with pytest.raises(AlreadyFinalized):
        await core.dispatcher.dispatch(ride["id"])


async def test_vehicle_mismatch_on_accept(core, make_user, online_driver):
    rider = await make_user()
    bike = await online_driver(vehicle_class="Bike")
    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])

    with pytest.raises(VehicleMismatch):
        await core.dispatcher.accept(ride["id"], bike)
    assert (await core.store.get_ride(ride["id"]))["driver_id"] is None


async def test_no_driver_found_after_widening(core, make_user, online_driver):
    rider = await make_user()
    # roughly 30 km north of the pickup, beyond every radius tried
    await online_driver(lat=PICKUP["lat"] + 0.27)
    rider_conn, = await listen(core, rider)
    ride = await core.lifecycle.create_ride(rider, ride_request())

    result = await core.dispatcher.dispatch(ride["id"])

    assert result.outcome == dispatch.NO_DRIVER_FOUND
    assert result.attempt == 2
    assert result.radius_km == 15
    assert rider_conn.events() == [events.RIDE_STATUS_UPDATE, events.NO_DRIVER_FOUND]
    # the ride stays open for a later retry
    assert (await core.store.get_ride(ride["id"]))["status"] == models.RIDE_SEARCHING


async def test_widened_radius_reaches_farther_driver(core, make_user, online_driver):
    rider = await make_user()
    # about 12 km away: outside 10 km, inside 15 km
    driver = await online_driver(lat=PICKUP["lat"] + 0.108)
    ride = await core.lifecycle.create_ride(rider, ride_request())

    result = await core.dispatcher.dispatch(ride["id"])

    assert result.outcome == dispatch.OFFERED
    assert result.radius_km == 15
    assert [d for d, _ in result.candidates] == [driver.id]


async def test_decline_last_candidate_redispatches(core, make_user, online_driver):
    rider = await make_user()
    driver = await online_driver()
    rider_conn, = await listen(core, rider)
    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])

    result = await core.dispatcher.decline(ride["id"], driver.id)

    # the only driver around declined, so the next round finds nobody
    assert result.outcome == dispatch.NO_DRIVER_FOUND
    assert rider_conn.events()[-1] == events.NO_DRIVER_FOUND


async def test_decline_keeps_round_open_for_others(core, make_user, online_driver):
    rider = await make_user()
    first = await online_driver()
    second = await online_driver()
    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])

    assert await core.dispatcher.decline(ride["id"], first.id) is None
    assert core.dispatcher.current_round(ride["id"]).candidates == {second.id}

    accepted = await core.dispatcher.accept(ride["id"], second)
    assert accepted["driver_id"] == second.id


async def test_unanswered_offers_expire_into_no_driver_found(core, make_user, online_driver):
    rider = await make_user()
    driver = await online_driver()
    driver_conn, rider_conn = await listen(core, driver, rider)
    ride = await core.lifecycle.create_ride(rider, ride_request())

    core.dispatcher.offer_timeout_sec = 0.05
    await core.dispatcher.dispatch(ride["id"])
    # two rounds of 0.05s each
    await asyncio.sleep(0.5)

    assert driver_conn.events().count(events.NEW_RIDE_REQUEST) == 2
    assert rider_conn.events()[-1] == events.NO_DRIVER_FOUND
    assert core.dispatcher.current_round(ride["id"]) is None


async def test_driver_racing_for_two_rides_gets_one(core, make_user, online_driver):
    driver = await online_driver()
    first = await core.lifecycle.create_ride(await make_user(), ride_request())
    second = await core.lifecycle.create_ride(await make_user(), ride_request())

    results = await asyncio.gather(
        core.dispatcher.accept(first["id"], driver),
        core.dispatcher.accept(second["id"], driver),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, dict)]
    assert len(winners) == 1
    assert [type(r) for r in results if not isinstance(r, dict)] == [InvalidTransition]
    assert (await core.lifecycle.current_ride(driver))["id"] == winners[0]["id"]


async def test_decline_requires_an_open_ride(core, make_user, online_driver):
    rider = await make_user()
    driver = await online_driver()

    with pytest.raises(RideNotFound):
        await core.dispatcher.decline(9999, driver.id)
    assert core.dispatcher._declined == {}

    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])
    await core.dispatcher.accept(ride["id"], driver)
    with pytest.raises(RideUnavailable):
        await core.dispatcher.decline(ride["id"], driver.id)
    assert core.dispatcher._declined == {}


async def test_declines_are_forgotten_once_matching_gives_up(core, make_user, online_driver):
    rider = await make_user()
    driver = await online_driver()
    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])

    result = await core.dispatcher.decline(ride["id"], driver.id)

    assert result.outcome == dispatch.NO_DRIVER_FOUND
    assert ride["id"] not in core.dispatcher._declined


async def test_declines_are_forgotten_when_rounds_run_out(core, make_user, online_driver):
    rider = await make_user()
    first = await online_driver()
    second = await online_driver()
    ride = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(ride["id"])
    await core.dispatcher.decline(ride["id"], first.id)
    assert core.dispatcher._declined[ride["id"]] == {first.id}

    # second round is the last one
    core.dispatcher.current_round(ride["id"]).attempt = core.dispatcher.max_rounds
    assert await core.dispatcher.decline(ride["id"], second.id) is None

    assert core.dispatcher.current_round(ride["id"]) is None
    assert ride["id"] not in core.dispatcher._declined


async def test_withdrawals_reach_drivers_room_of_the_class(core, make_user, online_driver):
    rider = await make_user()
    driver = await online_driver()
    cars, bikes = Collector(), Collector()
    await core.bus.join(events.drivers_room("Car"), cars)
    await core.bus.join(events.drivers_room("Bike"), bikes)

    taken = await core.lifecycle.create_ride(rider, ride_request())
    await core.dispatcher.dispatch(taken["id"])
    await core.dispatcher.accept(taken["id"], driver)
    assert cars.messages[-1]["event"] == events.OFFER_WITHDRAWN
    assert cars.messages[-1]["data"] == {"rideId": taken["id"], "reason": "accepted"}

    other_rider = await make_user()
    other = await core.lifecycle.create_ride(other_rider, ride_request())
    await core.dispatcher.cancel(other["id"], other_rider)
    assert cars.messages[-1]["data"] == {"rideId": other["id"], "reason": "cancelled"}
    assert bikes.messages == []


async def test_failed_round_timer_is_logged_not_raised(core, make_user, online_driver, caplog):
    rider = await make_user()
    await online_driver()
    ride = await core.lifecycle.create_ride(rider, ride_request())
    core.dispatcher.offer_timeout_sec = 0.05
    await core.dispatcher.dispatch(ride["id"])
    timer = core.dispatcher._timers[ride["id"]]

    async def broken(ride_id):
        raise RuntimeError("database went away")

    core.dispatcher.lifecycle.begin_search = broken
    await asyncio.sleep(0.3)

    assert timer.done()
    assert timer.exception() is None
    assert "offer_round_failed" in caplog.text
