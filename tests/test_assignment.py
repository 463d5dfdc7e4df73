from datetime import date, timedelta

from tvbooking.domain.coverage import resolver
from tvbooking.domain.coverage.assignment import (
    PRIORITY_NEARBY,
    PRIORITY_REGIONAL,
    PRIORITY_SAME_AREA,
    find_available_workers,
    worker_has_conflict,
)

DAY = date.today() + timedelta(days=3)


def test_same_area_worker_ranks_first(db, seed):
    candidates = find_available_workers(db, "78701", DAY, "10:00", 90)
    assert [c.worker_id for c in candidates] == [seed["worker_a"].id, seed["worker_b"].id]
    assert candidates[0].distance_priority == PRIORITY_SAME_AREA
    assert candidates[0].distance_miles == 0.0
    assert candidates[1].distance_priority == PRIORITY_NEARBY


def test_nearby_workers_for_uncovered_zip(db, seed):
    candidates = find_available_workers(db, "78704", DAY, "10:00", 90)
    assert {c.worker_id for c in candidates} == {seed["worker_a"].id, seed["worker_b"].id}
    assert all(c.distance_priority == PRIORITY_NEARBY for c in candidates)
    assert candidates[0].distance_miles <= candidates[1].distance_miles


def test_regional_match_outside_radius(db, seed):
    candidates = find_available_workers(db, "78704", DAY, "10:00", 90, nearby_radius_miles=0.5)
    assert len(candidates) == 2
    assert all(c.distance_priority == PRIORITY_REGIONAL for c in candidates)


def test_far_zip_has_no_candidates(db, seed):
    # The only worker listing 78216 is inactive
    assert find_available_workers(db, "78216", DAY, "10:00", 90) == []


def test_invalid_zip_has_no_candidates(db, seed):
    assert find_available_workers(db, "not-a-zip", DAY, "10:00") == []


def test_busy_worker_is_excluded(db, seed, make_booking):
    existing = make_booking(
        status="confirmed", payment_status="authorized", worker=seed["worker_a"], scheduled_date=DAY
    )

    candidates = find_available_workers(db, "78701", DAY, "10:30", 60)
    assert [c.worker_id for c in candidates] == [seed["worker_b"].id]

    # the booking being rescheduled does not block itself
    candidates = find_available_workers(db, "78701", DAY, "10:30", 60, exclude_booking_id=existing.id)
    assert candidates[0].worker_id == seed["worker_a"].id


def test_back_to_back_slots_do_not_conflict(db, seed, make_booking):
    make_booking(status="confirmed", payment_status="authorized", worker=seed["worker_a"], scheduled_date=DAY)
    # existing job runs 10:00-11:30
    assert not worker_has_conflict(db, seed["worker_a"].id, DAY, "11:30", 60)
    assert worker_has_conflict(db, seed["worker_a"].id, DAY, "09:00", 61)


def test_cancelled_bookings_free_the_slot(db, seed, make_booking):
    make_booking(status="cancelled", payment_status="cancelled", worker=seed["worker_a"], scheduled_date=DAY)
    assert not worker_has_conflict(db, seed["worker_a"].id, DAY, "10:00", 90)


def test_candidate_to_dict_rounds_distance(db, seed):
    data = find_available_workers(db, "78704", DAY, "10:00")[0].to_dict()
    assert set(data) == {
        "worker_id",
        "worker_name",
        "worker_email",
        "worker_phone",
        "distance_priority",
        "distance_miles",
    }
    assert data["distance_miles"] == round(data["distance_miles"], 1)


def test_zip_locations_are_looked_up_once(db, seed, monkeypatch):
    lookups = []
    real_matching = resolver.zipcodes.matching

    def counting(zipcode):
        lookups.append(zipcode)
        return real_matching(zipcode)

    resolver._lookup_location.cache_clear()
    monkeypatch.setattr(resolver.zipcodes, "matching", counting)

    for _ in range(3):
        find_available_workers(db, "78704", DAY, "10:00", 90)
    # booking ZIP plus the ZIPs covered by active workers, once each
    assert sorted(lookups) == ["78701", "78702", "78704", "78745"]
