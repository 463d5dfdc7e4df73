import pytest

from tests.conftest import SQUARE_POLYGON, ZCTA_TEST_PATH
from tvbooking.cache import MemoizedLoader
from tvbooking.domain.coverage.resolver import (
    CoverageResolver,
    normalize_zipcode,
    validate_zipcode,
    zipcode_distance_miles,
)
from tvbooking.domain.coverage.service import CoverageService
from tvbooking.domain.coverage.zcta import load_zcta_dataset, validate_polygon
from tvbooking.exceptions import DataUnavailableError, NotFoundError, ValidationError

BOWTIE = [(30.0, -97.0), (29.9, -96.9), (30.0, -96.9), (29.9, -97.0)]


# --------------------------------------------------------------------
# ZIP helpers
# --------------------------------------------------------------------
@pytest.mark.parametrize(
    "raw, expected",
    [("78701", "78701"), (" 78701-1234 ", "78701"), ("7870", None), ("abcde", None), (None, None)],
)
def test_normalize_zipcode(raw, expected):
    assert normalize_zipcode(raw) == expected


def test_validate_zipcode_uses_zip_database():
    assert validate_zipcode("78701")
    assert not validate_zipcode("00000")
    assert not validate_zipcode("hello")


def test_zipcode_distance():
    assert zipcode_distance_miles("78701", "78701") == 0.0
    assert zipcode_distance_miles("78701", "78704") < 10
    assert zipcode_distance_miles("78701", "78216") > 50


# --------------------------------------------------------------------
# Polygon validation
# --------------------------------------------------------------------
def test_valid_polygon_reports_area():
    result = validate_polygon(SQUARE_POLYGON).to_dict()
    assert result["is_valid"]
    assert result["errors"] == []
    assert 50 < result["area_km2"] < 200


def test_closed_ring_is_accepted():
    assert validate_polygon(SQUARE_POLYGON + [SQUARE_POLYGON[0]]).is_valid


def test_self_intersecting_polygon_rejected():
    result = validate_polygon(BOWTIE)
    assert not result.is_valid
    assert "cross" in result.errors[0]


def test_too_few_points_rejected():
    result = validate_polygon([(30.0, -97.0), (30.1, -97.1)])
    assert not result.is_valid
    assert "at least 3 points" in result.errors[0]


def test_huge_polygon_only_warns():
    result = validate_polygon([(25.0, -105.0), (35.0, -105.0), (35.0, -95.0), (25.0, -95.0)])
    assert result.is_valid
    assert result.warnings


# --------------------------------------------------------------------
# Resolver
# --------------------------------------------------------------------
async def test_dataset_loads_and_skips_features_without_zip():
    index = await load_zcta_dataset(ZCTA_TEST_PATH)
    assert len(index) == 5


async def test_missing_dataset_is_unavailable(tmp_path):
    with pytest.raises(DataUnavailableError):
        await load_zcta_dataset(str(tmp_path / "missing.geojson"))


async def test_polygon_resolves_contained_and_partial_zips(resolver):
    matches = await resolver.find_intersecting_zipcodes(SQUARE_POLYGON)
    zipcodes = [m.zipcode for m in matches]
    # largest overlap first; every overlap is kept by default
    assert zipcodes == ["78612", "78610", "78613", "78614"]
    assert "78701" not in zipcodes
    partial = matches[2].to_dict()
    assert partial["intersection_ratio"] == pytest.approx(0.25, abs=0.01)
    assert not partial["full_coverage"]
    assert matches[0].to_dict()["full_coverage"]
    assert matches[3].intersection_ratio == pytest.approx(0.05, abs=0.01)


async def test_exclude_partial_zips(resolver):
    matches = await resolver.find_intersecting_zipcodes(SQUARE_POLYGON, include_partial=False)
    # 78613 covers a quarter of its area and stays; the 5% sliver does not
    assert [m.zipcode for m in matches] == ["78612", "78610", "78613"]


async def test_sliver_needs_lower_ratio_when_partials_excluded(resolver):
    strict = {
        m.zipcode for m in await resolver.find_intersecting_zipcodes(SQUARE_POLYGON, include_partial=False)
    }
    assert "78614" not in strict
    loose = {
        m.zipcode
        for m in await resolver.find_intersecting_zipcodes(
            SQUARE_POLYGON, include_partial=False, min_intersection_ratio=0.04
        )
    }
    assert "78614" in loose


async def test_ratio_is_ignored_when_partials_included(resolver):
    matches = await resolver.find_intersecting_zipcodes(SQUARE_POLYGON, min_intersection_ratio=0.9)
    assert {m.zipcode for m in matches} == {"78610", "78612", "78613", "78614"}


async def test_invalid_polygon_raises(resolver):
    with pytest.raises(ValidationError):
        await resolver.find_intersecting_zipcodes(BOWTIE)


async def test_zipcode_for_point(resolver):
    assert await resolver.zipcode_for_point(29.94, -96.97) == "78610"
    assert await resolver.zipcode_for_point(29.5, -96.0) is None
    with pytest.raises(ValidationError):
        await resolver.zipcode_for_point(120, 0)


async def test_dataset_is_loaded_once(container):
    await container.resolver.find_intersecting_zipcodes(SQUARE_POLYGON)
    await container.resolver.zipcode_for_point(29.94, -96.97)
    assert container.zcta_loader.load_count == 1


async def test_unavailable_dataset_propagates(tmp_path):
    async def load():
        return await load_zcta_dataset(str(tmp_path / "nope.geojson"))

    resolver = CoverageResolver(MemoizedLoader(load))
    with pytest.raises(DataUnavailableError):
        await resolver.find_intersecting_zipcodes(SQUARE_POLYGON)


# --------------------------------------------------------------------
# Coverage service
# --------------------------------------------------------------------
async def test_query_coverage_by_polygon(db, seed, resolver):
    service = CoverageService(db, resolver=resolver)
    result = await service.query_coverage(polygon=SQUARE_POLYGON)
    assert result["zipcodes"] == ["78612", "78610", "78613", "78614"]
    assert result["summary"] == {"total": 4, "assigned_to_worker": 0, "assigned_to_other": 0, "unassigned": 4}
    assert result["matches"][2]["full_coverage"] is False


async def test_query_coverage_relative_to_worker(db, seed, resolver):
    service = CoverageService(db, resolver=resolver)
    result = await service.query_coverage(
        zipcodes_only=["78701", "78745", "78216"], worker_id=seed["worker_a"].id
    )
    states = {m["zipcode"]: m["coverage"] for m in result["matches"]}
    assert states == {
        "78701": "assigned_to_worker",
        "78745": "assigned_to_other",
        # only an inactive worker lists this one
        "78216": "unassigned",
    }


async def test_query_coverage_needs_input(db, resolver):
    with pytest.raises(ValidationError):
        await CoverageService(db, resolver=resolver).query_coverage()


async def test_upsert_area_from_polygon(db, seed, resolver):
    service = CoverageService(db, resolver=resolver)
    area = await service.upsert_area(seed["worker_b"].id, "Bastrop County", polygon=SQUARE_POLYGON)
    assert area.zipcodes == ["78610", "78612", "78613", "78614"]
    assert area.polygon_coords[0] == [30.0, -97.0]

    again = await service.upsert_area(
        seed["worker_b"].id, "Bastrop County", polygon=SQUARE_POLYGON, include_partial=False
    )
    assert again.id == area.id
    assert again.zipcodes == ["78610", "78612", "78613"]


async def test_upsert_area_from_zip_list(db, seed, resolver):
    service = CoverageService(db, resolver=resolver)
    area = await service.upsert_area(seed["worker_a"].id, "Downtown", zipcodes=["78701", "78704", "78701"])
    assert area.zipcodes == ["78701", "78704"]
    assert area.polygon_coords is None

    with pytest.raises(ValidationError):
        await service.upsert_area(seed["worker_a"].id, "Nowhere", zipcodes=["00000"])


async def test_upsert_area_requires_worker(db, seed, resolver):
    with pytest.raises(NotFoundError):
        await CoverageService(db, resolver=resolver).upsert_area(
            seed["customer"].id, "Home", zipcodes=["78701"]
        )


def test_remove_worker_zip_and_deactivate(db, seed):
    service = CoverageService(db)
    result = service.remove_worker_zip(seed["worker_a"].id, "78702")
    assert result["areas_updated"] == 1
    area = service.list_areas(seed["worker_a"].id)[0]
    assert area.zipcodes == ["78701"]

    service.deactivate_area(area.id)
    assert service.list_areas(seed["worker_a"].id) == []


def test_coverage_endpoints(client, seed):
    response = client.post("/coverage/validate-polygon", json={"polygon": BOWTIE})
    assert response.status_code == 200
    assert response.json()["is_valid"] is False

    response = client.post("/coverage/query", json={"polygon": SQUARE_POLYGON, "include_partial": False})
    assert response.status_code == 200
    assert response.json()["summary"]["total"] == 3

    response = client.get("/coverage/zipcode", params={"lat": 29.92, "lng": -96.93})
    assert response.json() == {"zipcode": "78612", "found": True}

    response = client.post("/coverage/query", json={"polygon": BOWTIE})
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_service_area_endpoints(client, seed):
    worker_id = seed["worker_b"].id
    response = client.post(
        "/coverage/areas",
        json={"worker_id": worker_id, "area_name": "Bastrop County", "polygon": SQUARE_POLYGON, "include_partial": False},
    )
    assert response.status_code == 200
    area = response.json()
    assert area["zipcodes"] == ["78610", "78612", "78613"]
    assert area["is_active"] is True

    listed = client.get("/coverage/areas", params={"worker_id": worker_id}).json()
    assert area["id"] in {a["id"] for a in listed}

    removed = client.delete(f"/coverage/areas/{area['id']}").json()
    assert removed["is_active"] is False
