from __future__ import annotations

import pytest

from conftest import FakeResponse
from unitedwerise.db import execute, query_all
from unitedwerise.districts import Address, DistrictService, transform_geocodio
from unitedwerise.utils import utc_now_iso

GEOCODIO_PAYLOAD = {
    "results": [
        {
            "formatted_address": "1109 N Highland St, Arlington, VA 22201",
            "location": {"lat": 38.886672, "lng": -77.094735},
            "fields": {
                "congressional_districts": [{"name": "Congressional District 8", "district_number": 8}],
                "state_legislative_districts": {
                    "house": [{"name": "State House District 47", "district_number": "47"}],
                    "senate": [{"name": "State Senate District 31", "district_number": "31"}],
                },
                "school_districts": [{"name": "Arlington County Public Schools", "lea_code": "5100270"}],
            },
        }
    ]
}

ADDRESS = Address(state="VA", zip_code="22201", street_address="1109 N Highland St", city="Arlington")


class Clock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now


def test_transform_geocodio():
    result = transform_geocodio(GEOCODIO_PAYLOAD)
    assert [d["id"] for d in result["districts"]] == [
        "congressional-VA-8",
        "state-house-VA-47",
        "state-senate-VA-31",
        "school-VA-5100270",
    ]
    assert result["districts"][0]["identifier"] == "VA-8"
    assert result["districts"][1]["identifier"] == "VA-H-47"
    assert result["districts"][2]["name"] == "VA State Senate District 31"
    assert result["districts"][3]["name"] == "Arlington County Public Schools"
    assert result["location"] == {"lat": 38.886672, "lng": -77.094735, "zipCode": "22201", "state": "VA"}
    assert result["source"] == "GEOCODIO"
    assert transform_geocodio({"results": []}) is None


def test_address_full():
    assert ADDRESS.full == "1109 N Highland St Arlington VA 22201"
    assert Address(state="VA", zip_code="22201").full == "VA 22201"


def test_no_key_and_no_data(db_path, fake_http):
    http = fake_http(FakeResponse(200, GEOCODIO_PAYLOAD))
    result = DistrictService(db_path).identify_districts(ADDRESS)
    assert result == {
        "districts": [],
        "location": {"lat": 0, "lng": 0, "zipCode": "22201", "state": "VA"},
        "source": "DATABASE",
        "cached": False,
    }
    assert http.requests == []


def test_lookup_stores_and_caches(db_path, fake_http):
    http = fake_http(FakeResponse(200, GEOCODIO_PAYLOAD))
    clock = Clock()
    service = DistrictService(db_path, api_key="geo-key", clock=clock)

    first = service.identify_districts(ADDRESS)
    assert first["source"] == "GEOCODIO"
    assert len(first["districts"]) == 4
    assert http.requests[0]["params"] == {
        "api_key": "geo-key",
        "q": "1109 N Highland St Arlington VA 22201",
        "fields": "cd,stateleg,school",
    }
    assert len(query_all(db_path, "SELECT * FROM electoral_districts;")) == 4
    assert len(query_all(db_path, "SELECT * FROM address_district_mappings;")) == 4

    assert service.identify_districts(ADDRESS)["cached"] is True

    # a fresh service finds the stored districts without calling out
    again = DistrictService(db_path, api_key="geo-key", clock=clock).identify_districts(ADDRESS)
    assert again["source"] == "DATABASE"
    assert again["districts"][0]["id"] == "congressional-VA-8"
    assert again["districts"][0]["confidence"] == pytest.approx(0.95 * 0.8)
    assert len(http.requests) == 1


def test_force_refresh_and_expiry(db_path, fake_http):
    fake_http(FakeResponse(200, GEOCODIO_PAYLOAD))
    clock = Clock()
    service = DistrictService(db_path, api_key="geo-key", clock=clock)
    service.identify_districts(ADDRESS)

    assert service.identify_districts(ADDRESS, force_refresh=True)["cached"] is False
    clock.now += 31 * 86400
    assert service.identify_districts(ADDRESS)["cached"] is False


def test_geocodio_failure(db_path, fake_http):
    fake_http(FakeResponse(500))
    result = DistrictService(db_path, api_key="geo-key").identify_districts(ADDRESS)
    assert result["districts"] == []
    assert result["source"] == "DATABASE"


def test_find_missing_offices(db_path, fake_http):
    fake_http(FakeResponse(200, GEOCODIO_PAYLOAD))
    service = DistrictService(db_path, api_key="geo-key")
    service.identify_districts(ADDRESS)

    missing = service.find_missing_offices(["congressional-VA-8", "school-VA-5100270", "unknown"])
    assert [m["officeTitle"] for m in missing] == ["U.S. Representative", "School Board Member"]
    assert missing[0]["estimatedTermLength"] == 2
    assert missing[0]["level"] == "FEDERAL"

    execute(
        db_path,
        "INSERT INTO offices (id, district_id, title, holder_name, created_at) VALUES (?, ?, ?, ?, ?);",
        ("o1", "congressional-VA-8", "U.S. Representative", "Don Beyer", utc_now_iso()),
    )
    assert service.find_missing_offices(["congressional-VA-8"]) == []
