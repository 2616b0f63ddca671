from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .config import DistrictsConfig
from .db import execute, query_all, query_one
from .logger import get_logger
from .utils import new_id, utc_now_iso

log = get_logger(__name__)

EXPECTED_OFFICES: Dict[str, List[Dict[str, Any]]] = {
    "CONGRESSIONAL": [{"title": "U.S. Representative", "termLength": 2, "confidence": 0.95}],
    "STATE_SENATE": [{"title": "State Senator", "termLength": 4, "confidence": 0.90}],
    "STATE_HOUSE": [{"title": "State Representative", "termLength": 2, "confidence": 0.90}],
    "SCHOOL": [{"title": "School Board Member", "termLength": 4, "confidence": 0.80}],
    "COUNTY": [
        {"title": "County Commissioner", "termLength": 4, "confidence": 0.85},
        {"title": "County Sheriff", "termLength": 4, "confidence": 0.85},
        {"title": "County Clerk", "termLength": 4, "confidence": 0.75},
    ],
    "MUNICIPAL": [
        {"title": "Mayor", "termLength": 4, "confidence": 0.80},
        {"title": "City Council Member", "termLength": 4, "confidence": 0.85},
    ],
}

_ZIP_RE = re.compile(r"(\d{5}(-\d{4})?)")
_STATE_RE = re.compile(r",\s*([A-Z]{2})\s+\d{5}")


@dataclass
class Address:
    state: str
    zip_code: str
    street_address: str = ""
    city: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def full(self) -> str:
        return " ".join(p for p in (self.street_address, self.city, self.state, self.zip_code) if p)


def _location(address: Address) -> Dict[str, Any]:
    return {"lat": address.lat or 0, "lng": address.lng or 0, "zipCode": address.zip_code, "state": address.state}


def transform_geocodio(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    results = data.get("results") or []
    if not results:
        return None
    result = results[0]
    formatted = result.get("formatted_address") or ""
    zip_match = _ZIP_RE.search(formatted)
    state_match = _STATE_RE.search(formatted)
    state = state_match.group(1) if state_match else ""
    fields = result.get("fields") or {}
    districts: List[Dict[str, Any]] = []

    congressional = fields.get("congressional_districts") or []
    if congressional:
        n = congressional[0].get("district_number")
        districts.append(
            {
                "id": f"congressional-{state}-{n}",
                "name": f"{state} Congressional District {n}",
                "type": "CONGRESSIONAL",
                "level": "FEDERAL",
                "identifier": f"{state}-{n}",
                "confidence": 0.95,
            }
        )

    legislative = fields.get("state_legislative_districts") or {}
    for chamber, kind, letter in (("house", "STATE_HOUSE", "H"), ("senate", "STATE_SENATE", "S")):
        for district in legislative.get(chamber) or []:
            n = district.get("district_number")
            districts.append(
                {
                    "id": f"state-{chamber}-{state}-{n}",
                    "name": f"{state} State {chamber.title()} District {n}",
                    "type": kind,
                    "level": "STATE",
                    "identifier": f"{state}-{letter}-{n}",
                    "confidence": 0.90,
                }
            )

    for district in fields.get("school_districts") or []:
        lea = district.get("lea_code")
        districts.append(
            {
                "id": f"school-{state}-{lea}",
                "name": district.get("name") or f"{state} School District {lea}",
                "type": "SCHOOL",
                "level": "LOCAL",
                "identifier": f"{state}-SCHOOL-{lea}",
                "confidence": 0.85,
            }
        )

    location = result.get("location") or {}
    return {
        "districts": districts,
        "location": {
            "lat": location.get("lat", 0),
            "lng": location.get("lng", 0),
            "zipCode": zip_match.group(1) if zip_match else "",
            "state": state,
        },
        "source": "GEOCODIO",
        "cached": False,
    }


class DistrictService:
    def __init__(
        self,
        db_path: str,
        config: Optional[DistrictsConfig] = None,
        api_key: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.config = config or DistrictsConfig()
        self.api_key = api_key or os.getenv("GEOCODIO_API_KEY")
        self.clock = clock
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def identify_districts(self, address: Address, force_refresh: bool = False) -> Dict[str, Any]:
        cache_key = f"districts_{address.zip_code}_{address.state}"
        if not force_refresh:
            entry = self._cache.get(cache_key)
            if entry and entry[0] > self.clock():
                return {**entry[1], "cached": True}

        ttl = self.config.cache_days * 86400
        from_db = self.districts_from_database(address)
        if from_db["districts"]:
            self._cache[cache_key] = (self.clock() + ttl, from_db)
            return from_db

        from_api = self.fetch_from_geocodio(address)
        if from_api:
            self.store_districts(from_api, address)
            self._cache[cache_key] = (self.clock() + ttl, from_api)
            return from_api

        return {"districts": [], "location": _location(address), "source": "DATABASE", "cached": False}

    def districts_from_database(self, address: Address) -> Dict[str, Any]:
        rows = query_all(
            self.db_path,
            """
            SELECT d.id, d.name, d.type, d.level, d.identifier, m.confidence
            FROM address_district_mappings m JOIN electoral_districts d ON d.id = m.district_id
            WHERE m.zip_code = ? AND m.state = ?
            ORDER BY m.confidence DESC;
            """,
            (address.zip_code, address.state),
        )
        seen = set()
        districts = []
        for row in rows:
            if row["id"] in seen:
                continue
            seen.add(row["id"])
            # zip-level matches are less precise than the original geocode
            districts.append({**row, "confidence": (row["confidence"] or 0) * 0.8})
        return {"districts": districts, "location": _location(address), "source": "DATABASE", "cached": False}

    def fetch_from_geocodio(self, address: Address) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            return None
        params = {"api_key": self.api_key, "q": address.full, "fields": "cd,stateleg,school"}
        try:
            with httpx.Client(timeout=self.config.timeout_seconds) as client:
                resp = client.get(self.config.geocodio_url, params=params)
            resp.raise_for_status()
            return transform_geocodio(resp.json())
        except (httpx.HTTPError, ValueError) as e:
            log.error("Geocodio district lookup failed: %s", e)
            return None

    def store_districts(self, identification: Dict[str, Any], address: Address) -> None:
        now = utc_now_iso()
        location = identification.get("location") or {}
        for district in identification["districts"]:
            state = location.get("state") or address.state
            execute(
                self.db_path,
                """
                INSERT INTO electoral_districts (id, name, type, level, identifier, state, data_source, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identifier, state, type) DO UPDATE SET
                    name = excluded.name, data_source = excluded.data_source, updated_at = excluded.updated_at;
                """,
                (
                    district["id"], district["name"], district["type"], district["level"],
                    district["identifier"], state, identification.get("source"), now,
                ),
            )
            stored = query_one(
                self.db_path,
                "SELECT id FROM electoral_districts WHERE identifier = ? AND state = ? AND type = ?;",
                (district["identifier"], state, district["type"]),
            )
            execute(
                self.db_path,
                """
                INSERT INTO address_district_mappings (id, address, zip_code, state, lat, lng, confidence, source,
                                                       district_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    new_id(), address.full, address.zip_code, address.state, location.get("lat"),
                    location.get("lng"), district["confidence"], identification.get("source"),
                    stored["id"] if stored else district["id"], now,
                ),
            )
        log.info("Stored %d districts for %s %s", len(identification["districts"]), address.state, address.zip_code)

    def find_missing_offices(self, district_ids: List[str]) -> List[Dict[str, Any]]:
        missing = []
        for district_id in district_ids:
            district = query_one(self.db_path, "SELECT * FROM electoral_districts WHERE id = ?;", (district_id,))
            if not district:
                continue
            titles = [
                r["title"].lower()
                for r in query_all(self.db_path, "SELECT title FROM offices WHERE district_id = ?;", (district_id,))
            ]
            for expected in EXPECTED_OFFICES.get(district["type"], []):
                if any(expected["title"].lower() in t for t in titles):
                    continue
                missing.append(
                    {
                        "districtId": district["id"],
                        "districtName": district["name"],
                        "officeTitle": expected["title"],
                        "level": district["level"],
                        "estimatedTermLength": expected["termLength"],
                        "confidence": expected["confidence"],
                    }
                )
        return missing
