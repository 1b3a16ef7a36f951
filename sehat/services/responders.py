import hashlib
import json
import logging
import math
import uuid
from datetime import UTC, datetime

from sehat.config import (
    ESTIMATE_FACILITY_COORDINATES,
    FACILITY_ESTIMATE_RADIUS_KM,
    REGION_CENTER_LAT,
    REGION_CENTER_LNG,
)
from sehat.database import DatabaseAdapter
from sehat.errors import ResponderExists, ResponderNotFound
from sehat.models.geo import Coordinates
from sehat.models.responder import (
    Candidate,
    CandidateType,
    Facility,
    FacilityCreate,
    FieldUnit,
    FieldUnitCreate,
    NearbyFacility,
)
from sehat.services.geo import distance_meters, offset_point

logger = logging.getLogger(__name__)

_UNIT_COLUMNS = (
    "id, name, vehicle_type, organization, current_lat, current_lng, is_available, last_seen_at, created_at"
)
_FACILITY_COLUMNS = "id, name, lat, lng, geocoded, capabilities, created_at"


def _row_to_unit(row) -> FieldUnit:
    location = None
    if row["current_lat"] is not None and row["current_lng"] is not None:
        location = Coordinates(lat=row["current_lat"], lng=row["current_lng"])
    return FieldUnit(
        id=row["id"],
        name=row["name"],
        vehicle_type=row["vehicle_type"],
        organization=row["organization"],
        location=location,
        is_available=bool(row["is_available"]),
        last_seen_at=row["last_seen_at"],
        created_at=row["created_at"],
    )


def _row_to_facility(row) -> Facility:
    location = None
    if row["lat"] is not None and row["lng"] is not None:
        location = Coordinates(lat=row["lat"], lng=row["lng"])
    capabilities: list[str] = []
    try:
        capabilities = json.loads(row["capabilities"] or "[]")
    except json.JSONDecodeError:
        logger.warning("Failed to parse capabilities for facility %s", row["id"])
    return Facility(
        id=row["id"],
        name=row["name"],
        location=location,
        geocoded=bool(row["geocoded"]),
        capabilities=capabilities,
        created_at=row["created_at"],
    )


def estimate_facility_location(
    facility_id: str,
    center: Coordinates | None = None,
    radius_km: float = FACILITY_ESTIMATE_RADIUS_KM,
) -> Coordinates:
    """Deterministic stand-in coordinate for a facility that has no geocode.

    Derived only from the facility id, so every call returns the same point.
    """
    center = center or Coordinates(lat=REGION_CENTER_LAT, lng=REGION_CENTER_LNG)
    digest = hashlib.sha256(facility_id.encode("utf-8")).digest()
    bearing = int.from_bytes(digest[:4], "big") / 2**32 * 2 * math.pi
    # sqrt keeps estimates uniformly spread over the disc rather than bunched at the center
    fraction = math.sqrt(int.from_bytes(digest[4:8], "big") / 2**32)
    meters = fraction * radius_km * 1000
    return offset_point(center, meters * math.cos(bearing), meters * math.sin(bearing))


def _recency_key(last_seen_at: str | None) -> float:
    # More recent reports sort first; never-seen units sort last.
    if not last_seen_at:
        return math.inf
    try:
        return -datetime.fromisoformat(last_seen_at).timestamp()
    except ValueError:
        return math.inf


class ResponderDirectory:
    """Field units and facilities that can be ranked for a case."""

    def __init__(
        self,
        db: DatabaseAdapter,
        *,
        estimate_missing: bool = ESTIMATE_FACILITY_COORDINATES,
        region_center: Coordinates | None = None,
        estimate_radius_km: float = FACILITY_ESTIMATE_RADIUS_KM,
    ) -> None:
        self._db = db
        self._estimate_missing = estimate_missing
        self._region_center = region_center or Coordinates(lat=REGION_CENTER_LAT, lng=REGION_CENTER_LNG)
        self._estimate_radius_km = estimate_radius_km

    # --- Field units ---

    async def register_field_unit(self, body: FieldUnitCreate) -> FieldUnit:
        now = datetime.now(UTC).isoformat()
        unit = FieldUnit(
            id=body.id or str(uuid.uuid4()),
            name=body.name,
            vehicle_type=body.vehicle_type,
            organization=body.organization,
            location=body.location,
            is_available=body.is_available,
            last_seen_at=now if body.location else None,
            created_at=now,
        )
        async with self._db.transaction() as tx:
            if await tx.fetch_one("SELECT id FROM field_units WHERE id = ?", (unit.id,)):
                raise ResponderExists("Field unit", unit.id)
            await tx.execute(
                f"INSERT INTO field_units ({_UNIT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    unit.id,
                    unit.name,
                    unit.vehicle_type,
                    unit.organization,
                    unit.location.lat if unit.location else None,
                    unit.location.lng if unit.location else None,
                    int(unit.is_available),
                    unit.last_seen_at,
                    unit.created_at,
                ),
            )
        logger.info("Registered field unit %s (%s)", unit.id, unit.name)
        return unit

    async def get_field_unit(self, unit_id: str) -> FieldUnit:
        row = await self._db.fetch_one(f"SELECT {_UNIT_COLUMNS} FROM field_units WHERE id = ?", (unit_id,))
        if not row:
            raise ResponderNotFound("Field unit", unit_id)
        return _row_to_unit(row)

    async def report_location(
        self,
        unit_id: str,
        location: Coordinates,
        is_available: bool | None = None,
    ) -> FieldUnit:
        """Apply a unit's periodic self-report of position and availability."""
        now = datetime.now(UTC).isoformat()
        async with self._db.transaction() as tx:
            row = await tx.fetch_one(
                f"SELECT {_UNIT_COLUMNS} FROM field_units WHERE id = ?{tx.lock_suffix}",
                (unit_id,),
            )
            if not row:
                raise ResponderNotFound("Field unit", unit_id)
            available = bool(row["is_available"]) if is_available is None else is_available
            await tx.execute(
                "UPDATE field_units SET current_lat = ?, current_lng = ?, is_available = ?, last_seen_at = ? "
                "WHERE id = ?",
                (location.lat, location.lng, int(available), now, unit_id),
            )
        return await self.get_field_unit(unit_id)

    async def nearest_field_units(self, origin: Coordinates, limit: int) -> list[Candidate]:
        """Available units with a known position, nearest first.

        Equal distances prefer the unit that reported most recently.
        """
        if limit <= 0:
            return []
        rows = await self._db.fetch_all(
            f"SELECT {_UNIT_COLUMNS} FROM field_units "
            "WHERE is_available = 1 AND current_lat IS NOT NULL AND current_lng IS NOT NULL"
        )
        candidates = []
        for row in rows:
            unit = _row_to_unit(row)
            if unit.location is None:
                continue
            candidates.append(Candidate(
                type=CandidateType.FIELD_UNIT,
                id=unit.id,
                location=unit.location,
                distance_meters=distance_meters(origin, unit.location),
                last_seen_at=unit.last_seen_at,
            ))
        candidates.sort(key=lambda c: (c.distance_meters, _recency_key(c.last_seen_at), c.id))
        return candidates[:limit]

    # --- Facilities ---

    async def register_facility(self, body: FacilityCreate) -> Facility:
        now = datetime.now(UTC).isoformat()
        facility = Facility(
            id=body.id or str(uuid.uuid4()),
            name=body.name,
            location=body.location,
            geocoded=body.location is not None,
            capabilities=body.capabilities,
            created_at=now,
        )
        async with self._db.transaction() as tx:
            if await tx.fetch_one("SELECT id FROM facilities WHERE id = ?", (facility.id,)):
                raise ResponderExists("Facility", facility.id)
            await tx.execute(
                f"INSERT INTO facilities ({_FACILITY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    facility.id,
                    facility.name,
                    facility.location.lat if facility.location else None,
                    facility.location.lng if facility.location else None,
                    int(facility.geocoded),
                    json.dumps(facility.capabilities),
                    facility.created_at,
                ),
            )
        logger.info("Registered facility %s (%s)", facility.id, facility.name)
        return facility

    async def get_facility(self, facility_id: str) -> Facility:
        row = await self._db.fetch_one(
            f"SELECT {_FACILITY_COLUMNS} FROM facilities WHERE id = ?", (facility_id,)
        )
        if not row:
            raise ResponderNotFound("Facility", facility_id)
        return _row_to_facility(row)

    def facility_location(self, facility: Facility) -> tuple[Coordinates | None, bool]:
        """Return the coordinate used for ranking and whether it is an estimate."""
        if facility.location is not None:
            return facility.location, not facility.geocoded
        if self._estimate_missing:
            return estimate_facility_location(facility.id, self._region_center, self._estimate_radius_km), True
        return None, False

    async def nearby_facilities(
        self,
        origin: Coordinates,
        limit: int,
        capability: str | None = None,
    ) -> list[NearbyFacility]:
        if limit <= 0:
            return []
        rows = await self._db.fetch_all(f"SELECT {_FACILITY_COLUMNS} FROM facilities")
        nearby = []
        for row in rows:
            facility = _row_to_facility(row)
            if capability and capability not in facility.capabilities:
                continue
            location, estimated = self.facility_location(facility)
            if location is None:
                continue
            nearby.append(NearbyFacility(
                facility=facility,
                location=location,
                estimated=estimated,
                distance_meters=distance_meters(origin, location),
            ))
        nearby.sort(key=lambda n: (n.distance_meters, n.facility.id))
        return nearby[:limit]

    async def nearest_facilities(
        self,
        origin: Coordinates,
        limit: int,
        capability: str | None = None,
    ) -> list[Candidate]:
        return [
            Candidate(
                type=CandidateType.FACILITY,
                id=n.facility.id,
                location=n.location,
                distance_meters=n.distance_meters,
                estimated=n.estimated,
            )
            for n in await self.nearby_facilities(origin, limit, capability)
        ]
