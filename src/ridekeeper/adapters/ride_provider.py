"""Ride-booking providers: HTTP client with typed errors, plus a simulator.

Provider status vocabulary (fixed contract):
    scheduled, driver_assigned, en_route, arrived, in_progress, completed, cancelled
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from ridekeeper.errors import ProviderError
from ridekeeper.models import utcnow

if TYPE_CHECKING:
    from collections.abc import Callable

__all__ = [
    "PROVIDER_STATUSES",
    "HttpRideProvider",
    "ProviderDriver",
    "ProviderRide",
    "RideProvider",
    "RideRequest",
    "SimulatedRideProvider",
    "estimate_cost",
    "haversine_miles",
]

PROVIDER_STATUSES = (
    "scheduled",
    "driver_assigned",
    "en_route",
    "arrived",
    "in_progress",
    "completed",
    "cancelled",
)
_RANK = {s: i for i, s in enumerate(PROVIDER_STATUSES)}

BASE_FARE = 8.0
PER_MILE = 2.5
EARTH_RADIUS_MILES = 3959


@dataclass(frozen=True)
class RideRequest:
    pickup_address: str
    dropoff_address: str
    pickup_time: datetime
    patient_name: str
    patient_phone: str = ""
    pickup_lat: float | None = None
    pickup_lng: float | None = None
    dropoff_lat: float | None = None
    dropoff_lng: float | None = None
    estimated_miles: float | None = None  # used when coordinates are missing

    def to_dict(self) -> dict[str, Any]:
        return {
            "pickup_location": {
                "address": self.pickup_address,
                "lat": self.pickup_lat,
                "lng": self.pickup_lng,
            },
            "dropoff_location": {
                "address": self.dropoff_address,
                "lat": self.dropoff_lat,
                "lng": self.dropoff_lng,
            },
            "pickup_time": self.pickup_time.isoformat(),
            "patient_name": self.patient_name,
            "patient_phone": self.patient_phone,
        }


@dataclass(frozen=True)
class ProviderDriver:
    name: str
    vehicle: str
    license: str = ""

    @property
    def vehicle_info(self) -> str:
        return f"{self.vehicle} ({self.license})" if self.license else self.vehicle


@dataclass(frozen=True)
class ProviderRide:
    ride_id: str
    status: str
    pickup_time: datetime
    estimated_cost: float | None = None
    driver: ProviderDriver | None = None
    eta_minutes: int | None = None
    current_location: tuple[float, float] | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ProviderRide:
        driver = data.get("driver")
        location = data.get("current_location")
        return cls(
            ride_id=str(data["ride_id"]),
            status=str(data["status"]),
            pickup_time=datetime.fromisoformat(data["pickup_time"]),
            estimated_cost=data.get("estimated_cost"),
            driver=(
                ProviderDriver(
                    name=driver.get("name", ""),
                    vehicle=driver.get("vehicle", ""),
                    license=driver.get("license", ""),
                )
                if driver
                else None
            ),
            eta_minutes=data.get("eta_minutes"),
            current_location=(location["lat"], location["lng"]) if location else None,
        )


class RideProvider(Protocol):
    async def book(self, request: RideRequest) -> ProviderRide: ...

    async def status(self, ride_id: str) -> ProviderRide | None: ...

    async def cancel(self, ride_id: str) -> bool: ...


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def estimate_cost(miles: float) -> float:
    """Base fare plus per-mile rate, rounded half-up to whole dollars."""
    return float(math.floor(BASE_FARE + miles * PER_MILE + 0.5))


# ── HTTP provider ────────────────────────────────────────────────────


class HttpRideProvider:
    """HTTP client for the ride provider API.

    Raises ProviderError when the provider is unreachable or answers with
    an error status. A 404 on status lookups means "unknown ride".
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)

    async def book(self, request: RideRequest) -> ProviderRide:
        try:
            resp = await self._client.post("/rides", json=request.to_dict())
            resp.raise_for_status()
            return ProviderRide.from_payload(resp.json())
        except httpx.HTTPError as e:
            raise ProviderError(f"Ride booking failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise ProviderError(f"Malformed booking response: {e}") from e

    async def status(self, ride_id: str) -> ProviderRide | None:
        try:
            resp = await self._client.get(f"/rides/{ride_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return ProviderRide.from_payload(resp.json())
        except httpx.HTTPError as e:
            raise ProviderError(f"Ride status lookup failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise ProviderError(f"Malformed status response: {e}") from e

    async def cancel(self, ride_id: str) -> bool:
        try:
            resp = await self._client.post(f"/rides/{ride_id}/cancel")
        except httpx.HTTPError as e:
            raise ProviderError(f"Ride cancellation failed: {e}") from e
        if resp.status_code in (404, 409):
            return False
        if resp.is_error:
            raise ProviderError(f"Ride cancellation failed: HTTP {resp.status_code}")
        return bool(resp.json().get("success", True))

    async def close(self) -> None:
        await self._client.aclose()


# ── Simulated provider ───────────────────────────────────────────────

SIMULATED_DRIVERS = (
    ProviderDriver("Sarah M.", "Gray Honda Civic", "7ABC123"),
    ProviderDriver("Michael R.", "White Toyota Camry", "8XYZ789"),
    ProviderDriver("Jennifer L.", "Blue Hyundai Elantra", "5DEF456"),
    ProviderDriver("David K.", "Black Nissan Altima", "3GHI321"),
    ProviderDriver("Maria G.", "Silver Honda Accord", "9JKL654"),
)


@dataclass
class _SimRide:
    ride: ProviderRide
    pickup: tuple[float, float] | None
    dropoff: tuple[float, float] | None


class SimulatedRideProvider:
    """In-process provider whose rides progress with the injected clock.

    Minutes until pickup:
        > 60   scheduled
        <= 60  driver_assigned
        <= 15  en_route
        <= 5   arrived
        <= 0   in_progress
        <= -30 completed

    Status only moves forward; cancelled and completed rides stay put.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._rides: dict[str, _SimRide] = {}

    async def book(self, request: RideRequest) -> ProviderRide:
        ride_id = f"SIM_{uuid.uuid4().hex[:8].upper()}"
        pickup = _coords(request.pickup_lat, request.pickup_lng)
        dropoff = _coords(request.dropoff_lat, request.dropoff_lng)
        if pickup and dropoff:
            miles = haversine_miles(*pickup, *dropoff)
        else:
            miles = request.estimated_miles or 0.0
        ride = ProviderRide(
            ride_id=ride_id,
            status="scheduled",
            pickup_time=request.pickup_time,
            estimated_cost=estimate_cost(miles),
        )
        self._rides[ride_id] = _SimRide(ride=ride, pickup=pickup, dropoff=dropoff)
        return ride

    async def status(self, ride_id: str) -> ProviderRide | None:
        sim = self._rides.get(ride_id)
        if sim is None:
            return None
        current = sim.ride
        if current.status in ("completed", "cancelled"):
            return current

        minutes = (current.pickup_time - self._clock()) / timedelta(minutes=1)
        derived = _status_for(minutes)
        if _RANK[derived] > _RANK[current.status]:
            sim.ride = self._advance(sim, derived, minutes)
        return sim.ride

    async def cancel(self, ride_id: str) -> bool:
        sim = self._rides.get(ride_id)
        if sim is None or sim.ride.status in ("completed", "in_progress", "cancelled"):
            return False
        sim.ride = replace(sim.ride, status="cancelled")
        return True

    def force_status(self, ride_id: str, status: str) -> ProviderRide | None:
        """Operator fast-forward; rides still never move backwards."""
        sim = self._rides.get(ride_id)
        if sim is None:
            return None
        if status not in _RANK:
            msg = f"Unknown provider status: {status}"
            raise ValueError(msg)
        if _RANK[status] > _RANK[sim.ride.status]:
            minutes = (sim.ride.pickup_time - self._clock()) / timedelta(minutes=1)
            sim.ride = self._advance(sim, status, minutes)
        return sim.ride

    def _advance(self, sim: _SimRide, status: str, minutes: float) -> ProviderRide:
        ride = sim.ride
        driver = ride.driver
        if driver is None and status != "cancelled":
            driver = SIMULATED_DRIVERS[int(ride.ride_id[4:], 16) % len(SIMULATED_DRIVERS)]
        eta = ride.eta_minutes
        location = ride.current_location
        if status == "en_route":
            eta = max(round(minutes), 0)
            if sim.pickup and sim.dropoff:
                progress = max(0.0, min(1.0, minutes / 15))
                location = (
                    sim.dropoff[0] + (sim.pickup[0] - sim.dropoff[0]) * (1 - progress),
                    sim.dropoff[1] + (sim.pickup[1] - sim.dropoff[1]) * (1 - progress),
                )
        elif status == "arrived":
            eta = 0
            location = sim.pickup
        return replace(ride, status=status, driver=driver, eta_minutes=eta, current_location=location)


def _coords(lat: float | None, lng: float | None) -> tuple[float, float] | None:
    if lat is None or lng is None:
        return None
    return (lat, lng)


def _status_for(minutes_until_pickup: float) -> str:
    if minutes_until_pickup <= -30:
        return "completed"
    if minutes_until_pickup <= 0:
        return "in_progress"
    if minutes_until_pickup <= 5:
        return "arrived"
    if minutes_until_pickup <= 15:
        return "en_route"
    if minutes_until_pickup <= 60:
        return "driver_assigned"
    return "scheduled"
