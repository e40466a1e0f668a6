from __future__ import annotations

# Contracts for the collaborators the engine consumes but does not own:
# - IdentityProvider: turns a request token into the caller's identity.
# - SalonDirectory: salon location and service catalogue.
#
# The in-memory implementations are enough for the CLI demo and for tests;
# a deployment plugs in adapters for its own auth and catalogue services.

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from .errors import SalonNotFound, ServiceNotFound, Unauthenticated
from .models import Location, ServiceItem


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str = ""
    phone: str = ""


@dataclass(frozen=True)
class Session:
    """Explicit per-request context passed into every engine operation."""

    identity: Identity
    is_staff: bool = False
    staff_salon_ids: frozenset[str] = frozenset()

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    def can_manage(self, salon_id: str) -> bool:
        return self.is_staff and (not self.staff_salon_ids or salon_id in self.staff_salon_ids)


@dataclass(frozen=True)
class Salon:
    id: str
    name: str
    location: Location
    services: dict[str, ServiceItem] = field(default_factory=dict)

    def resolve_services(self, service_ids: list[str]) -> tuple[ServiceItem, ...]:
        items = []
        for sid in service_ids:
            item = self.services.get(sid)
            if item is None:
                raise ServiceNotFound(f"service {sid} is not offered by salon {self.id}", service_id=sid)
            items.append(item)
        return tuple(items)


class IdentityProvider(ABC):
    @abstractmethod
    def resolve(self, token: str | None) -> Identity:
        """Return the caller's identity or raise Unauthenticated."""
        raise NotImplementedError

    def staff_salons(self, user_id: str) -> frozenset[str]:
        """Salons the user may manage; empty for customers."""
        return frozenset()

    def session(self, token: str | None) -> Session:
        identity = self.resolve(token)
        salons = self.staff_salons(identity.user_id)
        return Session(identity=identity, is_staff=bool(salons), staff_salon_ids=salons)


class SalonDirectory(ABC):
    @abstractmethod
    def get(self, salon_id: str) -> Salon:
        """Return the salon or raise SalonNotFound."""
        raise NotImplementedError


class StaticIdentityProvider(IdentityProvider):
    def __init__(self, tokens: dict[str, Identity] | None = None) -> None:
        self._tokens = dict(tokens or {})
        self._staff: dict[str, frozenset[str]] = {}

    def register(self, token: str, identity: Identity, *, staff_salons: frozenset[str] = frozenset()) -> None:
        self._tokens[token] = identity
        if staff_salons:
            self._staff[identity.user_id] = frozenset(staff_salons)

    def staff_salons(self, user_id: str) -> frozenset[str]:
        return self._staff.get(user_id, frozenset())

    def resolve(self, token: str | None) -> Identity:
        if not token or token not in self._tokens:
            raise Unauthenticated()
        return self._tokens[token]


class InMemorySalonDirectory(SalonDirectory):
    def __init__(self, salons: list[Salon] | None = None) -> None:
        self._lock = threading.Lock()
        self._salons: dict[str, Salon] = {s.id: s for s in salons or []}

    def add(self, salon: Salon) -> None:
        with self._lock:
            self._salons[salon.id] = salon

    def get(self, salon_id: str) -> Salon:
        with self._lock:
            salon = self._salons.get(salon_id)
        if salon is None:
            raise SalonNotFound(f"salon {salon_id} not found", salon_id=salon_id)
        return salon


def load_seed(path: str | Path) -> tuple[InMemorySalonDirectory, StaticIdentityProvider]:
    """Build the in-memory collaborators from a JSON seed file.

    Layout::

        {"salons": [{"id", "name", "latitude", "longitude",
                     "services": [{"id", "name", "price", "duration_minutes"}]}],
         "users":  [{"token", "user_id", "display_name", "phone", "staff_salons": []}]}
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    directory = InMemorySalonDirectory()
    for s in data.get("salons", []):
        services = {
            str(item["id"]): ServiceItem(
                id=str(item["id"]),
                name=str(item.get("name", item["id"])),
                price=float(item.get("price", 0)),
                duration_minutes=int(item["duration_minutes"]),
            )
            for item in s.get("services", [])
        }
        directory.add(
            Salon(
                id=str(s["id"]),
                name=str(s.get("name", s["id"])),
                location=Location(float(s["latitude"]), float(s["longitude"])),
                services=services,
            )
        )

    identities = StaticIdentityProvider()
    for u in data.get("users", []):
        identities.register(
            str(u["token"]),
            Identity(
                user_id=str(u["user_id"]),
                display_name=str(u.get("display_name", "")),
                phone=str(u.get("phone", "")),
            ),
            staff_salons=frozenset(u.get("staff_salons", [])),
        )
    return directory, identities
