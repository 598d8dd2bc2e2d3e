"""Fleet and transport-request data model.

Units, statuses and crew are owned by the dispatch backend; the console keeps
periodically refreshed copies. Transport requests carry a closed lifecycle
(``RequestStatus``) that is owned by this system.

Parsers accept both the English field names used by the current backend and
the legacy Spanish wire names (``placa``, ``estado``, ``ubicacionActual`` ...).
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from dispatch_errors import InvalidRequestError


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: datetime) -> str:
    return _to_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso8601_utc(value: str) -> datetime:
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    return _to_utc(datetime.fromisoformat(text))


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def coerce_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_optional_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return parse_iso8601_utc(value)
    except ValueError:
        return None


# ---------------------------
# Statuses
# ---------------------------
class StatusCategory(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OUT_OF_SERVICE = "out_of_service"


# Fallback label table, used only when the backend does not send a category.
DEFAULT_STATUS_CATEGORIES: Dict[str, StatusCategory] = {
    "available": StatusCategory.AVAILABLE,
    "disponible": StatusCategory.AVAILABLE,
    "in service": StatusCategory.BUSY,
    "en servicio": StatusCategory.BUSY,
    "busy": StatusCategory.BUSY,
    "ocupada": StatusCategory.BUSY,
    "in maintenance": StatusCategory.OUT_OF_SERVICE,
    "en mantenimiento": StatusCategory.OUT_OF_SERVICE,
    "out of service": StatusCategory.OUT_OF_SERVICE,
    "fuera de servicio": StatusCategory.OUT_OF_SERVICE,
}


def _normalize_label(label: str) -> str:
    return " ".join(label.strip().lower().split())


def _parse_category(value: Any) -> Optional[StatusCategory]:
    if not isinstance(value, str):
        return None
    try:
        return StatusCategory(value.strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class Status:
    id: str
    label: str
    category: StatusCategory

    @property
    def is_available(self) -> bool:
        return self.category is StatusCategory.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "label": self.label, "category": self.category.value}


class StatusCatalog:
    """Maps backend statuses onto stable categories.

    The category is decided once, when statuses are loaded: an explicit
    ``category`` field from the backend wins, otherwise the label is looked up
    in the configured table. Unknown labels are treated as out of service so
    they are never offered as available units.
    """

    def __init__(self, label_map: Optional[Mapping[str, Any]] = None):
        table = label_map if label_map is not None else DEFAULT_STATUS_CATEGORIES
        self._label_map: Dict[str, StatusCategory] = {}
        for label, category in table.items():
            parsed = category if isinstance(category, StatusCategory) else _parse_category(category)
            if parsed is None:
                raise ValueError(f"unknown status category {category!r} for label {label!r}")
            self._label_map[_normalize_label(label)] = parsed
        self._by_id: Dict[str, Status] = {}

    @classmethod
    def from_json(cls, text: str) -> "StatusCatalog":
        """Build a catalog from a ``{label: category}`` JSON object (``STATUS_CATEGORY_MAP``)."""
        if not text.strip():
            return cls()
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("STATUS_CATEGORY_MAP must be a JSON object")
        return cls(data)

    def category_for_label(self, label: str) -> StatusCategory:
        return self._label_map.get(_normalize_label(label), StatusCategory.OUT_OF_SERVICE)

    def parse(self, raw: Mapping[str, Any]) -> Status:
        status_id = _first(raw, "id", "statusId", "estadoId")
        label = _first(raw, "label", "estado", "name") or ""
        status_id = str(status_id) if status_id is not None else str(label)
        known = self._by_id.get(status_id)
        category = _parse_category(raw.get("category"))
        if category is None and known is not None:
            category = known.category
        if category is None:
            category = self.category_for_label(str(label))
        return Status(id=status_id, label=str(label), category=category)

    def load(self, statuses: Iterable[Mapping[str, Any]]) -> List[Status]:
        parsed = [self.parse(raw) for raw in statuses if isinstance(raw, Mapping)]
        self._by_id = {status.id: status for status in parsed}
        return parsed

    def statuses(self) -> List[Status]:
        return list(self._by_id.values())


# ---------------------------
# Crew
# ---------------------------
class CrewRole(str, Enum):
    PARAMEDIC = "paramedic"
    DRIVER = "driver"
    NURSE = "nurse"
    PHYSICIAN = "physician"


_ROLE_ALIASES = {
    "paramedic": CrewRole.PARAMEDIC,
    "paramedico": CrewRole.PARAMEDIC,
    "driver": CrewRole.DRIVER,
    "conductor": CrewRole.DRIVER,
    "nurse": CrewRole.NURSE,
    "enfermero": CrewRole.NURSE,
    "physician": CrewRole.PHYSICIAN,
    "medico": CrewRole.PHYSICIAN,
}


def parse_crew_role(value: Any) -> Optional[CrewRole]:
    if not isinstance(value, str):
        return None
    return _ROLE_ALIASES.get(value.strip().lower())


@dataclass(frozen=True)
class CrewMember:
    id: str
    given_name: str
    family_name: str
    role: Optional[CrewRole]
    email: str
    unit_id: Optional[str] = None  # lookup only; the Unit owns the assignment

    @property
    def display_name(self) -> str:
        return f"{self.given_name} {self.family_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "given_name": self.given_name,
            "family_name": self.family_name,
            "role": self.role.value if self.role else None,
            "email": self.email,
            "unit_id": self.unit_id,
        }


def parse_crew_member(raw: Mapping[str, Any]) -> Optional[CrewMember]:
    crew_id = raw.get("id")
    if crew_id is None:
        return None
    unit_ref = _first(raw, "unit", "ambulancia")
    unit_id = None
    if isinstance(unit_ref, Mapping) and unit_ref.get("id") is not None:
        unit_id = str(unit_ref["id"])
    elif raw.get("unitId") is not None:
        unit_id = str(raw["unitId"])
    return CrewMember(
        id=str(crew_id),
        given_name=str(_first(raw, "givenName", "firstName", "nombre") or ""),
        family_name=str(_first(raw, "familyName", "lastName", "apellido") or ""),
        role=parse_crew_role(_first(raw, "role", "idrol", "rol")),
        email=str(raw.get("email") or ""),
        unit_id=unit_id,
    )


# ---------------------------
# Units
# ---------------------------
@dataclass(frozen=True)
class Unit:
    id: str
    plate: str
    status: Status
    crew: Tuple[CrewMember, ...] = ()
    lat: Optional[float] = None
    lon: Optional[float] = None
    updated_at: Optional[datetime] = None
    location_label: str = ""

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lon is not None

    @property
    def position(self) -> Optional[Tuple[float, float]]:
        if self.lat is None or self.lon is None:
            return None
        return (self.lat, self.lon)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "plate": self.plate,
            "status": self.status.to_dict(),
            "crew": [member.to_dict() for member in self.crew],
            "lat": self.lat,
            "lon": self.lon,
            "updated_at": isoformat_utc(self.updated_at) if self.updated_at else None,
            "location_label": self.location_label,
        }


def parse_unit(raw: Mapping[str, Any], catalog: StatusCatalog) -> Optional[Unit]:
    unit_id = raw.get("id")
    if unit_id is None:
        return None
    raw_status = _first(raw, "status", "estado")
    if not isinstance(raw_status, Mapping):
        # A unit always has exactly one current status.
        return None
    crew: List[CrewMember] = []
    seen_crew: set = set()
    for entry in _first(raw, "crew", "user", "tripulacion") or []:
        if not isinstance(entry, Mapping):
            continue
        member = parse_crew_member(entry)
        if member is None or member.id in seen_crew:
            continue
        seen_crew.add(member.id)
        crew.append(member)
    return Unit(
        id=str(unit_id),
        plate=str(_first(raw, "plate", "placa") or ""),
        status=catalog.parse(raw_status),
        crew=tuple(crew),
        lat=coerce_float(_first(raw, "lat", "latitude")),
        lon=coerce_float(_first(raw, "lon", "lng", "longitude")),
        updated_at=_parse_optional_timestamp(_first(raw, "updatedAt", "updated_at")),
        location_label=str(_first(raw, "currentLocationLabel", "locationLabel", "ubicacionActual") or ""),
    )


def parse_units(payload: Any, catalog: StatusCatalog) -> List[Unit]:
    if not isinstance(payload, list):
        return []
    units: List[Unit] = []
    for raw in payload:
        if not isinstance(raw, Mapping):
            continue
        unit = parse_unit(raw, catalog)
        if unit is not None:
            units.append(unit)
    return units


# ---------------------------
# Transport requests
# ---------------------------
class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROCESS = "in-process"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)


_REQUEST_STATUS_ALIASES = {
    "pending": RequestStatus.PENDING,
    "pendiente": RequestStatus.PENDING,
    "in-process": RequestStatus.IN_PROCESS,
    "in_process": RequestStatus.IN_PROCESS,
    "en_proceso": RequestStatus.IN_PROCESS,
    "completed": RequestStatus.COMPLETED,
    "completado": RequestStatus.COMPLETED,
    "cancelled": RequestStatus.CANCELLED,
    "canceled": RequestStatus.CANCELLED,
    "cancelado": RequestStatus.CANCELLED,
}


def parse_request_status(value: Any) -> Optional[RequestStatus]:
    if isinstance(value, RequestStatus):
        return value
    if not isinstance(value, str):
        return None
    return _REQUEST_STATUS_ALIASES.get(value.strip().lower())


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_PRIORITY_ALIASES = {
    "low": Priority.LOW,
    "baja": Priority.LOW,
    "medium": Priority.MEDIUM,
    "media": Priority.MEDIUM,
    "high": Priority.HIGH,
    "alta": Priority.HIGH,
}


def parse_priority(value: Any) -> Optional[Priority]:
    if isinstance(value, Priority):
        return value
    if not isinstance(value, str):
        return None
    return _PRIORITY_ALIASES.get(value.strip().lower())


@dataclass(frozen=True)
class TransportRequest:
    id: str
    patient: str
    origin: str
    destination: str
    requested_at: str
    status: RequestStatus
    priority: Priority = Priority.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient": self.patient,
            "origin": self.origin,
            "destination": self.destination,
            "when": self.requested_at,
            "status": self.status.value,
            "priority": self.priority.value,
        }


def parse_transport_request(raw: Mapping[str, Any]) -> Optional[TransportRequest]:
    request_id = raw.get("id")
    status = parse_request_status(_first(raw, "status", "estado"))
    if request_id is None or status is None:
        return None
    return TransportRequest(
        id=str(request_id),
        patient=str(_first(raw, "patient", "paciente") or ""),
        origin=str(_first(raw, "origin", "origen") or ""),
        destination=str(_first(raw, "destination", "destino") or ""),
        requested_at=str(_first(raw, "when", "requestedAt", "fecha") or ""),
        status=status,
        priority=parse_priority(_first(raw, "priority", "prioridad")) or Priority.MEDIUM,
    )


def parse_transport_requests(payload: Any) -> List[TransportRequest]:
    if not isinstance(payload, list):
        return []
    requests: List[TransportRequest] = []
    for raw in payload:
        if not isinstance(raw, Mapping):
            continue
        parsed = parse_transport_request(raw)
        if parsed is None:
            print(f"[dispatch_models] skipping malformed request: {raw!r}")
            continue
        requests.append(parsed)
    return requests


@dataclass
class NewTransportRequest:
    """Intake form for a transport request; the backend defaults status to pending."""
    patient: str
    origin: str
    destination: str
    when: str
    priority: str = Priority.MEDIUM.value

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "NewTransportRequest":
        return cls(
            patient=str(_first(payload, "patient", "paciente") or ""),
            origin=str(_first(payload, "origin", "origen") or ""),
            destination=str(_first(payload, "destination", "destino") or ""),
            when=str(_first(payload, "when", "fecha") or ""),
            priority=str(_first(payload, "priority", "prioridad") or Priority.MEDIUM.value),
        )

    def validate(self) -> None:
        errors: Dict[str, str] = {}
        for name in ("patient", "origin", "destination"):
            if not getattr(self, name).strip():
                errors[name] = "required"
        if not self.when.strip():
            errors["when"] = "required"
        else:
            try:
                parse_iso8601_utc(self.when)
            except ValueError:
                errors["when"] = "must be an ISO-8601 date/time"
        if parse_priority(self.priority) is None:
            errors["priority"] = "must be one of low, medium, high"
        if errors:
            raise InvalidRequestError(errors)

    def to_payload(self) -> Dict[str, Any]:
        priority = parse_priority(self.priority) or Priority.MEDIUM
        return {
            "patient": self.patient.strip(),
            "origin": self.origin.strip(),
            "destination": self.destination.strip(),
            "when": self.when.strip(),
            "priority": priority.value,
        }


__all__ = [
    "CrewMember",
    "CrewRole",
    "NewTransportRequest",
    "Priority",
    "RequestStatus",
    "Status",
    "StatusCatalog",
    "StatusCategory",
    "TransportRequest",
    "Unit",
    "coerce_float",
    "isoformat_utc",
    "parse_crew_member",
    "parse_iso8601_utc",
    "parse_priority",
    "parse_request_status",
    "parse_transport_request",
    "parse_transport_requests",
    "parse_unit",
    "parse_units",
]
