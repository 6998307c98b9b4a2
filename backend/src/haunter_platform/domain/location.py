"""Meeting location value type.

Clients send a meeting point either as a bare string ("Shell Station") or as
serialized JSON whose name lives under one of several keys. It is parsed once
here, at the boundary, into a ``Location`` and stored in that shape.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from haunter_platform.domain.enums import LocationKind

# Keys clients have used for the display name, in lookup order
_NAME_KEYS = ("name", "location", "address", "generalArea")


@dataclass(frozen=True)
class Location:
    """A structured meeting point."""

    kind: LocationKind
    name: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "name": self.name, "details": dict(self.details)}

    @classmethod
    def from_dict(cls, data: dict) -> "Location":
        return cls(
            kind=LocationKind(data.get("kind", LocationKind.LANDMARK.value)),
            name=data["name"],
            details=dict(data.get("details") or {}),
        )


def parse_location(raw: Any) -> Optional[Location]:
    """Normalize a client-supplied location into a ``Location``.

    Accepts ``None``, a ``Location``, a dict, a JSON string or a bare string.
    Returns ``None`` for empty input. Raises ``ValueError`` when no display
    name can be found.
    """
    if raw is None:
        return None
    if isinstance(raw, Location):
        return raw

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            decoded = json.loads(text)
        except ValueError:
            return Location(kind=LocationKind.LANDMARK, name=text)
        if isinstance(decoded, str):
            return parse_location(decoded)
        raw = decoded

    if not isinstance(raw, dict):
        raise ValueError(f"Unsupported location value: {raw!r}")

    # {"type": "PROPERTY", "location": {...}} nests the real payload one level down
    inner = raw.get("location")
    if isinstance(inner, dict):
        merged = {**inner, "type": raw.get("type", inner.get("type"))}
        return parse_location(merged)

    kind_value = str(raw.get("kind") or raw.get("type") or LocationKind.LANDMARK.value).upper()
    try:
        kind = LocationKind(kind_value)
    except ValueError:
        kind = LocationKind.LANDMARK

    name = None
    for key in _NAME_KEYS:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            name = value.strip()
            break
    if name is None:
        raise ValueError("Location has no name")

    details = raw.get("details")
    if not isinstance(details, dict):
        details = {
            k: v for k, v in raw.items()
            if k not in ("kind", "type", "details") and k not in _NAME_KEYS
        }
    return Location(kind=kind, name=name, details=details)
