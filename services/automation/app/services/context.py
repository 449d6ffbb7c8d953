"""The bag of records an automation event carries."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from uuid import UUID


def parse_uuid(value: Any) -> Optional[UUID]:
    if value is None or value == "":
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


@dataclass
class AutomationContext:
    """Whatever records are relevant to one trigger.

    Records are plain dicts with snake_case keys (``first_name``,
    ``service_name``, ...), as produced by the models' ``to_context()`` or
    received from other services over the event stream. camelCase keys sent
    by producers (``firstName``, ``dateTime``) are copied to their snake_case
    names; an existing snake_case key wins.
    """

    tenant_id: UUID
    contact: Optional[Dict[str, Any]] = None
    booking: Optional[Dict[str, Any]] = None
    conversation: Optional[Dict[str, Any]] = None
    form_submission: Optional[Dict[str, Any]] = None
    inventory: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _RECORDS = ("contact", "booking", "conversation", "form_submission", "inventory")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AutomationContext":
        """Build a context from an event payload.

        ``workspace_id`` is accepted as an alias of ``tenant_id``.

        Raises:
            ValueError: if the payload carries no valid tenant id
        """
        if isinstance(payload, AutomationContext):
            return payload
        raw_tenant = payload.get("tenant_id", payload.get("workspace_id"))
        tenant_id = parse_uuid(raw_tenant)
        if tenant_id is None:
            raise ValueError(f"Invalid or missing tenant_id: {raw_tenant!r}")

        records = {name: _as_record(payload.get(name), name) for name in cls._RECORDS}
        extra = {
            key: value
            for key, value in payload.items()
            if key not in cls._RECORDS and key not in ("tenant_id", "workspace_id")
        }
        return cls(tenant_id=tenant_id, extra=extra, **records)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload["tenant_id"] = str(self.tenant_id)
        for name in self._RECORDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload

    def record_id(self, name: str) -> Optional[UUID]:
        record = getattr(self, name, None)
        if not record:
            return None
        return parse_uuid(record.get("id"))

    def references(self) -> Dict[str, str]:
        """Ids of every record present, for alerts and logs."""
        refs = {}
        for name in self._RECORDS:
            record_id = self.record_id(name)
            if record_id is not None:
                refs[f"{name}_id"] = str(record_id)
        return refs


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

# producer field names that differ from ours after snake-casing
_FIELD_ALIASES = {
    "booking": {"date_time": "start_time", "service": "service_name"},
}


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalize_record(record: Mapping[str, Any], name: str = "") -> Dict[str, Any]:
    normalized = dict(record)
    aliases = _FIELD_ALIASES.get(name, {})
    for key, value in record.items():
        if not isinstance(key, str):
            continue
        snake = _snake_case(key)
        normalized.setdefault(aliases.get(snake, snake), value)
    return normalized


def _as_record(value: Any, name: str = "") -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return normalize_record(value, name)
    to_context = getattr(value, "to_context", None)
    if callable(to_context):
        return to_context()
    raise TypeError(f"Unsupported context record: {type(value)!r}")
