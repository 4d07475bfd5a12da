"""
Target model.

A Target is one phone number the core may attempt to reach. Two records that
share a number collapse to one Target, whatever their lead ids.
"""

from dataclasses import asdict, dataclass, replace
from typing import Any

from dialgate.shared.phone import normalize_phone


@dataclass(frozen=True)
class Target:
    """A dialable target keyed by normalized phone number."""

    phone_number: str
    lead_id: str = ""
    first_name: str = ""
    last_name: str = ""
    state: str = ""
    list_id: str = ""
    timezone: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "phone_number", normalize_phone(self.phone_number))

    @property
    def key(self) -> str:
        return self.phone_number

    def merge_metadata(self, other: "Target") -> "Target":
        """Return a copy carrying ``other``'s non-empty metadata."""
        changes = {
            name: value
            for name, value in asdict(other).items()
            if name != "phone_number" and value
        }
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Target":
        return cls(
            phone_number=data["phone_number"],
            lead_id=data.get("lead_id") or "",
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            state=data.get("state") or "",
            list_id=data.get("list_id") or "",
            timezone=data.get("timezone"),
        )
