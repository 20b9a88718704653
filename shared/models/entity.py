from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class ManagementEntity(BaseModel):
    """A read-only record enumerated from the systems-management database."""

    model_config = ConfigDict(frozen=True)

    entity_id: str = Field(..., description="Stable identifier, e.g. CI_UniqueID or ResourceId")
    name: str = Field(..., description="Display name")
    kind: str = Field(..., description="Entity kind key from entity_kinds.yaml")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Backend-defined nested fields")

    def get(self, field: str, default: Any = None) -> Any:
        """Case-insensitive property lookup; CIM and cmdlet payloads disagree on casing."""
        if field in self.properties:
            return self.properties[field]
        lowered = field.lower()
        for key, value in self.properties.items():
            if key.lower() == lowered:
                return value
        return default
