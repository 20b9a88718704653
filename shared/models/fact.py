from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ExtractedFact(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str = Field(..., description="Raw string found in the entity graph")
    entity_id: str
    sub_entity: str | None = Field(default=None, description="e.g. the deployment type it came from")
    recognized: bool = Field(..., description="Whether the value matched the expected strict syntax")
    source: str = Field(default="", description="Dotted property path where the value was found")
