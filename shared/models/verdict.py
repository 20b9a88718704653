from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from config.constants import NOTE_ACCESS_DENIED, NOTE_CODES


class ValidationVerdict(BaseModel):
    """Outcome of checking one fact or identity against an external oracle."""

    model_config = ConfigDict(frozen=True)

    exists: bool
    healthy: bool | None = Field(default=None, description="Non-empty / enabled; None when unknown")
    note: str | None = Field(default=None, description="Note code explaining the verdict")
    detail: str | None = Field(default=None, description="Free text from the oracle, e.g. an OS error")

    @model_validator(mode="after")
    def _check_note(self) -> "ValidationVerdict":
        if self.note is not None and self.note not in NOTE_CODES:
            raise ValueError(f"unknown verdict note code: {self.note}")
        if self.exists and self.note == NOTE_ACCESS_DENIED:
            raise ValueError("an existing target cannot carry an access-denied note")
        return self

    def describe(self) -> str:
        if self.note is None:
            return ""
        if self.detail:
            return f"{self.note}: {self.detail}"
        return self.note
