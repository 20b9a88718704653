"""
Entity kind loader: reads config/entity_kinds.yaml once and caches it.

Backends and the engine look kinds up by name; nothing else hard-codes
Configuration Manager class or cmdlet names.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, Field, ValidationError

from config import settings
from shared.tools.errors import KindConfigurationError
from shared.utils.config import load_yaml


class EntityKind(BaseModel):
    name: str
    description: str = ""
    cmdlet: str
    cmdlet_args: List[str] = Field(default_factory=list)
    cim_class: str
    cim_filter: str | None = None
    id_field: str
    name_field: str
    children: str | None = None
    parent_key: str | None = None
    child_field: str | None = None
    cmdlet_parent_arg: str | None = None
    collection_join: bool = False
    content_lookup: str | None = None
    content_key_field: str | None = None
    content_cmdlet: str | None = None


def parse_entity_kinds(data: dict) -> Dict[str, EntityKind]:
    raw_kinds = data.get("kinds", {})
    if not isinstance(raw_kinds, dict) or not raw_kinds:
        raise KindConfigurationError("entity kind file declares no kinds")

    kinds: Dict[str, EntityKind] = {}
    for name, body in raw_kinds.items():
        if not isinstance(body, dict):
            raise KindConfigurationError(f"entity kind {name!r} must be a mapping")
        try:
            kinds[name] = EntityKind(name=name, **body)
        except ValidationError as exc:
            raise KindConfigurationError(f"entity kind {name!r} is invalid: {exc}") from exc

    for kind in kinds.values():
        if kind.children and kind.children not in kinds:
            raise KindConfigurationError(
                f"entity kind {kind.name!r} references unknown child kind {kind.children!r}"
            )
    return kinds


@lru_cache(maxsize=4)
def load_entity_kinds(path: str | None = None) -> Dict[str, EntityKind]:
    """Return the declared entity kinds (cached per file)."""
    source = Path(path) if path else settings.entity_kinds_file()
    return parse_entity_kinds(load_yaml(source))


def get_kind(name: str, path: str | None = None) -> EntityKind:
    kinds = load_entity_kinds(path)
    try:
        return kinds[name]
    except KeyError:
        known = ", ".join(sorted(kinds))
        raise KindConfigurationError(f"unknown entity kind {name!r} (known: {known})") from None
