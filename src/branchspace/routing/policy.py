"""Host-command allow-list loaded from YAML."""

from __future__ import annotations

from importlib import resources
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as ModelValidationError

from ..errors import ValidationError


class HostCommandPolicy(BaseModel):
    """First tokens that keep a command on the host."""

    escape_prefix: str = Field(default="HOST:", description="Case-insensitive force-host prefix.")
    commands: list[str] = Field(default_factory=list, description="Host-only command names.")

    @field_validator("commands", mode="before")
    @classmethod
    def _ensure_list(cls, value):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise TypeError("commands must be a sequence of strings")

    @field_validator("escape_prefix")
    @classmethod
    def _require_prefix(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("escape_prefix must not be empty")
        return normalized

    def extended(self, commands: Iterable[str]) -> "HostCommandPolicy":
        merged = list(dict.fromkeys([*self.commands, *commands]))
        return self.model_copy(update={"commands": merged})


def _parse(text: str, origin: str) -> HostCommandPolicy:
    try:
        document = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Failed to parse YAML in {origin}: {exc}") from exc
    try:
        return HostCommandPolicy.model_validate(document)
    except ModelValidationError as exc:
        raise ValidationError(f"Host command policy error in {origin}: {exc}") from exc


def load_policy(extra_path: Path | None = None) -> HostCommandPolicy:
    """Load the bundled allow-list, extended by ``extra_path`` when it exists.

    Entries in the extra file are added to the bundled ones; an
    ``escape_prefix`` there replaces the bundled prefix.
    """

    bundled = resources.files(__package__).joinpath("host_commands.yaml").read_text(encoding="utf-8")
    policy = _parse(bundled, "bundled host_commands.yaml")
    if extra_path is None or not Path(extra_path).is_file():
        return policy

    extra = _parse(Path(extra_path).read_text(encoding="utf-8"), str(extra_path))
    merged = policy.extended(extra.commands)
    if "escape_prefix" in extra.model_fields_set:
        merged = merged.model_copy(update={"escape_prefix": extra.escape_prefix})
    return merged


__all__ = ["HostCommandPolicy", "load_policy"]
