"""Plugin manifest model - describes a plugin's metadata, settings and hooks."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from plugin_runtime.plugins.errors import ManifestInvalid

PLUGIN_ID_PATTERN = re.compile(r"^[a-z0-9-_]+$", re.IGNORECASE)
VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+")

SETTING_TYPES = ("boolean", "string", "number", "select", "color", "array", "object")

LIFECYCLE_SLOTS = ("init", "start", "stop", "destroy")


class SettingDefinition(BaseModel):
    """A single entry of a plugin's settings schema."""

    model_config = ConfigDict(extra="allow", frozen=True)

    type: str = Field(default="string", description="boolean | string | number | select | color | array | object")
    default: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    enum: Optional[List[Any]] = None
    validator: Optional[Callable[[Any], bool]] = Field(default=None, exclude=True)
    section: Optional[str] = Field(default=None, description="Display grouping only")
    title: Optional[str] = None
    description: Optional[str] = None

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in SETTING_TYPES:
            raise ValueError(f"unknown setting type '{value}'")
        return value


class PluginManifest(BaseModel):
    """Static descriptor of a plugin. Immutable once built."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Unique plugin identifier (kebab-case)")
    name: str = Field(..., min_length=1, description="Human-readable plugin name")
    version: str = Field(..., description="Semantic version, e.g. 1.0.0")
    description: str = Field(..., min_length=1, description="Plugin description")
    author: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    optional_dependencies: List[str] = Field(default_factory=list, alias="optionalDependencies")
    conflicts: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    settings: Dict[str, SettingDefinition] = Field(default_factory=dict)
    hooks: Dict[str, Callable[..., Any]] = Field(default_factory=dict, exclude=True)

    @field_validator("id")
    @classmethod
    def _valid_id(cls, value: str) -> str:
        if not PLUGIN_ID_PATTERN.match(value):
            raise ValueError(f"invalid plugin ID format: {value}")
        return value

    @field_validator("version")
    @classmethod
    def _valid_version(cls, value: str) -> str:
        if not VERSION_PATTERN.match(value):
            raise ValueError(f"invalid version format: {value}")
        return value

    @property
    def all_dependencies(self) -> List[str]:
        """Required followed by optional dependencies."""
        return [*self.dependencies, *self.optional_dependencies]

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=False)


@dataclass(frozen=True)
class PluginModule:
    """A loaded plugin: its manifest plus the lifecycle slots it fills.

    Slots are resolved once, when the export is parsed, so call sites only
    check for ``None``.
    """

    manifest: PluginManifest
    init: Optional[Callable[..., Any]] = None
    start: Optional[Callable[..., Any]] = None
    stop: Optional[Callable[..., Any]] = None
    destroy: Optional[Callable[..., Any]] = None

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def capabilities(self) -> frozenset:
        return frozenset(slot for slot in LIFECYCLE_SLOTS if getattr(self, slot) is not None)

    @classmethod
    def from_export(cls, export: Any) -> "PluginModule":
        """Build a module descriptor from a plugin's exported mapping.

        Args:
            export: Mapping of manifest fields plus optional ``init``/``start``/
                    ``stop``/``destroy`` callables

        Returns:
            PluginModule

        Raises:
            ManifestInvalid: if the export is not a mapping or fails validation
        """
        if isinstance(export, PluginModule):
            return export
        if not isinstance(export, Mapping):
            raise ManifestInvalid("plugin module must export a mapping")

        fields = dict(export)
        plugin_id = fields.get("id") if isinstance(fields.get("id"), str) else None
        slots = {}
        for slot in LIFECYCLE_SLOTS:
            fn = fields.pop(slot, None)
            if fn is not None and not callable(fn):
                raise ManifestInvalid(f"'{slot}' must be callable", plugin_id)
            slots[slot] = fn

        return cls(manifest=parse_manifest(fields), **slots)


def parse_manifest(data: Mapping[str, Any]) -> PluginManifest:
    """Validate manifest fields, converting pydantic errors to ManifestInvalid."""
    plugin_id = data.get("id") if isinstance(data.get("id"), str) else None
    try:
        return PluginManifest.model_validate(dict(data))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'manifest'}: {err['msg']}"
            for err in e.errors()
        )
        raise ManifestInvalid(problems, plugin_id) from e
