"""staffing_etl.record_types

YAML-based record-type configuration for the ingestion pipeline.

Responsibilities:
  - Load and validate YAML record-type files from config/record_types/*.yml
  - Normalize alias headers so lookups match normalize_header_key output
  - Hash YAML content for traceability in run reports
  - Expose an immutable registry keyed by record-type name

Usage:
    from pathlib import Path
    from staffing_etl.record_types import load_registry

    registry = load_registry(Path("config/record_types"))
    applicant = registry["applicant"]
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import yaml

from staffing_etl.errors import RecordTypeConfigError
from staffing_etl.normalize import COERCERS, normalize_header_key

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_RECORD_TYPES = frozenset({
    "applicant",
    "associate",
    "early_leave",
    "dnr_entry",
    "badge",
    "labor_report_row",
})

REQUIRED_YAML_KEYS = frozenset({
    "record_type",
    "collection",
    "version",
    "fields",
    "identity_fields",
})

VALID_FIELD_TYPES = frozenset(COERCERS)
VALID_DOCUMENT_KEYS = ("generated", "identity")
VALID_NO_IDENTITY_POLICIES = ("skip", "reject", "allow")

DEFAULT_RECORD_TYPES_DIR = Path(__file__).parent.parent.parent / "config" / "record_types"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str = "string"
    required: bool = False


@dataclass(frozen=True)
class FanOut:
    """Secondary collection written alongside each primary document."""

    collection: str
    fields: Mapping[str, str]


@dataclass(frozen=True)
class RecordTypeConfig:
    """Parsed, validated record-type configuration loaded from a YAML file."""

    name: str
    collection: str
    version: str
    yaml_hash: str
    fields: tuple[FieldSpec, ...]
    aliases: Mapping[str, str]
    identity_fields: tuple[str, ...]
    enums: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    document_key: str = "generated"
    merge: bool = False
    no_identity_policy: str = "skip"
    name_field: str | None = None
    first_name_field: str | None = None
    last_name_field: str | None = None
    defaults: Mapping[str, Any] = field(default_factory=dict)
    duplicate_collections: tuple[str, ...] = ()
    screen_denylist: bool = False
    fan_out: tuple[FanOut, ...] = ()

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields if f.required)

    def field_type(self, name: str) -> str:
        for f in self.fields:
            if f.name == name:
                return f.type
        raise KeyError(name)


class RecordTypeRegistry(Mapping[str, RecordTypeConfig]):
    """Read-only mapping of record-type name → RecordTypeConfig."""

    def __init__(self, configs: dict[str, RecordTypeConfig]) -> None:
        self._configs = MappingProxyType(dict(configs))

    def __getitem__(self, name: str) -> RecordTypeConfig:
        try:
            return self._configs[name]
        except KeyError:
            raise KeyError(
                f"Unknown record type '{name}'. Known: {sorted(self._configs)}"
            ) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._configs)

    def __len__(self) -> int:
        return len(self._configs)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_record_type(yaml_path: Path) -> RecordTypeConfig:
    """Load, validate, and return a RecordTypeConfig from a YAML file.

    Raises:
        RecordTypeConfigError: If any required key is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_record_type(data)
    return build_record_type(data, hashlib.sha256(raw.encode("utf-8")).hexdigest())


def build_record_type(data: dict[str, Any], yaml_hash: str = "") -> RecordTypeConfig:
    fields = tuple(
        FieldSpec(
            name=name,
            type=str((spec or {}).get("type", "string")),
            required=bool((spec or {}).get("required", False)),
        )
        for name, spec in data["fields"].items()
    )

    # Canonical names alias themselves so normalizing a canonical row is a no-op.
    aliases: dict[str, str] = {normalize_header_key(f.name): f.name for f in fields}
    for header, target in (data.get("aliases") or {}).items():
        aliases[normalize_header_key(header)] = target

    names = data.get("name_fields") or {}
    fan_out = tuple(
        FanOut(collection=str(item["collection"]), fields=MappingProxyType(dict(item["fields"])))
        for item in (data.get("fan_out") or [])
    )
    return RecordTypeConfig(
        name=data["record_type"],
        collection=str(data["collection"]),
        version=str(data["version"]),
        yaml_hash=yaml_hash,
        fields=fields,
        aliases=MappingProxyType(aliases),
        identity_fields=tuple(data["identity_fields"]),
        enums=MappingProxyType({
            k: tuple(str(v) for v in values) for k, values in (data.get("enums") or {}).items()
        }),
        document_key=str(data.get("document_key", "generated")),
        merge=bool(data.get("merge", False)),
        no_identity_policy=str(data.get("no_identity_policy", "skip")),
        name_field=names.get("full"),
        first_name_field=names.get("first"),
        last_name_field=names.get("last"),
        defaults=MappingProxyType(dict(data.get("defaults") or {})),
        duplicate_collections=tuple(data.get("duplicate_collections") or ()),
        screen_denylist=bool(data.get("screen_denylist", False)),
        fan_out=fan_out,
    )


def validate_record_type(data: dict[str, Any]) -> None:
    """Raise RecordTypeConfigError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - record_type is one of the known record types
      - every field type is a known coercer
      - identity, enum, default and alias targets name declared fields
      - document_key / no_identity_policy values
    """
    if not isinstance(data, dict):
        raise RecordTypeConfigError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise RecordTypeConfigError(f"Missing required YAML keys: {sorted(missing_keys)}")

    record_type = data.get("record_type")
    if record_type not in VALID_RECORD_TYPES:
        raise RecordTypeConfigError(
            f"Invalid record_type '{record_type}'. Must be one of {sorted(VALID_RECORD_TYPES)}."
        )

    fields = data.get("fields")
    if not isinstance(fields, dict) or not fields:
        raise RecordTypeConfigError("'fields' must be a non-empty mapping.")
    for name, spec in fields.items():
        ftype = (spec or {}).get("type", "string")
        if ftype not in VALID_FIELD_TYPES:
            raise RecordTypeConfigError(
                f"Field '{name}' has unknown type '{ftype}'. Must be one of {sorted(VALID_FIELD_TYPES)}."
            )

    identity_fields = data.get("identity_fields")
    if not isinstance(identity_fields, list) or not identity_fields:
        raise RecordTypeConfigError("'identity_fields' must be a non-empty list.")
    _check_declared(identity_fields, fields, "identity_fields")
    _check_declared((data.get("enums") or {}).keys(), fields, "enums")
    _check_declared((data.get("defaults") or {}).keys(), fields, "defaults")
    _check_declared((data.get("aliases") or {}).values(), fields, "aliases")
    _check_declared(
        [v for v in (data.get("name_fields") or {}).values() if v], fields, "name_fields"
    )

    document_key = data.get("document_key", "generated")
    if document_key not in VALID_DOCUMENT_KEYS:
        raise RecordTypeConfigError(
            f"Invalid document_key '{document_key}'. Must be one of {list(VALID_DOCUMENT_KEYS)}."
        )
    policy = data.get("no_identity_policy", "skip")
    if policy not in VALID_NO_IDENTITY_POLICIES:
        raise RecordTypeConfigError(
            f"Invalid no_identity_policy '{policy}'. Must be one of {list(VALID_NO_IDENTITY_POLICIES)}."
        )
    if document_key == "identity" and policy == "allow":
        raise RecordTypeConfigError(
            "document_key 'identity' cannot be combined with no_identity_policy 'allow'."
        )

    for item in data.get("fan_out") or []:
        if not isinstance(item, dict) or "collection" not in item or not item.get("fields"):
            raise RecordTypeConfigError("Each fan_out entry needs 'collection' and 'fields'.")
        _check_declared(item["fields"].values(), fields, "fan_out")


def _check_declared(names: Any, fields: dict[str, Any], where: str) -> None:
    unknown = sorted(set(names) - set(fields))
    if unknown:
        raise RecordTypeConfigError(f"'{where}' references undeclared fields: {unknown}")


def load_registry(config_dir: Path | None = None) -> RecordTypeRegistry:
    """Load every *.yml file in config_dir into a RecordTypeRegistry."""
    config_dir = config_dir or DEFAULT_RECORD_TYPES_DIR
    configs: dict[str, RecordTypeConfig] = {}
    for path in sorted(config_dir.glob("*.yml")):
        cfg = load_record_type(path)
        if cfg.name in configs:
            raise RecordTypeConfigError(f"Duplicate record_type '{cfg.name}' in {path}")
        configs[cfg.name] = cfg
    if not configs:
        raise RecordTypeConfigError(f"No record-type files found in {config_dir}")
    return RecordTypeRegistry(configs)
