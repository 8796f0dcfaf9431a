"""
Form Schema - Declarative description of the counseling form

Responsibilities:
- Load the form schema JSON (sections, leaf fields, repeating groups,
  aggregate bindings)
- Expand column templates ("economic_growth.profit_{col}") into concrete paths
- Answer structural questions: declared defaults, section ownership,
  which groups live in which section

Design principles:
- Fail fast: validate cross-references on load
- Read-only after construction
- No form state (values live in FieldStore / RepeatingGroupManager)
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from form_engine.config import DEFAULT_SCHEMA_PATH
from form_engine.errors import SchemaError
from form_engine.utils.helpers import section_of

logger = logging.getLogger(__name__)

FIELD_TYPES = {'string', 'number', 'boolean'}


@dataclass(frozen=True)
class FieldSpec:
    path: str
    type: str
    default: Any


@dataclass(frozen=True)
class SectionSpec:
    """
    Static definition of one form section.

    Attributes:
        key: Section key, also the document sub-object name
        order: Position in the step sequence (ascending)
        stage_key: Key used by permission tables ('family_details' -> 'family')
        title: Display title
        required_paths: Paths that must hold valid values before commit
    """
    key: str
    order: int
    stage_key: str
    title: str
    required_paths: Tuple[str, ...]

    @property
    def id_field(self) -> str:
        """Top-level document key carrying the server-assigned section id"""
        return f"{self.key}_id"


@dataclass(frozen=True)
class GroupSpec:
    """
    Static definition of a repeating group.

    naming_field/naming_prefix are set for sequentially named groups
    (QH1, QH2, ...).
    """
    name: str
    section: str
    document_key: str
    fixed_row_count: int
    fields: Tuple[Tuple[str, Any], ...]
    naming_field: Optional[str] = None
    naming_prefix: Optional[str] = None

    def blank_row(self) -> Dict[str, Any]:
        return dict(self.fields)


@dataclass(frozen=True)
class AggregateBinding:
    """Footer total of a group column mirrored into a FieldStore path"""
    group: str
    field: str
    output: str


def expand_columns(template: str, columns: Optional[List[str]]) -> List[str]:
    """
    Expand a "{col}" template over a column list.

    Examples:
        >>> expand_columns('economic_growth.profit_{col}', ['year1', 'year2'])
        ['economic_growth.profit_year1', 'economic_growth.profit_year2']
        >>> expand_columns('personal_details.name', None)
        ['personal_details.name']
    """
    if not columns:
        return [template]
    return [template.replace('{col}', col) for col in columns]


class FormSchema:
    """Loaded, validated counseling form schema"""

    def __init__(self, schema_path: str = DEFAULT_SCHEMA_PATH):
        """
        Load schema from JSON.

        Args:
            schema_path: Path to counseling_form_schema.json

        Raises:
            FileNotFoundError: If schema file doesn't exist
            SchemaError: If schema is malformed or has dangling references
        """
        self.schema_path = Path(schema_path)

        if not self.schema_path.exists():
            raise FileNotFoundError(f"Form schema not found: {schema_path}")

        with open(self.schema_path, 'r') as f:
            raw = json.load(f)

        self.version: int = int(raw.get('version', 1))
        self.columns: Dict[str, List[str]] = raw.get('columns', {})
        self.fields: Dict[str, FieldSpec] = self._load_fields(raw.get('fields', []))
        self.sections: List[SectionSpec] = self._load_sections(raw.get('sections', []))
        self.groups: Dict[str, GroupSpec] = self._load_groups(raw.get('groups', []))
        self.aggregates: List[AggregateBinding] = [
            AggregateBinding(group=a['group'], field=a['field'], output=a['output'])
            for a in raw.get('aggregates', [])
        ]

        self._validate()

        logger.info(
            f"Form schema v{self.version} loaded: {len(self.sections)} sections, "
            f"{len(self.fields)} fields, {len(self.groups)} groups"
        )

    # ========================
    # Loading
    # ========================

    def _load_fields(self, entries: List[Dict[str, Any]]) -> Dict[str, FieldSpec]:
        fields: Dict[str, FieldSpec] = {}
        for entry in entries:
            field_type = entry.get('type')
            if field_type not in FIELD_TYPES:
                raise SchemaError(f"Unknown field type: {field_type!r}")

            columns = self._columns_for(entry.get('columns'))
            for template in entry.get('paths', []):
                for path in expand_columns(template, columns):
                    if path in fields:
                        raise SchemaError(f"Duplicate field path: {path}")
                    fields[path] = FieldSpec(path=path, type=field_type, default=entry.get('default'))
        return fields

    def _load_sections(self, entries: List[Dict[str, Any]]) -> List[SectionSpec]:
        sections = [
            SectionSpec(
                key=entry['key'],
                order=int(entry['order']),
                stage_key=entry.get('stage_key', entry['key']),
                title=entry.get('title', entry['key']),
                required_paths=tuple(entry.get('required_paths', [])),
            )
            for entry in entries
        ]
        if not sections:
            raise SchemaError("Form schema declares no sections")
        return sorted(sections, key=lambda s: s.order)

    def _load_groups(self, entries: List[Dict[str, Any]]) -> Dict[str, GroupSpec]:
        groups = {}
        for entry in entries:
            naming = entry.get('naming') or {}
            groups[entry['name']] = GroupSpec(
                name=entry['name'],
                section=entry['section'],
                document_key=entry.get('document_key', entry['name']),
                fixed_row_count=int(entry.get('fixed_row_count', 0)),
                fields=tuple(entry.get('fields', {}).items()),
                naming_field=naming.get('field'),
                naming_prefix=naming.get('prefix'),
            )
        return groups

    def _columns_for(self, name: Optional[str]) -> Optional[List[str]]:
        if name is None:
            return None
        if name not in self.columns:
            raise SchemaError(f"Unknown column set: {name}")
        return self.columns[name]

    def _validate(self) -> None:
        """Check cross-references between sections, fields and groups"""
        section_keys = {s.key for s in self.sections}
        if len(section_keys) != len(self.sections):
            raise SchemaError("Duplicate section keys in form schema")

        for path in self.fields:
            if section_of(path) not in section_keys:
                raise SchemaError(f"Field {path} does not belong to a declared section")

        for section in self.sections:
            for path in section.required_paths:
                if path not in self.fields:
                    raise SchemaError(f"Section {section.key} requires undeclared field {path}")

        for group in self.groups.values():
            if group.section not in section_keys:
                raise SchemaError(f"Group {group.name} references unknown section {group.section}")
            if group.naming_field and group.naming_field not in dict(group.fields):
                raise SchemaError(f"Group {group.name} names rows by undeclared field {group.naming_field}")

        for binding in self.aggregates:
            if binding.group not in self.groups:
                raise SchemaError(f"Aggregate references unknown group {binding.group}")
            if binding.output not in self.fields:
                raise SchemaError(f"Aggregate output {binding.output} is not a declared field")

    # ========================
    # Queries
    # ========================

    def section_keys(self) -> List[str]:
        return [s.key for s in self.sections]
