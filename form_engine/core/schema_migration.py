"""
Schema Migration - Versioned load-time adapter for form documents

Document versions:
- 0: legacy flat section columns ('income_business_monthly',
     'wellbeing_food', 'background_education', ...) as stored by the
     original SQL tables
- 1: nested section objects; cash surplus ignores other income
- 2: nested section objects; cash surplus includes other income (current)

Migration is applied once, at load. Structural upgrades (0 -> 1) rewrite
the document; the 1 -> 2 step is NOT applied, because v2 changes the cash
surplus formula and a saved v1 document must keep the figures it was
saved with. The returned schema_version selects the derivation rule set.

Ambiguous legacy data never fails the load: a SchemaMigrationAmbiguous
warning is logged and returned, and a best-effort default is applied.
"""

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from form_engine.config import CURRENT_SCHEMA_VERSION
from form_engine.contracts import SchemaMigrationAmbiguous
from form_engine.utils.helpers import get_nested, iter_leaves, set_nested

logger = logging.getLogger(__name__)

SECTION_KEYS = (
    'personal_details', 'family_details', 'assessment', 'financial_assistance',
    'economic_growth', 'declaration', 'attachments',
)

# Legacy flat column prefix -> nested parent, per section
LEGACY_PREFIXES: Dict[str, List[Tuple[str, str]]] = {
    'family_details': [
        ('income_', 'income_expense.income.'),
        ('expense_', 'income_expense.expenses.'),
        ('wellbeing_', 'wellbeing.'),
        ('assets_', 'assets_liabilities.assets.'),
        ('liabilities_', 'assets_liabilities.liabilities.'),
    ],
    'assessment': [
        ('background_', 'background.'),
        ('proposed_', 'proposed_business.'),
        ('counselor_', 'counselor_assessment.'),
    ],
}

# Legacy columns that moved without a shared prefix
LEGACY_RENAMES: Dict[str, Dict[str, str]] = {
    'family_details': {
        'surplus_monthly': 'income_expense.surplus_monthly',
        'surplus_yearly': 'income_expense.surplus_yearly',
        'deficit_monthly': 'income_expense.deficit_monthly',
        'deficit_yearly': 'income_expense.deficit_yearly',
        'scholarship_monthly': 'income_expense.scholarship_monthly',
        'scholarship_yearly': 'income_expense.scholarship_yearly',
        'borrowing_monthly': 'income_expense.borrowing_monthly',
        'borrowing_yearly': 'income_expense.borrowing_yearly',
    },
    'assessment': {
        'trade_mark': 'proposed_business.trade_mark',
        'online_presence': 'proposed_business.online_presence',
        'digital_marketing': 'proposed_business.digital_marketing',
        'store_location': 'proposed_business.store_location',
    },
}

ROW_DOCUMENT_KEYS = ('family_members', 'qh_fields', 'timeline', 'action_plan', 'support_mentors')

# Legacy row keys -> current row keys, per document_key
LEGACY_ROW_KEYS: Dict[str, Dict[str, str]] = {
    'qh_fields': {'qh_name': 'name'},
    'timeline': {'timeline': 'purpose'},
}

# Parents under which a value must carry a _monthly/_yearly suffix
PERIODIC_PARENTS = ('income_expense.income.', 'income_expense.expenses.')

_PERIOD_SUFFIX = re.compile(r'_(monthly|yearly)$')


@dataclass
class MigrationResult:
    """
    Attributes:
        document: Canonical document (deep copy, input untouched)
        schema_version: Version after migration (selects the rule set)
        source_version: Version detected on the input
        warnings: Ambiguities resolved with defaults
    """
    document: Dict[str, Any]
    schema_version: int
    source_version: int
    warnings: List[SchemaMigrationAmbiguous] = field(default_factory=list)


# =========================================================================
# Detection
# =========================================================================

def _is_legacy_flat(document: Dict[str, Any]) -> bool:
    for section_key, prefixes in LEGACY_PREFIXES.items():
        section = document.get(section_key)
        if not isinstance(section, dict):
            continue
        for key, value in section.items():
            if isinstance(value, dict):
                continue
            if any(key.startswith(prefix) for prefix, _ in prefixes):
                return True
            if key in LEGACY_RENAMES.get(section_key, {}):
                return True
    return False


def detect_version(document: Dict[str, Any],
                   warnings: Optional[List[SchemaMigrationAmbiguous]] = None) -> int:
    """
    Determine a document's schema version.

    A numeric schema_version wins. Otherwise:
    - flat legacy columns -> 0
    - nested, with other-income figures in economic growth -> 2
    - nested, without them -> 1 (documents written before versioning)

    A schema_version that is not a number is reported in warnings (when
    given) and the version is detected from content instead.
    """
    explicit = document.get('schema_version')
    if explicit is not None:
        try:
            return int(explicit)
        except (TypeError, ValueError):
            warning = SchemaMigrationAmbiguous(
                path='schema_version',
                reason=f"Unreadable schema_version {explicit!r}; detected from content",
            )
            logger.warning(f"Schema migration: schema_version: {warning.reason}")
            if warnings is not None:
                warnings.append(warning)

    if _is_legacy_flat(document):
        return 0

    growth = document.get('economic_growth')
    if isinstance(growth, dict) and any(k.startswith('profit_other_income_') for k in growth):
        return 2
    return 1


# =========================================================================
# Steps
# =========================================================================

def _nest_section(section_key: str, section: Dict[str, Any],
                  warnings: List[SchemaMigrationAmbiguous]) -> Dict[str, Any]:
    """Rewrite one legacy flat section into its nested shape"""
    prefixes = LEGACY_PREFIXES.get(section_key, [])
    renames = LEGACY_RENAMES.get(section_key, {})
    nested: Dict[str, Any] = {}

    for key, value in section.items():
        # Already nested (section re-saved before the rest of the form)
        if isinstance(value, dict):
            for leaf_path, leaf_value in iter_leaves(value, key):
                set_nested(nested, leaf_path, leaf_value)
            continue

        target = renames.get(key)
        if target is None:
            for prefix, parent in prefixes:
                if key.startswith(prefix):
                    target = parent + key[len(prefix):]
                    break

        if target is None:
            nested[key] = value
            continue

        if target.startswith(PERIODIC_PARENTS) and not _PERIOD_SUFFIX.search(target):
            legacy_path = f"{section_key}.{key}"
            applied = f"{target}_monthly"
            warning = SchemaMigrationAmbiguous(
                path=legacy_path,
                reason="Legacy amount has no monthly/yearly qualifier; treated as monthly",
                applied_default=f"{section_key}.{applied}",
            )
            logger.warning(f"Schema migration: {legacy_path}: {warning.reason}")
            warnings.append(warning)
            if get_nested(nested, applied) is None:
                set_nested(nested, applied, value)
            continue

        set_nested(nested, target, value)

    return nested


def _migrate_rows(document: Dict[str, Any], warnings: List[SchemaMigrationAmbiguous]) -> None:
    """Rename legacy row keys and decode rows stored as JSON strings"""
    for section_key in SECTION_KEYS:
        section = document.get(section_key)
        if not isinstance(section, dict):
            continue

        for document_key in ROW_DOCUMENT_KEYS:
            renames = LEGACY_ROW_KEYS.get(document_key, {})
            rows = section.get(document_key)
            if isinstance(rows, str):
                try:
                    rows = json.loads(rows)
                except json.JSONDecodeError:
                    path = f"{section_key}.{document_key}"
                    warnings.append(SchemaMigrationAmbiguous(
                        path=path, reason="Rows stored as unparseable JSON text; dropped"
                    ))
                    logger.warning(f"Schema migration: {path}: unparseable JSON rows dropped")
                    rows = []
                section[document_key] = rows

            if not isinstance(rows, list):
                continue
            for row in rows:
                if not isinstance(row, dict):
                    continue
                for old, new in renames.items():
                    if old in row and not row.get(new):
                        row[new] = row.pop(old)


def _canonicalize_section_ids(document: Dict[str, Any]) -> None:
    """Server ids live top-level as '<section>_id', not inside the section"""
    for section_key in SECTION_KEYS:
        section = document.get(section_key)
        id_key = f"{section_key}_id"
        if isinstance(section, dict) and 'id' in section:
            section_id = section.pop('id')
            if document.get(id_key) is None:
                document[id_key] = section_id
        document.setdefault(id_key, None)


def _normalize_sections(document: Dict[str, Any]) -> None:
    """Missing or null sections become empty objects"""
    for section_key in SECTION_KEYS:
        if not isinstance(document.get(section_key), dict):
            document[section_key] = {}


def _upgrade_0_to_1(document: Dict[str, Any], warnings: List[SchemaMigrationAmbiguous]) -> None:
    for section_key in LEGACY_PREFIXES:
        section = document.get(section_key)
        if isinstance(section, dict):
            document[section_key] = _nest_section(section_key, section, warnings)


# =========================================================================
# Public API
# =========================================================================

def migrate(document: Dict[str, Any], target_version: Optional[int] = None) -> MigrationResult:
    """
    Bring a document into canonical shape.

    Args:
        document: Document as returned by persistence (not modified)
        target_version: Highest version to report; defaults to the
                        current schema version

    Returns:
        MigrationResult

    Example:
        result = migrate(legacy_doc)
        result.schema_version   # 1
        result.warnings         # [SchemaMigrationAmbiguous(...)]
    """
    target_version = target_version or CURRENT_SCHEMA_VERSION
    migrated = copy.deepcopy(document)
    warnings: List[SchemaMigrationAmbiguous] = []

    source_version = detect_version(migrated, warnings)
    if source_version > target_version:
        raise ValueError(
            f"Document schema version {source_version} is newer than supported {target_version}"
        )

    version = source_version
    _normalize_sections(migrated)

    if version == 0:
        _upgrade_0_to_1(migrated, warnings)
        version = 1

    _migrate_rows(migrated, warnings)
    _canonicalize_section_ids(migrated)
    migrated['schema_version'] = version

    if source_version != version:
        logger.info(f"Migrated document from schema v{source_version} to v{version}")
    return MigrationResult(
        document=migrated,
        schema_version=version,
        source_version=source_version,
        warnings=warnings,
    )
