"""
Semantic contracts for the counseling form engine.

This module defines immutable data structures passed between modules.
These are NOT validators - they define shape and semantics without
enforcing rules.

Design principles:
- Frozen dataclasses (immutable after creation)
- No validation logic (contracts, not validators)
- No dependencies on other engine modules

Contents:
- FieldChange: One applied write to the FieldStore
- DerivationRule: Derived field definition consumed by DerivationGraph
- StagePermission: Resolved view/edit capability for one section
- PermissionContext: Actor and case facts used by the permission resolver
- SchemaMigrationAmbiguous: Warning record emitted by the migration adapter

Usage:
    from form_engine.contracts import DerivationRule, FieldChange
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Union

# Leaf values allowed in the FieldStore
FieldValue = Union[int, float, str, bool, None]


@dataclass(frozen=True)
class FieldChange:
    """
    Record of a single value change applied to the FieldStore.

    Attributes:
        path: Dotted form path that changed
        old_value: Value before the write (declared default if unset)
        new_value: Value after the write
        origin: Rule id that produced the write, None for user writes
    """
    path: str
    old_value: Any
    new_value: Any
    origin: Optional[str] = None


@dataclass(frozen=True)
class DerivationRule:
    """
    Declarative derived-field rule.

    compute receives the current input values as a tuple, in the same
    order as inputs, and returns the new output value. It must be pure.

    counterpart links the two directions of a bidirectional pair
    (monthly -> yearly and yearly -> monthly). A write produced by one
    side never re-triggers the other side in the same propagation pass,
    and the edge between the pair is exempt from cycle detection.

    Examples:
        >>> rule = DerivationRule(
        ...     id='income.business.m2y',
        ...     inputs=('family_details.income_expense.income.business_monthly',),
        ...     output='family_details.income_expense.income.business_yearly',
        ...     compute=lambda values: to_number(values[0]) * 12,
        ...     counterpart='income.business.y2m'
        ... )
    """
    id: str
    inputs: Tuple[str, ...]
    output: str
    compute: Callable[[Tuple[Any, ...]], FieldValue] = field(compare=False, repr=False)
    counterpart: Optional[str] = None


@dataclass(frozen=True)
class StagePermission:
    """
    Resolved capability for one section.

    Attributes:
        section_key: Section the permission applies to
        can_view: Actor may see the section
        can_edit: Actor may modify and save the section
        source: Which resolution step produced it
                ('super_admin', 'workflow', 'fallback', 'default')
    """
    section_key: str
    can_view: bool
    can_edit: bool
    source: str = 'default'


@dataclass(frozen=True)
class PermissionContext:
    """
    Facts about the actor and case used during permission resolution.

    Attributes:
        role: Actor role name (e.g. 'counselor', 'super_admin')
        case_state: Current case status (e.g. 'in_counseling', 'welfare_rejected')
        form_complete: Whether the form carries is_complete=True
        can_complete: Whether the actor may mark the form complete
    """
    role: str
    case_state: Optional[str] = None
    form_complete: bool = False
    can_complete: bool = True


@dataclass(frozen=True)
class SchemaMigrationAmbiguous:
    """
    Warning emitted when old-format data cannot be upgraded unambiguously.

    Never raised. The migration adapter logs it, applies a best-effort
    default and returns it alongside the migrated document.

    Attributes:
        path: Legacy location of the ambiguous value
        reason: Human-readable explanation
        applied_default: Canonical path the value was written to, if any
    """
    path: str
    reason: str
    applied_default: Optional[str] = None
