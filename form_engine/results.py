"""
Result types returned by FormController.

Every public FormController operation returns one of these. Failures
that callers are expected to handle (validation, permissions, remote
errors, concurrent saves) are results, never exceptions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from form_engine.contracts import FieldChange, SchemaMigrationAmbiguous
from form_engine.errors import PersistenceError


# Success results

@dataclass(frozen=True)
class FormLoaded:
    """
    Form hydrated and ready for editing.

    Attributes:
        form_id: Persisted form identifier (None for unsaved documents)
        case_id: Owning case
        initial_section: Section the UI should open first
        schema_version: Canonical version after migration (selects rule set)
        migration_warnings: Ambiguities resolved with best-effort defaults
    """
    form_id: Optional[str]
    case_id: Optional[str]
    initial_section: str
    schema_version: int
    migration_warnings: Tuple[SchemaMigrationAmbiguous, ...] = ()


@dataclass(frozen=True)
class FieldUpdated:
    """
    A field write was applied.

    Attributes:
        path: Path the user wrote
        changes: The direct write followed by every derived write
                 (empty if the value did not change)
    """
    path: str
    changes: Tuple[FieldChange, ...] = ()


@dataclass(frozen=True)
class RowAdded:
    group: str
    row_id: int
    values: Dict[str, Any] = field(default_factory=dict)
    changes: Tuple[FieldChange, ...] = ()


@dataclass(frozen=True)
class RowRemoved:
    """
    Attributes:
        removed: False when the row is a protected fixed row (no-op)
    """
    group: str
    row_id: int
    removed: bool
    changes: Tuple[FieldChange, ...] = ()


@dataclass(frozen=True)
class RowUpdated:
    group: str
    row_id: int
    field: str
    changes: Tuple[FieldChange, ...] = ()


@dataclass(frozen=True)
class SectionSaved:
    """
    Section persisted.

    Attributes:
        section_key: Section that was saved
        section_id: Server-assigned id for the section record
        mode: 'draft' or 'commit'
        next_section: Next incomplete section (commit only)
    """
    section_key: str
    section_id: Any
    mode: str
    next_section: Optional[str] = None


@dataclass(frozen=True)
class FormCompleted:
    form_id: Optional[str]


@dataclass(frozen=True)
class CaseStateChanged:
    """
    Attributes:
        case_state: New case status
        locked: Whether the completion lock applies after the change
    """
    case_state: Optional[str]
    locked: bool


# Failure results

@dataclass(frozen=True)
class ValidationFailed:
    """
    Commit or completion rejected because required data is missing.

    Attributes:
        reason: Human-readable explanation
        section_key: Section being committed (None for completion)
        missing_paths: Required paths without a valid value
        incomplete_sections: Sections blocking completion
    """
    reason: str
    section_key: Optional[str] = None
    missing_paths: Tuple[str, ...] = ()
    incomplete_sections: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PermissionDenied:
    reason: str
    section_key: Optional[str] = None


@dataclass(frozen=True)
class PersistenceFailed:
    """
    The persistence collaborator raised.

    The original exception is carried unchanged; its tag ('NotFound',
    'PermissionDenied', 'ValidationFailed', 'Unknown') is exposed for
    callers that map failures to transport codes.
    """
    error: PersistenceError
    section_key: Optional[str] = None

    @property
    def tag(self) -> str:
        return getattr(self.error, 'tag', 'Unknown')


@dataclass(frozen=True)
class Busy:
    """A save for the same section (or a completion) is already in flight"""
    reason: str
    section_key: Optional[str] = None


@dataclass(frozen=True)
class IllegalCommand:
    """
    Command rejected as invalid for the current form.

    Examples:
    - set_field on an undeclared path
    - set_field on a derived (read-only) path
    - any mutation before a form is loaded

    Attributes:
        reason: Human-readable explanation
        command_type: Name of rejected command or operation
    """
    reason: str
    command_type: str


FAILURE_RESULTS = (ValidationFailed, PermissionDenied, PersistenceFailed, Busy, IllegalCommand)

Result = (
    FormLoaded | FieldUpdated | RowAdded | RowRemoved | RowUpdated | SectionSaved | FormCompleted
    | CaseStateChanged | ValidationFailed | PermissionDenied | PersistenceFailed | Busy | IllegalCommand
)
