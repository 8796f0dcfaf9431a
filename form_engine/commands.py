"""
Command types for FormController.handle()

Each command maps one-to-one onto a FormController operation. The Flask
surface and the console harness build commands from request data and
dispatch them through handle(); tests may call the operations directly.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class LoadForm:
    """
    Hydrate the controller from an already-fetched document.

    Returns: FormLoaded
    """
    document: Dict[str, Any]
    workflow_permissions: Optional[Dict[str, Any]] = None
    fallback_permissions: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class OpenCase:
    """
    Fetch the case's document and stage permissions, then load.

    Returns: FormLoaded or PersistenceFailed
    """
    case_id: str


@dataclass(frozen=True)
class SetField:
    path: str
    value: Any


@dataclass(frozen=True)
class AddRow:
    group: str
    values: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class RemoveRow:
    group: str
    row_id: int


@dataclass(frozen=True)
class UpdateRow:
    group: str
    row_id: int
    field: str
    value: Any


@dataclass(frozen=True)
class SaveSection:
    """
    Persist one section.

    mode='draft' saves without validation and stays on the section;
    mode='commit' validates required fields and advances.
    """
    section_key: str
    mode: str = 'draft'


@dataclass(frozen=True)
class CompleteForm:
    pass


@dataclass(frozen=True)
class SetCaseState:
    """Case status changed outside the form (e.g. sent back for rework)"""
    case_state: Optional[str]


# Command union type for type hints
Command = (
    LoadForm | OpenCase | SetField | AddRow | RemoveRow | UpdateRow
    | SaveSection | CompleteForm | SetCaseState
)
