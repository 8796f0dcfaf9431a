"""
Form Controller - Counseling form session orchestration

Responsibilities:
- Load a form document (migrate, pick rule set, hydrate, recompute)
- Gate every mutation on the owning section's stage permission
- Route field writes to the FieldStore and row edits to the group manager
- Keep group footer totals mirrored into the FieldStore
- Delegate save / complete to SectionWorkflow, one in-flight save per section

Design principles:
- One controller per form session; all session state is owned here
  and passed explicitly to the components
- Thin orchestration layer (business logic in specialized modules)
- Expected failures are result objects, never exceptions
- Collaborators are duck-typed and validated on construction
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from form_engine.commands import (
    AddRow,
    CompleteForm,
    LoadForm,
    OpenCase,
    RemoveRow,
    SaveSection,
    SetCaseState,
    SetField,
    UpdateRow,
)
from form_engine.config import DEFAULT_RULES_PATH
from form_engine.contracts import FieldChange, PermissionContext, StagePermission
from form_engine.core.derivation_rules import build_graph
from form_engine.core.field_store import FieldStore
from form_engine.core.permission_resolver import StagePermissionResolver
from form_engine.core.repeating_groups import RepeatingGroupManager
from form_engine.core.schema_migration import migrate
from form_engine.core.section_workflow import SAVE_MODES, SectionWorkflow
from form_engine.errors import PersistenceError
from form_engine.results import (
    Busy,
    CaseStateChanged,
    FieldUpdated,
    FormLoaded,
    IllegalCommand,
    PermissionDenied,
    PersistenceFailed,
    RowAdded,
    RowRemoved,
    RowUpdated,
)
from form_engine.utils.helpers import section_of

logger = logging.getLogger(__name__)

# In-flight key for form completion (section keys never start with '_')
_COMPLETE_KEY = '__complete__'


class FormController:
    """
    Orchestrates one counseling form session.

    Usage:
        controller = FormController(FormSchema(), FormDocumentPersistence(), StagePermissionTable('counselor'))
        controller.open_case('42')
        controller.set_field('family_details.income_expense.income.business_monthly', 1000)
        controller.save_section('family_details', mode='commit')
    """

    def __init__(self, schema, persistence, permission_source=None,
                 role: str = 'counselor',
                 can_complete: Optional[bool] = None,
                 rules_path: str = DEFAULT_RULES_PATH,
                 default_permission=(True, True)):
        """
        Args:
            schema: FormSchema instance (read-only, safe to share)
            persistence: Object with load_document(), save_section_remote(), complete_remote()
            permission_source: Optional object with get_stage_permissions(case_id)
            role: Actor role for permission resolution
            can_complete: Whether the actor may complete the form. When None,
                          asks permission_source.can_complete() if available,
                          else True.
            rules_path: Derivation rule sets file
            default_permission: (can_view, can_edit) when no permission record exists

        Raises:
            TypeError: If a collaborator is missing a required method
        """
        self._validate_collaborators(persistence, permission_source)

        self.schema = schema
        self.persistence = persistence
        self.permission_source = permission_source
        self.role = role
        self.rules_path = rules_path
        self.default_permission = default_permission

        if can_complete is None:
            checker = getattr(permission_source, 'can_complete', None)
            can_complete = checker() if callable(checker) else True
        self.can_complete = can_complete

        # Session state (set by load_form)
        self.case_id: Optional[str] = None
        self.schema_version: Optional[int] = None
        self.store: Optional[FieldStore] = None
        self.graph = None
        self.groups: Optional[RepeatingGroupManager] = None
        self.workflow: Optional[SectionWorkflow] = None
        self.resolver: Optional[StagePermissionResolver] = None
        self._read_only_paths: set = set()

        self._in_flight: set = set()
        self._in_flight_lock = threading.Lock()

        logger.info(f"FormController initialized (role={role})")

    def _validate_collaborators(self, persistence, permission_source):
        """Validate collaborator interfaces"""
        for method in ('load_document', 'save_section_remote', 'complete_remote'):
            if not callable(getattr(persistence, method, None)):
                raise TypeError(f"persistence must have callable {method}() method")

        if permission_source is not None and not callable(getattr(permission_source, 'get_stage_permissions', None)):
            raise TypeError("permission_source must have callable get_stage_permissions() method")

    # =========================================================================
    # Loading
    # =========================================================================

    @property
    def is_loaded(self) -> bool:
        return self.workflow is not None

    @property
    def form_id(self) -> Optional[str]:
        return self.workflow.form_id if self.workflow else None

    def load_form(self, document: Dict[str, Any],
                  workflow_permissions: Optional[Dict[str, Any]] = None,
                  fallback_permissions: Optional[Dict[str, Any]] = None) -> FormLoaded:
        """
        Hydrate the session from a form document.

        Steps:
        1. Migrate the document to canonical shape
        2. Build the derivation graph for its schema version
        3. Hydrate FieldStore and repeating groups
        4. Mirror group totals, then recompute every aggregate rule once

        Args:
            document: Form document (any supported schema version)
            workflow_permissions: Stage permissions from the case workflow
            fallback_permissions: Stage permission table for the actor's role

        Returns:
            FormLoaded

        Raises:
            ValueError: If the document is newer than the supported schema
        """
        migration = migrate(document)
        doc = migration.document

        graph = build_graph(migration.schema_version, self.rules_path)
        store = FieldStore.from_schema(self.schema)
        store.bind_graph(graph)

        groups = RepeatingGroupManager.from_schema(self.schema)
        group_keys: Dict[str, set] = {}
        for spec in self.schema.groups.values():
            section = doc.get(spec.section) or {}
            groups.hydrate(spec.name, section.get(spec.document_key))
            group_keys.setdefault(spec.section, set()).add(spec.document_key)

        values = {}
        for key in self.schema.section_keys():
            section = doc.get(key) or {}
            values[key] = {k: v for k, v in section.items() if k not in group_keys.get(key, set())}
        store.hydrate(values)

        self.case_id = doc.get('case_id')
        self.schema_version = migration.schema_version
        self.store = store
        self.graph = graph
        self.groups = groups

        self._sync_aggregates()
        graph.recompute_all(store)

        self.workflow = SectionWorkflow(
            self.schema.sections,
            store,
            groups,
            self.persistence,
            form_id=doc.get('id'),
            section_ids={s.key: doc.get(s.id_field) for s in self.schema.sections},
            form_complete=bool(doc.get('is_complete')),
            case_state=doc.get('case_status'),
        )
        self.resolver = StagePermissionResolver(
            workflow_permissions=workflow_permissions,
            fallback_permissions=fallback_permissions,
            stage_keys={s.key: s.stage_key for s in self.schema.sections},
            default_permission=self.default_permission,
        )
        self._read_only_paths = graph.derived_paths() | {b.output for b in self.schema.aggregates}

        initial = self.workflow.initial_section()
        logger.info(
            f"Loaded form {self.form_id} (case {self.case_id}, schema v{self.schema_version}), "
            f"opening at {initial}"
        )
        return FormLoaded(
            form_id=self.form_id,
            case_id=self.case_id,
            initial_section=initial,
            schema_version=migration.schema_version,
            migration_warnings=tuple(migration.warnings),
        )

    def open_case(self, case_id: str,
                  workflow_permissions: Optional[Dict[str, Any]] = None) -> FormLoaded | PersistenceFailed:
        """Fetch a case's document and stage permissions, then load it"""
        try:
            document = self.persistence.load_document(case_id)
        except PersistenceError as e:
            logger.error(f"Loading form for case {case_id} failed [{e.tag}]: {e}")
            return PersistenceFailed(error=e)

        fallback = None
        if self.permission_source is not None:
            fallback = self.permission_source.get_stage_permissions(case_id)

        return self.load_form(document, workflow_permissions, fallback)

    # =========================================================================
    # Permissions
    # =========================================================================

    def _context(self) -> PermissionContext:
        return PermissionContext(
            role=self.role,
            case_state=self.workflow.case_state,
            form_complete=self.workflow.form_complete,
            can_complete=self.can_complete,
        )

    def permission(self, section_key: str) -> StagePermission:
        return self.resolver.resolve(section_key, self._context())

    def permissions(self) -> Dict[str, StagePermission]:
        context = self._context()
        return {key: self.resolver.resolve(key, context) for key in self.schema.section_keys()}

    def _check_editable(self, section_key: str) -> Optional[PermissionDenied]:
        if self.permission(section_key).can_edit:
            return None

        if self.workflow.is_locked and self.resolver.resolve_section(section_key, self._context()).can_edit:
            reason = "Form is complete and can only be edited when the case is sent back for rework"
        else:
            reason = f"Role {self.role} cannot edit section {section_key}"
        logger.info(f"Denied edit of {section_key}: {reason}")
        return PermissionDenied(reason=reason, section_key=section_key)

    def _not_loaded(self, operation: str) -> Optional[IllegalCommand]:
        if self.is_loaded:
            return None
        return IllegalCommand(reason="No form loaded", command_type=operation)

    # =========================================================================
    # Field and row mutation
    # =========================================================================

    def set_field(self, path: str, value: Any):
        """
        Write a user-entered value.

        Returns:
            FieldUpdated, PermissionDenied or IllegalCommand
        """
        illegal = self._not_loaded('set_field')
        if illegal:
            return illegal

        if not path or not self.store.is_declared(path):
            return IllegalCommand(reason=f"Unknown form path: {path}", command_type='set_field')
        if path in self._read_only_paths:
            return IllegalCommand(reason=f"{path} is calculated and cannot be edited", command_type='set_field')

        denied = self._check_editable(section_of(path))
        if denied:
            return denied

        try:
            changes = self.store.set(path, value)
        except TypeError as e:
            return IllegalCommand(reason=str(e), command_type='set_field')

        return FieldUpdated(path=path, changes=tuple(changes))

    def _group_section(self, group: str, operation: str):
        """Returns (section_key, None) or (None, IllegalCommand)"""
        if group not in self.schema.groups:
            return None, IllegalCommand(reason=f"Unknown repeating group: {group}", command_type=operation)
        return self.schema.groups[group].section, None

    def _sync_aggregates(self, group: Optional[str] = None) -> List[FieldChange]:
        """Mirror group footer totals into their FieldStore paths"""
        changes: List[FieldChange] = []
        for binding in self.schema.aggregates:
            if group is not None and binding.group != group:
                continue
            total = self.groups.aggregate(binding.group, binding.field)
            changes.extend(self.store.set(binding.output, total, origin=f"aggregate:{binding.group}.{binding.field}"))
        return changes

    def add_row(self, group: str, values: Optional[Dict[str, Any]] = None):
        illegal = self._not_loaded('add_row')
        if illegal:
            return illegal

        section_key, illegal = self._group_section(group, 'add_row')
        if illegal:
            return illegal
        denied = self._check_editable(section_key)
        if denied:
            return denied

        row_id = self.groups.add_row(group, values)
        changes = self._sync_aggregates(group)
        return RowAdded(group=group, row_id=row_id, values=self.groups.get_row(group, row_id),
                        changes=tuple(changes))

    def remove_row(self, group: str, row_id: int):
        illegal = self._not_loaded('remove_row')
        if illegal:
            return illegal

        section_key, illegal = self._group_section(group, 'remove_row')
        if illegal:
            return illegal
        if row_id not in self.groups.row_ids(group):
            return IllegalCommand(reason=f"Row {row_id} does not exist in {group}", command_type='remove_row')
        denied = self._check_editable(section_key)
        if denied:
            return denied

        removed = self.groups.remove_row(group, row_id)
        changes = self._sync_aggregates(group) if removed else []
        return RowRemoved(group=group, row_id=row_id, removed=removed, changes=tuple(changes))

    def update_row(self, group: str, row_id: int, field: str, value: Any):
        illegal = self._not_loaded('update_row')
        if illegal:
            return illegal

        section_key, illegal = self._group_section(group, 'update_row')
        if illegal:
            return illegal
        if row_id not in self.groups.row_ids(group):
            return IllegalCommand(reason=f"Row {row_id} does not exist in {group}", command_type='update_row')
        if field not in dict(self.schema.groups[group].fields):
            return IllegalCommand(reason=f"Group {group} has no field {field}", command_type='update_row')
        denied = self._check_editable(section_key)
        if denied:
            return denied

        self.groups.update_row(group, row_id, field, value)
        changes = self._sync_aggregates(group)
        return RowUpdated(group=group, row_id=row_id, field=field, changes=tuple(changes))

    # =========================================================================
    # Save and complete
    # =========================================================================

    def _claim(self, key: str) -> bool:
        with self._in_flight_lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def _release(self, key: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(key)

    def save_section(self, section_key: str, mode: str = 'draft'):
        """
        Persist a section.

        Args:
            section_key: Section to save
            mode: 'draft' (no validation, stay) or 'commit' (validate, advance)

        Returns:
            SectionSaved, ValidationFailed, PermissionDenied,
            PersistenceFailed, Busy or IllegalCommand
        """
        illegal = self._not_loaded('save_section')
        if illegal:
            return illegal
        if mode not in SAVE_MODES:
            return IllegalCommand(reason=f"Unknown save mode: {mode}", command_type='save_section')
        if section_key not in self.schema.section_keys():
            return IllegalCommand(reason=f"Unknown section: {section_key}", command_type='save_section')

        if not self._claim(section_key):
            return Busy(reason=f"Section {section_key} is already being saved", section_key=section_key)

        try:
            denied = self._check_editable(section_key)
            if denied:
                return denied

            if mode == 'commit':
                return self.workflow.save_and_advance(section_key)
            return self.workflow.save_draft(section_key)
        finally:
            self._release(section_key)

    def complete_form(self):
        """
        Mark the form complete.

        Returns:
            FormCompleted, ValidationFailed, PermissionDenied,
            PersistenceFailed, Busy or IllegalCommand
        """
        illegal = self._not_loaded('complete_form')
        if illegal:
            return illegal

        if not self.can_complete:
            return PermissionDenied(reason=f"Role {self.role} cannot complete counseling forms")
        if self.workflow.is_locked:
            return PermissionDenied(reason="Form is already complete")

        if not self._claim(_COMPLETE_KEY):
            return Busy(reason="Form completion already in progress")

        try:
            return self.workflow.complete()
        finally:
            self._release(_COMPLETE_KEY)

    def set_case_state(self, case_state: Optional[str]):
        illegal = self._not_loaded('set_case_state')
        if illegal:
            return illegal

        self.workflow.set_case_state(case_state)
        return CaseStateChanged(case_state=case_state, locked=self.workflow.is_locked)

    # =========================================================================
    # Views
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """
        Serializable view of the session for display.

        Values and rows are included only for sections the actor can view.
        """
        if not self.is_loaded:
            return {'loaded': False}

        permissions = self.permissions()
        states = self.workflow.states()

        sections = []
        values = {}
        for spec in self.schema.sections:
            permission = permissions[spec.key]
            sections.append({
                'key': spec.key,
                'title': spec.title,
                'order': spec.order,
                'state': states[spec.key].value,
                'section_id': self.workflow.section_ids.get(spec.key),
                'complete': self.workflow.is_section_complete(spec.key),
                'missing_paths': self.workflow.missing_paths(spec.key),
                'can_view': permission.can_view,
                'can_edit': permission.can_edit,
            })
            if permission.can_view:
                values[spec.key] = self.store.export_section(spec.key)

        groups = {
            name: [row.to_dict() for row in self.groups.rows(name)]
            for name, spec in self.schema.groups.items()
            if permissions[spec.section].can_view
        }

        return {
            'loaded': True,
            'form_id': self.form_id,
            'case_id': self.case_id,
            'schema_version': self.schema_version,
            'is_complete': self.workflow.form_complete,
            'case_state': self.workflow.case_state,
            'locked': self.workflow.is_locked,
            'current_section': self.workflow.next_incomplete_section(),
            'sections': sections,
            'values': values,
            'groups': groups,
        }

    # =========================================================================
    # Command dispatch
    # =========================================================================

    def handle(self, command):
        """
        Dispatch a command to its operation.

        Returns:
            The operation's result, or IllegalCommand for unknown commands
        """
        if isinstance(command, LoadForm):
            return self.load_form(command.document, command.workflow_permissions, command.fallback_permissions)
        if isinstance(command, OpenCase):
            return self.open_case(command.case_id)
        if isinstance(command, SetField):
            return self.set_field(command.path, command.value)
        if isinstance(command, AddRow):
            return self.add_row(command.group, command.values)
        if isinstance(command, RemoveRow):
            return self.remove_row(command.group, command.row_id)
        if isinstance(command, UpdateRow):
            return self.update_row(command.group, command.row_id, command.field, command.value)
        if isinstance(command, SaveSection):
            return self.save_section(command.section_key, command.mode)
        if isinstance(command, CompleteForm):
            return self.complete_form()
        if isinstance(command, SetCaseState):
            return self.set_case_state(command.case_state)

        return IllegalCommand(
            reason=f"Unknown command type: {type(command).__name__}",
            command_type=type(command).__name__,
        )
