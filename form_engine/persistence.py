"""
JSON-file form persistence and stage-permission table.

Reference implementations of the two collaborators FormController talks to:
- FormDocumentPersistence: load_document / save_section_remote / complete_remote
- StagePermissionTable: get_stage_permissions / can_complete

Every failure is raised as a tagged PersistenceError subclass so the
controller can pass it through unchanged.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from form_engine.config import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_FORMS_DIR,
    DEFAULT_PERMISSIONS_PATH,
    REWORK_STATES,
)
from form_engine.core.schema_migration import detect_version
from form_engine.errors import (
    NotFoundError,
    PermissionDeniedError,
    UnknownPersistenceError,
    ValidationFailedError,
)
from form_engine.utils.helpers import generate_record_id, utc_timestamp

logger = logging.getLogger(__name__)


class FormDocumentPersistence:
    """
    One JSON document per form.

    Layout:
        outputs/forms/
            FORM-a3f7e2b9.json
            FORM-5c01d4e2.json
            ...

    Design:
    - Whole-document rewrite per save (write to temp file, then replace)
    - Section ids are assigned on first save and kept afterwards
    - Completed forms reject section saves unless the case is in rework
    """

    def __init__(self, base_dir: str = DEFAULT_FORMS_DIR, rework_states=REWORK_STATES):
        """
        Initialize persistence layer.

        Args:
            base_dir: Directory holding FORM-*.json files
            rework_states: Case states in which completed forms accept saves
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.rework_states = frozenset(rework_states)
        logger.info(f"FormDocumentPersistence initialized: {self.base_dir}")

    # ========================
    # File helpers
    # ========================

    def _form_path(self, form_id: str) -> Path:
        return self.base_dir / f"FORM-{form_id}.json"

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise UnknownPersistenceError(f"Corrupt form document {path.name}: {e}") from e
        except OSError as e:
            raise UnknownPersistenceError(f"Cannot read {path.name}: {e}") from e

    def _write(self, document: Dict[str, Any]) -> None:
        path = self._form_path(document['id'])
        tmp_path = path.with_suffix('.json.tmp')
        try:
            with open(tmp_path, 'w') as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as e:
            raise UnknownPersistenceError(f"Cannot write {path.name}: {e}") from e

    def _load_form(self, form_id: Optional[str]) -> Dict[str, Any]:
        if not form_id:
            raise NotFoundError("Form has not been created")
        path = self._form_path(form_id)
        if not path.exists():
            raise NotFoundError(f"Form not found: {form_id}")
        return self._read(path)

    # ========================
    # Collaborator API
    # ========================

    def create_form(self, case_id: str, document: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create and store a new form document for a case.

        Args:
            case_id: Owning case
            document: Optional initial content (e.g. an imported legacy form)

        An empty form is stamped with the current schema version. Imported
        content without one is stamped with the version detected from it.

        Returns:
            dict: Stored document including its new id
        """
        if self.find_form_id(case_id) is not None:
            raise ValidationFailedError(f"Case {case_id} already has a counseling form")

        stored = dict(document or {})
        stored['id'] = generate_record_id()
        stored['case_id'] = case_id
        if stored.get('schema_version') is None:
            stored['schema_version'] = detect_version(stored) if document else CURRENT_SCHEMA_VERSION
        stored.setdefault('is_complete', False)
        stored.setdefault('completed_at', None)
        stored.setdefault('case_status', None)
        stored['created_at'] = utc_timestamp()
        stored['updated_at'] = stored['created_at']

        self._write(stored)
        logger.info(f"Created form {stored['id']} for case {case_id}")
        return stored

    def find_form_id(self, case_id: str) -> Optional[str]:
        for path in sorted(self.base_dir.glob("FORM-*.json")):
            document = self._read(path)
            if str(document.get('case_id')) == str(case_id):
                return document.get('id')
        return None

    def list_forms(self) -> List[Dict[str, Any]]:
        """Summary of stored forms (id, case_id, is_complete)"""
        summaries = []
        for path in sorted(self.base_dir.glob("FORM-*.json")):
            document = self._read(path)
            summaries.append({
                'id': document.get('id'),
                'case_id': document.get('case_id'),
                'is_complete': bool(document.get('is_complete')),
            })
        return summaries

    def load_document(self, case_id: str) -> Dict[str, Any]:
        """
        Load the form document for a case.

        Raises:
            NotFoundError: If the case has no form
        """
        form_id = self.find_form_id(case_id)
        if form_id is None:
            raise NotFoundError(f"No counseling form for case {case_id}")

        logger.info(f"Loading form {form_id} for case {case_id}")
        return self._load_form(form_id)

    def save_section_remote(self, form_id: Optional[str], section_key: str,
                            data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store one section slice.

        A document without a stored schema_version is stamped with the
        version detected from its content before the section is replaced.

        Returns:
            {"section_id": <id>}

        Raises:
            NotFoundError: Unknown form
            PermissionDeniedError: Form is complete and case not in rework
            ValidationFailedError: Malformed payload
        """
        if not isinstance(data, dict):
            raise ValidationFailedError(f"Section {section_key} payload must be an object")

        document = self._load_form(form_id)
        if document.get('is_complete') and document.get('case_status') not in self.rework_states:
            raise PermissionDeniedError(
                "Form is complete and can only be edited when the case is sent back for rework"
            )

        if document.get('schema_version') is None:
            document['schema_version'] = detect_version(document)

        id_key = f"{section_key}_id"
        section_id = document.get(id_key) or generate_record_id()

        document[section_key] = data
        document[id_key] = section_id
        document['updated_at'] = utc_timestamp()
        self._write(document)

        logger.info(f"Form {form_id}: saved section {section_key} ({section_id})")
        return {'section_id': section_id}

    def complete_remote(self, form_id: Optional[str]) -> None:
        document = self._load_form(form_id)
        document['is_complete'] = True
        document['completed_at'] = utc_timestamp()
        document['updated_at'] = document['completed_at']
        self._write(document)
        logger.info(f"Form {form_id}: marked complete")

    def update_case_status(self, form_id: Optional[str], case_status: Optional[str]) -> None:
        """Record the case status alongside the form (e.g. welfare_rejected)"""
        document = self._load_form(form_id)
        document['case_status'] = case_status
        document['updated_at'] = utc_timestamp()
        self._write(document)
        logger.info(f"Form {form_id}: case status -> {case_status}")


class StagePermissionTable:
    """
    Stage permissions for one role from data/stage_permissions.json.

    File shape:
        {
          "roles": {"counselor": {"family": {"can_read": true, "can_update": true}, ...}},
          "complete_roles": ["counselor", ...]
        }
    """

    def __init__(self, role: str, permissions_path: str = DEFAULT_PERMISSIONS_PATH):
        """
        Raises:
            FileNotFoundError: If the permission file doesn't exist
        """
        self.role = role
        self.permissions_path = Path(permissions_path)

        if not self.permissions_path.exists():
            raise FileNotFoundError(f"Stage permissions not found: {permissions_path}")

        with open(self.permissions_path, 'r') as f:
            raw = json.load(f)

        self.roles: Dict[str, Dict[str, Any]] = raw.get('roles', {})
        self.complete_roles = frozenset(raw.get('complete_roles', []))

        if role not in self.roles:
            logger.warning(f"No stage permissions configured for role {role!r}")

    def get_stage_permissions(self, case_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """
        Args:
            case_id: Unused by the file table; part of the collaborator API

        Returns:
            {stage_key: {can_read, can_update}} for this table's role
        """
        return {stage: dict(record) for stage, record in self.roles.get(self.role, {}).items()}

    def can_complete(self) -> bool:
        return self.role in self.complete_roles
