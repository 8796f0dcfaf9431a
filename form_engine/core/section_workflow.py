"""
Section Workflow - Completion tracking and save/complete transitions

Responsibilities:
- Decide which sections are complete and where the user should land
- Persist a section slice (draft or commit) through the persistence collaborator
- Complete the form once every section is complete
- Track the completion lock and its release when a case returns for rework

Section states:
    INCOMPLETE --save--> SAVED(server_id) --complete--> LOCKED
    LOCKED --case enters rework state--> SAVED

Design principles:
- Walks sections in ascending order, first incomplete wins
- A section is complete if the server confirmed it (section id) OR all
  of its required paths hold valid values
- Failed saves change nothing: no store writes, no state change
- Permission checks live in FormController; this module only knows
  about completeness and the lock
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from form_engine.config import REWORK_STATES
from form_engine.errors import PersistenceError
from form_engine.results import FormCompleted, PersistenceFailed, SectionSaved, ValidationFailed
from form_engine.utils.helpers import is_valid_value

logger = logging.getLogger(__name__)

SAVE_MODES = ('draft', 'commit')


class SectionState(Enum):
    INCOMPLETE = 'incomplete'
    SAVED = 'saved'
    LOCKED = 'locked'


class SectionWorkflow:
    """
    Per-form section navigation and persistence.

    Holds only workflow facts (server ids, completion flag, case state).
    Values are read from the FieldStore and RepeatingGroupManager it is
    given.
    """

    def __init__(self, sections, store, groups, persistence,
                 form_id: Optional[str] = None,
                 section_ids: Optional[Dict[str, Any]] = None,
                 form_complete: bool = False,
                 case_state: Optional[str] = None,
                 rework_states=REWORK_STATES):
        """
        Args:
            sections: SectionSpec list (any order, sorted here)
            store: FieldStore with the form values
            groups: RepeatingGroupManager with the form rows
            persistence: Object with save_section_remote() and complete_remote()
            form_id: Persisted form identifier
            section_ids: section_key -> server-assigned id (None if unsaved)
            form_complete: is_complete flag from the document
            case_state: Current case status
            rework_states: Case states that lift the completion lock
        """
        self.sections = sorted(sections, key=lambda s: s.order)
        if not self.sections:
            raise ValueError("SectionWorkflow needs at least one section")

        self.store = store
        self.groups = groups
        self.persistence = persistence
        self.form_id = form_id
        self.section_ids: Dict[str, Any] = {s.key: None for s in self.sections}
        self.section_ids.update(section_ids or {})
        self.form_complete = form_complete
        self.case_state = case_state
        self.rework_states = frozenset(rework_states)

        self._by_key = {s.key: s for s in self.sections}

    # =========================================================================
    # Completion
    # =========================================================================

    def _section(self, key: str):
        if key not in self._by_key:
            raise ValueError(f"Unknown section: {key}")
        return self._by_key[key]

    def missing_paths(self, key: str) -> List[str]:
        """Required paths of a section that do not hold a valid value"""
        section = self._section(key)
        return [path for path in section.required_paths if not is_valid_value(self.store.get(path))]

    def is_section_complete(self, key: str) -> bool:
        return self.section_ids.get(key) is not None or not self.missing_paths(key)

    def incomplete_sections(self) -> List[str]:
        return [s.key for s in self.sections if not self.is_section_complete(s.key)]

    def next_incomplete_section(self) -> str:
        """
        First section (by order) that is not complete.

        Returns the last section when everything is complete, so the
        user lands on the final step.
        """
        for section in self.sections:
            if not self.is_section_complete(section.key):
                return section.key
        return self.sections[-1].key

    def initial_section(self) -> str:
        """Where the form opens: first section if complete, else next incomplete"""
        if self.form_complete:
            return self.sections[0].key
        return self.next_incomplete_section()

    # =========================================================================
    # Lock and state
    # =========================================================================

    @property
    def is_locked(self) -> bool:
        return self.form_complete and self.case_state not in self.rework_states

    def set_case_state(self, case_state: Optional[str]) -> None:
        previous = self.is_locked
        self.case_state = case_state
        if previous != self.is_locked:
            logger.info(f"Form {self.form_id}: case state {case_state!r}, locked={self.is_locked}")

    def state(self, key: str) -> SectionState:
        self._section(key)
        if self.is_locked:
            return SectionState.LOCKED
        if self.section_ids.get(key) is not None:
            return SectionState.SAVED
        return SectionState.INCOMPLETE

    def states(self) -> Dict[str, SectionState]:
        return {s.key: self.state(s.key) for s in self.sections}

    # =========================================================================
    # Persistence
    # =========================================================================

    def section_payload(self, key: str) -> Dict[str, Any]:
        """Section values plus the rows of every group stored in it"""
        self._section(key)
        data = self.store.export_section(key)
        for name in self.groups.group_names():
            spec = self.groups.spec(name)
            if spec.section == key:
                data[spec.document_key] = self.groups.export_rows(name)
        return data

    def _persist(self, key: str, mode: str) -> SectionSaved | PersistenceFailed:
        payload = self.section_payload(key)

        try:
            response = self.persistence.save_section_remote(self.form_id, key, payload)
        except PersistenceError as e:
            logger.error(f"Saving section {key} of form {self.form_id} failed [{e.tag}]: {e}")
            return PersistenceFailed(error=e, section_key=key)

        section_id = (response or {}).get('section_id', self.section_ids.get(key))
        self.section_ids[key] = section_id

        next_section = self.next_incomplete_section() if mode == 'commit' else None
        logger.info(f"Section {key} saved ({mode}) as {section_id}")
        return SectionSaved(section_key=key, section_id=section_id, mode=mode, next_section=next_section)

    def save_draft(self, key: str) -> SectionSaved | PersistenceFailed:
        """Persist without validation; the user stays on the section"""
        self._section(key)
        return self._persist(key, 'draft')

    def save_and_advance(self, key: str) -> SectionSaved | ValidationFailed | PersistenceFailed:
        """
        Validate required fields, persist, and report the next section.

        Returns:
            ValidationFailed listing missing paths (nothing persisted), or
            SectionSaved with next_section set, or PersistenceFailed
        """
        missing = self.missing_paths(key)
        if missing:
            logger.info(f"Section {key} not committed, missing: {missing}")
            return ValidationFailed(
                reason=f"Section {key} has {len(missing)} required field(s) without a value",
                section_key=key,
                missing_paths=tuple(missing),
            )
        return self._persist(key, 'commit')

    def complete(self) -> FormCompleted | ValidationFailed | PersistenceFailed:
        """
        Mark the form complete.

        Requires every section to be complete. On success the form is
        locked until the case enters a rework state.
        """
        incomplete = self.incomplete_sections()
        if incomplete:
            return ValidationFailed(
                reason="All sections must be complete before completing the form",
                incomplete_sections=tuple(incomplete),
            )

        try:
            self.persistence.complete_remote(self.form_id)
        except PersistenceError as e:
            logger.error(f"Completing form {self.form_id} failed [{e.tag}]: {e}")
            return PersistenceFailed(error=e)

        self.form_complete = True
        logger.info(f"Form {self.form_id} completed")
        return FormCompleted(form_id=self.form_id)
