"""
Stage Permission Resolver - (section, actor role, case state) -> view/edit

Resolution chain for one section:
1. Workflow-supplied permission for the section's stage key, used only
   when both flags are explicit booleans
2. Fallback stage-permission table (can_read / can_update), same stage key
3. Default permission (permissive unless configured otherwise)

Super-admin roles skip the chain entirely and get view+edit.

After per-section resolution one global override applies, super admins
included: a completed form is read-only unless the case is in a rework
state.

OPEN QUESTION: "no permission record -> fully editable"
- This is the policy the surrounding system applies today
- It may be a gap rather than an intended security posture
- The default is kept permissive and every use of it is logged;
  pass default_permission=(True, False) to default to read-only
"""

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from form_engine.config import REWORK_STATES, SUPER_ADMIN_ROLES
from form_engine.contracts import PermissionContext, StagePermission

logger = logging.getLogger(__name__)

PermissionTable = Mapping[str, Mapping[str, Any]]


def _flag(record: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in record:
            return record[name]
    return None


def _truthy_flag(value: Any) -> bool:
    """Stage tables come from SQL: accept True or 1"""
    return value is True or (not isinstance(value, bool) and value == 1)


class StagePermissionResolver:
    """Three-step permission chain plus the completion lock"""

    def __init__(
        self,
        workflow_permissions: Optional[PermissionTable] = None,
        fallback_permissions: Optional[PermissionTable] = None,
        stage_keys: Optional[Dict[str, str]] = None,
        default_permission: Tuple[bool, bool] = (True, True),
        super_admin_roles=SUPER_ADMIN_ROLES,
        rework_states=REWORK_STATES,
    ):
        """
        Args:
            workflow_permissions: {stage_key: {can_view/can_read, can_edit/can_update}}
                                  from the case workflow engine
            fallback_permissions: {stage_key: {can_read, can_update}} stage table
            stage_keys: section_key -> stage_key (identity when missing)
            default_permission: (can_view, can_edit) when no record exists
            super_admin_roles: Roles that bypass resolution
            rework_states: Case states that re-open a completed form
        """
        self.workflow_permissions = dict(workflow_permissions or {})
        self.fallback_permissions = dict(fallback_permissions or {})
        self.stage_keys = dict(stage_keys or {})
        self.default_permission = default_permission
        self.super_admin_roles = frozenset(super_admin_roles)
        self.rework_states = frozenset(rework_states)

    def _stage_key(self, section_key: str) -> str:
        return self.stage_keys.get(section_key, section_key)

    def _lookup(self, table: PermissionTable, section_key: str) -> Optional[Mapping[str, Any]]:
        stage_key = self._stage_key(section_key)
        record = table.get(stage_key)
        if record is None:
            record = table.get(section_key)
        return record

    def resolve_section(self, section_key: str, context: PermissionContext) -> StagePermission:
        """Per-section resolution, before the completion override"""
        if context.role in self.super_admin_roles:
            return StagePermission(section_key, True, True, source='super_admin')

        # Step 1: workflow permission, explicit booleans only
        record = self._lookup(self.workflow_permissions, section_key)
        if record is not None:
            can_view = _flag(record, 'can_view', 'can_read')
            can_edit = _flag(record, 'can_edit', 'can_update')
            if isinstance(can_view, bool) and isinstance(can_edit, bool):
                return StagePermission(section_key, can_view, can_edit, source='workflow')
            logger.debug(f"{section_key}: workflow permission without explicit flags, falling back")

        # Step 2: stage permission table
        record = self._lookup(self.fallback_permissions, section_key)
        if record is not None:
            return StagePermission(
                section_key,
                _truthy_flag(_flag(record, 'can_read', 'can_view')),
                _truthy_flag(_flag(record, 'can_update', 'can_edit')),
                source='fallback',
            )

        # Step 3: default
        can_view, can_edit = self.default_permission
        logger.warning(
            f"No permission record for section {section_key} (role={context.role}); "
            f"applying default view={can_view} edit={can_edit}"
        )
        return StagePermission(section_key, can_view, can_edit, source='default')

    def is_locked(self, context: PermissionContext) -> bool:
        """Completed forms are locked unless the case is back in rework"""
        return context.form_complete and context.case_state not in self.rework_states

    def resolve(self, section_key: str, context: PermissionContext) -> StagePermission:
        """
        Resolve view/edit capability for a section.

        Args:
            section_key: Section key (e.g. 'family_details')
            context: Actor role, case state and completion flag

        Returns:
            StagePermission with the completion lock applied
        """
        permission = self.resolve_section(section_key, context)

        if permission.can_edit and self.is_locked(context):
            return StagePermission(section_key, permission.can_view, False, source=permission.source)
        return permission
