"""
Unit tests for Form Controller

Tests orchestration logic with mocked persistence
"""

import json
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from form_engine.commands import AddRow, CompleteForm, LoadForm, SaveSection, SetCaseState, SetField
from form_engine.core.form_controller import FormController
from form_engine.core.form_schema import FormSchema
from form_engine.errors import NotFoundError, PermissionDeniedError
from form_engine.persistence import FormDocumentPersistence
from form_engine.results import (
    Busy,
    CaseStateChanged,
    FieldUpdated,
    FormCompleted,
    FormLoaded,
    IllegalCommand,
    PermissionDenied,
    PersistenceFailed,
    RowAdded,
    RowRemoved,
    RowUpdated,
    SectionSaved,
    ValidationFailed,
)

SCHEMA = FormSchema()
SAMPLE_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'data', 'sample_form.json')

INCOME = 'family_details.income_expense.income'


# ========================
# Mock Modules
# ========================

class MockPersistence:
    """In-memory persistence collaborator"""

    def __init__(self, documents=None, error=None):
        self.documents = documents or {}
        self.error = error
        self.saved = []
        self.completed = []
        self.on_save = None

    def load_document(self, case_id):
        if case_id not in self.documents:
            raise NotFoundError(f"No counseling form for case {case_id}")
        return self.documents[case_id]

    def save_section_remote(self, form_id, section_key, data):
        if self.on_save:
            self.on_save()
        if self.error:
            raise self.error
        self.saved.append((section_key, data))
        return {'section_id': f"{section_key}-id"}

    def complete_remote(self, form_id):
        if self.error:
            raise self.error
        self.completed.append(form_id)


class MockPermissionSource:
    """Stage permission table for a single role"""

    def __init__(self, permissions, complete=True):
        self.permissions = permissions
        self.complete = complete
        self.requested = []

    def get_stage_permissions(self, case_id=None):
        self.requested.append(case_id)
        return self.permissions

    def can_complete(self):
        return self.complete


def load_sample():
    with open(SAMPLE_PATH, 'r') as f:
        document = json.load(f)
    document['id'] = 'F-1'
    document['case_id'] = 'CASE-1'
    return document


def all_saved_document(**extra):
    document = {'id': 'F-2', 'case_id': 'CASE-2', 'schema_version': 2, 'case_status': 'in_counseling'}
    for key in SCHEMA.section_keys():
        document[f"{key}_id"] = f"{key}-id"
    document.update(extra)
    return document


def make_controller(document=None, persistence=None, **kwargs):
    persistence = persistence or MockPersistence()
    controller = FormController(SCHEMA, persistence, **kwargs)
    controller.load_form(document if document is not None else {'id': 'F-0', 'case_id': 'CASE-0'})
    return controller, persistence


# ========================
# Loading
# ========================

def test_load_sample_document():
    """Sample form hydrates, totals recompute, opens at first incomplete section"""
    controller = FormController(SCHEMA, MockPersistence())

    result = controller.load_form(load_sample())

    assert isinstance(result, FormLoaded)
    assert result.form_id == 'F-1'
    assert result.schema_version == 2
    assert result.initial_section == 'assessment'
    assert controller.store.get(f'{INCOME}.total_monthly') == 33000
    assert controller.store.get('family_details.income_expense.surplus_monthly') == 9000
    assert controller.store.get('family_details.family_income_total') == 33000
    assert controller.store.get('financial_assistance.total_qardan') == 50000
    assert controller.groups.row_count('family_members') == 2


def test_load_legacy_document_reports_warnings():
    """Flat legacy data is migrated and keeps the v1 rule set"""
    controller = FormController(SCHEMA, MockPersistence())

    result = controller.load_form({
        'id': 'F-9',
        'family_details': {'income_business': 4000, 'expense_food_monthly': 1000},
    })

    assert result.schema_version == 1
    assert len(result.migration_warnings) == 1
    assert controller.store.get(f'{INCOME}.business_monthly') == 4000
    assert controller.store.get('family_details.income_expense.surplus_monthly') == 3000
    assert controller.store.get(f'{INCOME}.business_yearly') == 48000
    assert controller.store.get('family_details.income_expense.surplus_yearly') == 36000


def test_load_fills_missing_side_of_pair():
    """A document holding only the monthly figure gets the yearly side on load"""
    document = all_saved_document(family_details={'income_expense': {'income': {'business_monthly': 1000}}})

    controller, _ = make_controller(document)

    assert controller.store.get(f'{INCOME}.business_monthly') == 1000
    assert controller.store.get(f'{INCOME}.business_yearly') == 12000
    assert controller.store.get(f'{INCOME}.total_yearly') == 12000
    assert controller.store.get('family_details.income_expense.surplus_monthly') == 1000
    assert controller.store.get('family_details.income_expense.surplus_yearly') == 12000


# ========================
# Stored forms
# ========================

@pytest.fixture
def stored_forms(tmp_path):
    return FormDocumentPersistence(base_dir=str(tmp_path / 'forms'))


def reopen(persistence, case_id):
    controller = FormController(SCHEMA, persistence)
    result = controller.open_case(case_id)
    assert isinstance(result, FormLoaded)
    return controller, result


def test_new_form_uses_current_cash_surplus_rule(stored_forms):
    stored_forms.create_form('CASE-1')

    controller, result = reopen(stored_forms, 'CASE-1')
    controller.set_field('economic_growth.profit_other_income_year1', 500)

    assert result.schema_version == 2
    assert controller.store.get('economic_growth.cash_surplus_year1') == 500


def test_unversioned_form_keeps_rules_after_save(stored_forms, tmp_path):
    """A form written before versioning is still read as v1 after a section save"""
    form_id = stored_forms.create_form('CASE-1')['id']
    path = tmp_path / 'forms' / f'FORM-{form_id}.json'
    document = json.loads(path.read_text())
    del document['schema_version']
    path.write_text(json.dumps(document))

    controller, result = reopen(stored_forms, 'CASE-1')
    assert result.schema_version == 1
    controller.set_field('economic_growth.profit_other_income_year1', 500)
    assert controller.store.get('economic_growth.cash_surplus_year1') == 0
    assert isinstance(controller.save_section('economic_growth'), SectionSaved)

    reopened, result = reopen(stored_forms, 'CASE-1')

    assert result.schema_version == 1
    assert reopened.store.get('economic_growth.profit_other_income_year1') == 500
    assert reopened.store.get('economic_growth.cash_surplus_year1') == 0


def test_legacy_form_reloads_after_partial_save(stored_forms):
    """Saving one migrated section leaves the rest of a flat form readable"""
    stored_forms.create_form('CASE-1', {
        'family_details': {'income_business': 4000, 'expense_food_monthly': 1000},
    })

    controller, result = reopen(stored_forms, 'CASE-1')
    assert result.schema_version == 1
    assert len(result.migration_warnings) == 1
    assert isinstance(controller.save_section('family_details'), SectionSaved)

    reopened, result = reopen(stored_forms, 'CASE-1')

    assert result.schema_version == 1
    assert result.migration_warnings == []
    assert reopened.store.get(f'{INCOME}.business_monthly') == 4000
    assert reopened.store.get(f'{INCOME}.business_yearly') == 48000
    assert reopened.store.get('family_details.income_expense.surplus_yearly') == 36000


def test_open_case_uses_permission_source():
    source = MockPermissionSource({'family': {'can_read': 1, 'can_update': 0}})
    persistence = MockPersistence({'CASE-1': load_sample()})
    controller = FormController(SCHEMA, persistence, source)

    result = controller.open_case('CASE-1')

    assert isinstance(result, FormLoaded)
    assert source.requested == ['CASE-1']
    assert controller.permission('family_details').can_edit is False
    assert controller.permission('personal_details').source == 'default'


def test_open_missing_case():
    controller = FormController(SCHEMA, MockPersistence())

    result = controller.open_case('CASE-404')

    assert isinstance(result, PersistenceFailed)
    assert result.tag == 'NotFound'
    assert not controller.is_loaded


def test_collaborators_validated():
    with pytest.raises(TypeError):
        FormController(SCHEMA, object())

    with pytest.raises(TypeError):
        FormController(SCHEMA, MockPersistence(), permission_source=object())


def test_commands_rejected_before_load():
    controller = FormController(SCHEMA, MockPersistence())

    result = controller.set_field('personal_details.name', 'Ali')

    assert isinstance(result, IllegalCommand)
    assert result.command_type == 'set_field'
    assert controller.snapshot() == {'loaded': False}


# ========================
# Field writes
# ========================

def test_business_income_scenario():
    """Monthly business income drives yearly, totals and surplus"""
    controller, _ = make_controller()

    result = controller.set_field(f'{INCOME}.business_monthly', 1000)

    assert isinstance(result, FieldUpdated)
    store = controller.store
    assert store.get(f'{INCOME}.business_yearly') == 12000
    assert store.get(f'{INCOME}.total_monthly') == 1000
    assert store.get(f'{INCOME}.total_yearly') == 12000
    assert store.get('family_details.income_expense.surplus_monthly') == 1000
    assert store.get('family_details.income_expense.deficit_monthly') == 0
    assert result.changes[0].path == f'{INCOME}.business_monthly'


def test_unknown_and_calculated_paths_rejected():
    controller, _ = make_controller()

    for path in ('personal_details.nickname', f'{INCOME}.total_monthly', 'financial_assistance.total_qardan'):
        result = controller.set_field(path, 5)
        assert isinstance(result, IllegalCommand), path


def test_collection_value_rejected():
    controller, _ = make_controller()

    result = controller.set_field('personal_details.name', ['Ali'])

    assert isinstance(result, IllegalCommand)


def test_denied_write_leaves_store_unchanged():
    controller = FormController(SCHEMA, MockPersistence())
    controller.load_form(load_sample(), fallback_permissions={'family': {'can_read': 1, 'can_update': 0}})
    before = controller.store.snapshot()

    result = controller.set_field(f'{INCOME}.business_monthly', 1)

    assert isinstance(result, PermissionDenied)
    assert result.section_key == 'family_details'
    assert controller.store.snapshot() == before


# ========================
# Rows and aggregates
# ========================

def test_row_edits_sync_group_totals():
    controller, _ = make_controller()

    added = controller.add_row('timeline', {'purpose': 'Stock', 'qardan': 50000, 'enayat': 5000})
    assert isinstance(added, RowAdded)
    assert controller.store.get('financial_assistance.total_qardan') == 50000
    assert controller.store.get('financial_assistance.total_enayat') == 5000

    updated = controller.update_row('timeline', added.row_id, 'qardan', '20,000')
    assert isinstance(updated, RowUpdated)
    assert controller.store.get('financial_assistance.total_qardan') == 20000

    removed = controller.remove_row('timeline', added.row_id)
    assert isinstance(removed, RowRemoved) and removed.removed
    assert controller.store.get('financial_assistance.total_qardan') == 0


def test_family_member_income_total():
    controller, _ = make_controller()
    head = controller.groups.row_ids('family_members')[0]

    controller.update_row('family_members', head, 'monthly_income', 25000)
    controller.add_row('family_members', {'name': 'Fatema', 'monthly_income': 8000})

    assert controller.store.get('family_details.family_income_total') == 33000

    result = controller.remove_row('family_members', head)
    assert isinstance(result, RowRemoved)
    assert result.removed is False
    assert controller.groups.row_count('family_members') == 2


def test_invalid_row_commands():
    controller, _ = make_controller()

    assert isinstance(controller.add_row('pets'), IllegalCommand)
    assert isinstance(controller.remove_row('timeline', 999), IllegalCommand)
    head = controller.groups.row_ids('family_members')[0]
    assert isinstance(controller.update_row('family_members', head, 'salary', 1), IllegalCommand)


# ========================
# Save and complete
# ========================

def test_commit_validates_then_advances():
    controller, persistence = make_controller()

    failed = controller.save_section('personal_details', mode='commit')
    assert isinstance(failed, ValidationFailed)
    assert 'personal_details.name' in failed.missing_paths
    assert persistence.saved == []

    for path, value in (('its_number', '30412345'), ('name', 'Ali'), ('contact_number', '9820012345')):
        controller.set_field(f'personal_details.{path}', value)

    saved = controller.save_section('personal_details', mode='commit')
    assert isinstance(saved, SectionSaved)
    assert saved.next_section == 'family_details'
    assert persistence.saved[0][0] == 'personal_details'


def test_draft_save_includes_group_rows():
    controller, persistence = make_controller()
    controller.add_row('timeline', {'purpose': 'Stock', 'qardan': 100})

    result = controller.save_section('financial_assistance')

    assert isinstance(result, SectionSaved)
    _, payload = persistence.saved[0]
    assert payload['timeline'][0]['purpose'] == 'Stock'
    assert payload['total_qardan'] == 100
    assert payload['qh_fields'][0]['name'] == 'QH1'


def test_save_rejects_bad_mode_and_section():
    controller, _ = make_controller()

    assert isinstance(controller.save_section('personal_details', mode='final'), IllegalCommand)
    assert isinstance(controller.save_section('appendix'), IllegalCommand)


def test_save_without_edit_permission():
    persistence = MockPersistence()
    controller = FormController(SCHEMA, persistence)
    controller.load_form(all_saved_document(), fallback_permissions={'personal': {'can_read': 1, 'can_update': 0}})

    result = controller.save_section('personal_details')

    assert isinstance(result, PermissionDenied)
    assert persistence.saved == []


def test_persistence_failure_passed_through():
    error = PermissionDeniedError("server refused")
    controller, _ = make_controller(persistence=MockPersistence(error=error))

    result = controller.save_section('personal_details')

    assert isinstance(result, PersistenceFailed)
    assert result.error is error
    assert result.section_key == 'personal_details'


def test_concurrent_save_is_busy():
    """A save issued while the same section is in flight is rejected"""
    persistence = MockPersistence()
    controller, _ = make_controller(persistence=persistence)
    inner = []
    persistence.on_save = lambda: inner.append(controller.save_section('personal_details'))

    outer = controller.save_section('personal_details')

    assert isinstance(outer, SectionSaved)
    assert isinstance(inner[0], Busy)
    assert len(persistence.saved) == 1

    # Released once the outer save returns
    persistence.on_save = None
    assert isinstance(controller.save_section('personal_details'), SectionSaved)


def test_completion_busy_when_claimed():
    controller, _ = make_controller(all_saved_document())
    controller._claim('__complete__')

    assert isinstance(controller.complete_form(), Busy)


def test_complete_requires_all_sections():
    controller, persistence = make_controller()

    result = controller.complete_form()

    assert isinstance(result, ValidationFailed)
    assert result.incomplete_sections[0] == 'personal_details'
    assert persistence.completed == []


def test_complete_denied_for_role():
    controller, _ = make_controller(all_saved_document(), can_complete=False)

    assert isinstance(controller.complete_form(), PermissionDenied)


def test_completion_lock_and_rework():
    controller, persistence = make_controller(all_saved_document())

    assert isinstance(controller.complete_form(), FormCompleted)
    assert persistence.completed == ['F-2']

    denied = controller.set_field('personal_details.name', 'Ali')
    assert isinstance(denied, PermissionDenied)
    assert 'rework' in denied.reason
    assert isinstance(controller.save_section('personal_details'), PermissionDenied)
    assert isinstance(controller.complete_form(), PermissionDenied)

    changed = controller.set_case_state('welfare_rejected')
    assert isinstance(changed, CaseStateChanged)
    assert changed.locked is False
    assert isinstance(controller.set_field('personal_details.name', 'Ali'), FieldUpdated)


def test_completed_form_opens_at_first_section():
    controller = FormController(SCHEMA, MockPersistence())

    result = controller.load_form(all_saved_document(is_complete=True, case_status='submitted_to_welfare'))

    assert result.initial_section == 'personal_details'
    assert controller.permission('family_details').can_edit is False


# ========================
# Views and dispatch
# ========================

def test_snapshot_hides_unviewable_sections():
    controller = FormController(SCHEMA, MockPersistence())
    controller.load_form(load_sample(), fallback_permissions={'family': {'can_read': 0, 'can_update': 0}})

    view = controller.snapshot()

    assert view['loaded'] is True
    assert 'family_details' not in view['values']
    assert 'family_members' not in view['groups']
    assert view['values']['personal_details']['name'] == 'Hussain Ali'
    assert view['current_section'] == 'assessment'
    family = next(s for s in view['sections'] if s['key'] == 'family_details')
    assert family['can_view'] is False
    assert family['state'] == 'incomplete'


def test_handle_dispatches_commands():
    controller = FormController(SCHEMA, MockPersistence())

    assert isinstance(controller.handle(LoadForm(document=all_saved_document())), FormLoaded)
    assert isinstance(controller.handle(SetField('personal_details.name', 'Ali')), FieldUpdated)
    assert isinstance(controller.handle(AddRow('timeline')), RowAdded)
    assert isinstance(controller.handle(SaveSection('personal_details', 'draft')), SectionSaved)
    assert isinstance(controller.handle(CompleteForm()), FormCompleted)
    assert isinstance(controller.handle(SetCaseState('welfare_rejected')), CaseStateChanged)

    unknown = controller.handle('not a command')
    assert isinstance(unknown, IllegalCommand)
    assert unknown.command_type == 'str'
