"""
Test Suite for Section Workflow

Covers completion predicates, next-incomplete navigation, draft/commit
saves, completion and the rework re-open.

Run with: python -m pytest tests/test_section_workflow.py
"""

import sys
import os
import unittest
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from form_engine.core.field_store import FieldStore
from form_engine.core.form_schema import GroupSpec, SectionSpec
from form_engine.core.repeating_groups import RepeatingGroupManager
from form_engine.core.section_workflow import SectionState, SectionWorkflow
from form_engine.errors import ValidationFailedError
from form_engine.results import FormCompleted, PersistenceFailed, SectionSaved, ValidationFailed


class MockPersistence:
    """Records calls; optionally fails with a given exception"""

    def __init__(self, error=None):
        self.error = error
        self.saved = []
        self.completed = []

    def save_section_remote(self, form_id, section_key, data):
        if self.error:
            raise self.error
        self.saved.append((form_id, section_key, data))
        return {'section_id': f"{section_key}-{len(self.saved)}"}

    def complete_remote(self, form_id):
        if self.error:
            raise self.error
        self.completed.append(form_id)


SECTIONS = [
    SectionSpec(key='c', order=3, stage_key='c', title='C', required_paths=('c.done',)),
    SectionSpec(key='a', order=1, stage_key='a', title='A', required_paths=('a.name',)),
    SectionSpec(key='b', order=2, stage_key='b', title='B', required_paths=('b.amount', 'b.agreed')),
]

DEFAULTS = {'a.name': '', 'b.amount': None, 'b.agreed': False, 'c.done': False, 'c.note': ''}


def make_workflow(persistence=None, **kwargs):
    store = FieldStore(DEFAULTS)
    groups = RepeatingGroupManager([
        GroupSpec(name='items', section='b', document_key='items', fixed_row_count=0, fields=(('label', ''),))
    ])
    workflow = SectionWorkflow(SECTIONS, store, groups, persistence or MockPersistence(), form_id='F1', **kwargs)
    return workflow, store, groups


# =============================================================================
# PART 1: Completion and navigation
# =============================================================================

class TestNavigation(unittest.TestCase):

    def test_sections_sorted_by_order(self):
        workflow, _, _ = make_workflow()
        self.assertEqual([s.key for s in workflow.sections], ['a', 'b', 'c'])

    def test_next_incomplete_ordering(self):
        workflow, store, _ = make_workflow()

        store.set('a.name', 'Ali')
        self.assertEqual(workflow.next_incomplete_section(), 'b')

        store.set('b.amount', 0)
        store.set('b.agreed', True)
        self.assertEqual(workflow.next_incomplete_section(), 'c')

        store.set('c.done', True)
        self.assertEqual(workflow.next_incomplete_section(), 'c')

    def test_value_validity_rules(self):
        workflow, store, _ = make_workflow()

        store.set('a.name', '   ')
        store.set('b.amount', 0)
        self.assertEqual(workflow.missing_paths('a'), ['a.name'])
        self.assertEqual(workflow.missing_paths('b'), ['b.agreed'])

    def test_server_id_marks_section_complete(self):
        workflow, _, _ = make_workflow(section_ids={'a': 11})

        self.assertTrue(workflow.is_section_complete('a'))
        self.assertEqual(workflow.next_incomplete_section(), 'b')
        self.assertEqual(workflow.state('a'), SectionState.SAVED)
        self.assertEqual(workflow.state('b'), SectionState.INCOMPLETE)

    def test_initial_section(self):
        workflow, store, _ = make_workflow()
        store.set('a.name', 'Ali')
        self.assertEqual(workflow.initial_section(), 'b')

        completed, _, _ = make_workflow(form_complete=True)
        self.assertEqual(completed.initial_section(), 'a')

    def test_unknown_section_raises(self):
        workflow, _, _ = make_workflow()
        with self.assertRaises(ValueError):
            workflow.missing_paths('zzz')


# =============================================================================
# PART 2: Saving
# =============================================================================

class TestSaving(unittest.TestCase):

    def test_draft_saves_without_validation(self):
        persistence = MockPersistence()
        workflow, _, groups = make_workflow(persistence)
        groups.add_row('items', {'label': 'first'})

        result = workflow.save_draft('b')

        self.assertIsInstance(result, SectionSaved)
        self.assertEqual(result.mode, 'draft')
        self.assertIsNone(result.next_section)
        form_id, key, payload = persistence.saved[0]
        self.assertEqual((form_id, key), ('F1', 'b'))
        self.assertEqual(payload, {'amount': None, 'agreed': False, 'items': [{'label': 'first'}]})
        self.assertEqual(workflow.section_ids['b'], 'b-1')

    def test_commit_requires_required_paths(self):
        persistence = MockPersistence()
        workflow, _, _ = make_workflow(persistence)

        result = workflow.save_and_advance('a')

        self.assertIsInstance(result, ValidationFailed)
        self.assertEqual(result.missing_paths, ('a.name',))
        self.assertEqual(persistence.saved, [])

    def test_commit_advances(self):
        workflow, store, _ = make_workflow()
        store.set('a.name', 'Ali')

        result = workflow.save_and_advance('a')

        self.assertIsInstance(result, SectionSaved)
        self.assertEqual(result.next_section, 'b')
        self.assertEqual(workflow.state('a'), SectionState.SAVED)

    def test_failed_save_changes_nothing(self):
        error = ValidationFailedError("rejected by server")
        workflow, store, _ = make_workflow(MockPersistence(error=error))
        store.set('a.name', 'Ali')
        before = store.snapshot()

        result = workflow.save_and_advance('a')

        self.assertIsInstance(result, PersistenceFailed)
        self.assertIs(result.error, error)
        self.assertEqual(result.tag, 'ValidationFailed')
        self.assertIsNone(workflow.section_ids['a'])
        self.assertEqual(store.snapshot(), before)


# =============================================================================
# PART 3: Completion and lock
# =============================================================================

class TestCompletion(unittest.TestCase):

    def test_complete_requires_all_sections(self):
        persistence = MockPersistence()
        workflow, store, _ = make_workflow(persistence)
        store.set('a.name', 'Ali')

        result = workflow.complete()

        self.assertIsInstance(result, ValidationFailed)
        self.assertEqual(result.incomplete_sections, ('b', 'c'))
        self.assertEqual(persistence.completed, [])
        self.assertFalse(workflow.form_complete)

    def test_complete_locks_until_rework(self):
        persistence = MockPersistence()
        workflow, _, _ = make_workflow(persistence, section_ids={'a': 1, 'b': 2, 'c': 3},
                                       case_state='in_counseling')

        result = workflow.complete()

        self.assertIsInstance(result, FormCompleted)
        self.assertEqual(persistence.completed, ['F1'])
        self.assertTrue(workflow.is_locked)
        self.assertEqual(workflow.state('b'), SectionState.LOCKED)

        workflow.set_case_state('welfare_rejected')
        self.assertFalse(workflow.is_locked)
        self.assertEqual(workflow.state('b'), SectionState.SAVED)


if __name__ == '__main__':
    unittest.main(verbosity=2)
