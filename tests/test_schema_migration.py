"""
Test load-time document migration (legacy flat -> nested, version detection)
"""

import json
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from form_engine.core.schema_migration import detect_version, migrate


def legacy_document():
    return {
        'personal_details': {'id': 31, 'name': 'Hussain Ali'},
        'family_details': {
            'id': 42,
            'income_business_monthly': 25000,
            'income_business_yearly': 300000,
            'expense_food_monthly': 12000,
            'wellbeing_food': 'Adequate',
            'assets_residential': 0,
            'liabilities_goods_credit': 20000,
            'surplus_monthly': 13000,
            'other_details': 'none',
            'family_members': json.dumps([{'name': 'Hussain Ali', 'relation': 'Self'}]),
        },
        'assessment': {
            'background_education': 'Graduate',
            'proposed_business_name': 'Ali Hardware',
            'trade_mark': 'Yes',
        },
        'financial_assistance': {
            'qh_fields': [{'qh_name': 'QH1', 'year1': 1000}],
            'timeline': [{'timeline': 'Stock purchase', 'qardan': 50000}],
        },
        'economic_growth': None,
    }


# ========== Version detection ==========

@pytest.mark.parametrize('document,expected', [
    ({'schema_version': 2, 'family_details': {'income_business_monthly': 1}}, 2),
    ({'family_details': {'income_business_monthly': 1}}, 0),
    ({'family_details': {'income_expense': {}}, 'economic_growth': {'profit_other_income_year1': 0}}, 2),
    ({'family_details': {'income_expense': {}}, 'economic_growth': {'revenue_sales_year1': 0}}, 1),
    ({}, 1),
])
def test_detect_version(document, expected):
    assert detect_version(document) == expected


def test_newer_document_rejected():
    with pytest.raises(ValueError):
        migrate({'schema_version': 3})


@pytest.mark.parametrize('explicit', ['abc', '', [2]])
def test_unreadable_version_detected_from_content(explicit):
    warnings = []

    assert detect_version({'schema_version': explicit, 'family_details': {'income_salary': 1}}, warnings) == 0
    assert [w.path for w in warnings] == ['schema_version']


def test_unreadable_version_is_not_fatal():
    result = migrate({
        'schema_version': 'v2',
        'economic_growth': {'profit_other_income_year1': 0},
    })

    assert result.schema_version == 2
    assert result.document['schema_version'] == 2
    assert len(result.warnings) == 1
    assert result.warnings[0].path == 'schema_version'
    assert result.warnings[0].applied_default is None


# ========== Legacy flat upgrade ==========

def test_nested_section_in_legacy_document_kept():
    result = migrate({
        'schema_version': 0,
        'family_details': {
            'income_expense': {'income': {'business_monthly': 4000, 'business_yearly': 48000}},
            'family_members': [],
            'other_details': 'none',
        },
        'assessment': {'background_education': 'BCom'},
    })

    family = result.document['family_details']
    assert result.schema_version == 1
    assert result.warnings == []
    assert family['income_expense'] == {'income': {'business_monthly': 4000, 'business_yearly': 48000}}
    assert family['family_members'] == []
    assert family['other_details'] == 'none'
    assert result.document['assessment'] == {'background': {'education': 'BCom'}}

def test_legacy_flat_sections_nested():
    result = migrate(legacy_document())
    family = result.document['family_details']

    assert result.source_version == 0
    assert result.schema_version == 1
    assert result.document['schema_version'] == 1
    assert family['income_expense']['income'] == {'business_monthly': 25000, 'business_yearly': 300000}
    assert family['income_expense']['expenses']['food_monthly'] == 12000
    assert family['income_expense']['surplus_monthly'] == 13000
    assert family['wellbeing'] == {'food': 'Adequate'}
    assert family['assets_liabilities']['liabilities']['goods_credit'] == 20000
    assert family['other_details'] == 'none'

    assessment = result.document['assessment']
    assert assessment['background']['education'] == 'Graduate'
    assert assessment['proposed_business']['business_name'] == 'Ali Hardware'
    assert assessment['proposed_business']['trade_mark'] == 'Yes'
    assert result.warnings == []


def test_input_document_untouched():
    document = legacy_document()
    before = json.dumps(document, sort_keys=True)

    migrate(document)

    assert json.dumps(document, sort_keys=True) == before


def test_unqualified_amount_treated_as_monthly():
    result = migrate({'family_details': {'income_business': 5000}})

    assert result.document['family_details']['income_expense']['income']['business_monthly'] == 5000
    assert len(result.warnings) == 1
    warning = result.warnings[0]
    assert warning.path == 'family_details.income_business'
    assert warning.applied_default == 'family_details.income_expense.income.business_monthly'


@pytest.mark.parametrize('section', [
    {'income_business_monthly': 7000, 'income_business': 5000},
    {'income_business': 5000, 'income_business_monthly': 7000},
])
def test_explicit_monthly_value_wins(section):
    result = migrate({'family_details': section})

    assert result.document['family_details']['income_expense']['income']['business_monthly'] == 7000
    assert len(result.warnings) == 1


# ========== Ids, rows and sections ==========

def test_section_ids_moved_to_top_level():
    result = migrate(legacy_document())
    document = result.document

    assert document['personal_details_id'] == 31
    assert document['family_details_id'] == 42
    assert 'id' not in document['family_details']
    assert document['assessment_id'] is None


def test_existing_top_level_id_kept():
    result = migrate({'schema_version': 2, 'declaration_id': 9, 'declaration': {'id': 5}})

    assert result.document['declaration_id'] == 9
    assert 'id' not in result.document['declaration']


def test_rows_decoded_and_renamed():
    result = migrate(legacy_document())
    document = result.document

    assert document['family_details']['family_members'] == [{'name': 'Hussain Ali', 'relation': 'Self'}]
    assert document['financial_assistance']['qh_fields'][0] == {'name': 'QH1', 'year1': 1000}
    assert document['financial_assistance']['timeline'][0]['purpose'] == 'Stock purchase'
    assert 'timeline' not in document['financial_assistance']['timeline'][0]


def test_unparseable_rows_dropped_with_warning():
    result = migrate({'schema_version': 2, 'family_details': {'family_members': '[{broken'}})

    assert result.document['family_details']['family_members'] == []
    assert [w.path for w in result.warnings] == ['family_details.family_members']


def test_null_sections_normalized():
    result = migrate(legacy_document())

    assert result.document['economic_growth'] == {}
    assert result.document['declaration'] == {}
    assert result.document['attachments'] == {}


def test_v1_document_not_upgraded():
    result = migrate({'family_details': {'income_expense': {'income': {'salary_monthly': 1}}}})

    assert result.source_version == 1
    assert result.schema_version == 1
