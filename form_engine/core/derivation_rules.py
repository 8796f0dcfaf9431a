"""
Derivation rule factories and schema-tagged rule sets.

Rule families:
- monthly_yearly: two counterpart rules per base path
  (yearly = monthly * factor, monthly = yearly / factor)
- sum: output = sum of inputs
- linear: output = sum(coefficient * input)
- sign_split: difference routed into exactly one of two outputs
  (positive side gets max(diff, 0), negative side gets max(-diff, 0))

Rule sets live in data/derivation_rules.json. Each schema version lists the
rule groups it uses, so older documents (e.g. cash surplus without the
other-income term) run on the same engine with a different rule set.

Usage:
    from form_engine.core.derivation_rules import build_graph
    graph = build_graph(schema_version=2)
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from form_engine.config import DEFAULT_RULES_PATH
from form_engine.contracts import DerivationRule
from form_engine.core.derivation_graph import DerivationGraph
from form_engine.core.form_schema import expand_columns
from form_engine.errors import SchemaError
from form_engine.utils.helpers import to_number

logger = logging.getLogger(__name__)


# =========================================================================
# Factories
# =========================================================================

def scale_rule(rule_id: str, source: str, target: str, factor: float,
               counterpart: str | None = None) -> DerivationRule:
    """target = source * factor"""
    return DerivationRule(
        id=rule_id,
        inputs=(source,),
        output=target,
        compute=lambda values, factor=factor: to_number(values[0]) * factor,
        counterpart=counterpart,
    )


def monthly_yearly_pair(base: str, factor: float = 12) -> Tuple[DerivationRule, DerivationRule]:
    """
    Build the two directed rules for a monthly/yearly field pair.

    Args:
        base: Path without suffix, e.g.
              'family_details.income_expense.income.business'
        factor: Months per year

    Returns:
        (monthly_to_yearly, yearly_to_monthly), each naming the other
        as counterpart
    """
    monthly, yearly = f"{base}_monthly", f"{base}_yearly"
    to_yearly_id, to_monthly_id = f"{base}:m2y", f"{base}:y2m"

    to_yearly = scale_rule(to_yearly_id, monthly, yearly, factor, counterpart=to_monthly_id)
    to_monthly = scale_rule(to_monthly_id, yearly, monthly, 1.0 / factor, counterpart=to_yearly_id)
    return to_yearly, to_monthly


def sum_rule(rule_id: str, inputs: Sequence[str], output: str) -> DerivationRule:
    """output = sum(inputs), unset/unparseable inputs count as 0"""
    return DerivationRule(
        id=rule_id,
        inputs=tuple(inputs),
        output=output,
        compute=lambda values: sum(to_number(v) for v in values),
    )


def linear_rule(rule_id: str, terms: Sequence[Tuple[str, float]], output: str) -> DerivationRule:
    """
    output = sum(coefficient * input)

    Example:
        profit = linear_rule('profit', [('revenue', 1), ('expenses', -1)], 'profit')
    """
    coefficients = tuple(float(coef) for _, coef in terms)
    return DerivationRule(
        id=rule_id,
        inputs=tuple(path for path, _ in terms),
        output=output,
        compute=lambda values, coefficients=coefficients: sum(
            coef * to_number(v) for coef, v in zip(coefficients, values)
        ),
    )


def sign_split_rules(rule_id: str, minuend: str, subtrahend: str,
                     positive: str, negative: str) -> Tuple[DerivationRule, DerivationRule]:
    """
    Route (minuend - subtrahend) into exactly one of two outputs.

    Surplus/deficit: the positive output holds the difference when it is
    above zero, the negative output holds its magnitude when below. At
    break-even both are exactly 0.0, never -0.0.
    """
    def positive_part(values):
        diff = to_number(values[0]) - to_number(values[1])
        return diff if diff > 0 else 0.0

    def negative_part(values):
        diff = to_number(values[1]) - to_number(values[0])
        return diff if diff > 0 else 0.0

    return (
        DerivationRule(id=f"{rule_id}.positive", inputs=(minuend, subtrahend),
                       output=positive, compute=positive_part),
        DerivationRule(id=f"{rule_id}.negative", inputs=(minuend, subtrahend),
                       output=negative, compute=negative_part),
    )


# =========================================================================
# Rule set loading
# =========================================================================

def _build_definition(definition: Dict[str, Any], columns: Dict[str, List[str]]) -> List[DerivationRule]:
    """Turn one JSON rule definition into concrete rules"""
    kind = definition.get('kind')

    if kind == 'monthly_yearly':
        factor = definition.get('factor', 12)
        rules: List[DerivationRule] = []
        for base in definition.get('bases', []):
            rules.extend(monthly_yearly_pair(base, factor))
        return rules

    column_set = definition.get('columns')
    if column_set is not None and column_set not in columns:
        raise SchemaError(f"Rule {definition.get('id')} uses unknown column set {column_set}")
    col_values = columns.get(column_set) if column_set else [None]

    rules = []
    for col in col_values:
        def expand(template: str, col=col) -> str:
            return expand_columns(template, [col])[0] if col else template

        rule_id = f"{definition['id']}.{col}" if col else definition['id']

        if kind == 'sum':
            rules.append(sum_rule(rule_id, [expand(p) for p in definition['inputs']],
                                  expand(definition['output'])))
        elif kind == 'linear':
            terms = [(expand(path), coef) for path, coef in definition['terms']]
            rules.append(linear_rule(rule_id, terms, expand(definition['output'])))
        elif kind == 'sign_split':
            rules.extend(sign_split_rules(
                rule_id,
                expand(definition['minuend']),
                expand(definition['subtrahend']),
                expand(definition['positive']),
                expand(definition['negative']),
            ))
        else:
            raise SchemaError(f"Unknown rule kind: {kind!r}")
    return rules


def load_rule_set(schema_version: int, rules_path: str = DEFAULT_RULES_PATH) -> List[DerivationRule]:
    """
    Load the rules used by a given document schema version.

    Args:
        schema_version: Canonical document version (after migration)
        rules_path: Path to derivation_rules.json

    Returns:
        list[DerivationRule] in definition order

    Raises:
        FileNotFoundError: If rules file doesn't exist
        SchemaError: If the version or a referenced rule group is unknown
    """
    path = Path(rules_path)
    if not path.exists():
        raise FileNotFoundError(f"Derivation rules not found: {rules_path}")

    with open(path, 'r') as f:
        raw = json.load(f)

    versions = raw.get('schema_versions', {})
    group_names = versions.get(str(schema_version))
    if group_names is None:
        raise SchemaError(
            f"No rule set for schema version {schema_version} (available: {sorted(versions)})"
        )

    rule_groups = raw.get('rule_groups', {})
    columns = raw.get('columns', {})

    rules: List[DerivationRule] = []
    for name in group_names:
        if name not in rule_groups:
            raise SchemaError(f"Schema version {schema_version} references unknown rule group {name}")
        for definition in rule_groups[name]:
            rules.extend(_build_definition(definition, columns))

    logger.info(f"Loaded {len(rules)} derivation rules for schema v{schema_version}")
    return rules


def build_graph(schema_version: int, rules_path: str = DEFAULT_RULES_PATH) -> DerivationGraph:
    """Load a rule set and register it into a fresh DerivationGraph"""
    graph = DerivationGraph()
    graph.register_all(load_rule_set(schema_version, rules_path))
    return graph
