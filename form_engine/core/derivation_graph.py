"""
Derivation Graph - Derived-field rules with recompute-on-change propagation

Responsibilities:
- Register derived-field rules, rejecting cycles at registration time
- On a field write, recompute every dependent rule transitively
- Stop on value equality (numbers within epsilon), not on iteration count
- Evaluate all aggregate rules once after a form load

Design principles:
- Rules are pure: compute(inputs) -> value, no access to the store
- Cycles are programming errors (DerivationCycleError), never user errors
- Propagation is synchronous and runs to a fixed point

Bidirectional pairs (monthly <-> yearly):
- Modelled as two one-input rules that name each other as counterpart
- Every derived write is tagged with the rule id that produced it
- When propagating a write tagged with rule X, neither X nor X's
  counterpart is re-run, so 12x then /12 can never feed back
- Counterpart edges are the only edges exempt from cycle detection
"""

import logging
from collections import deque
from typing import Dict, Iterable, List, Optional

from form_engine.config import NUMERIC_EPSILON
from form_engine.contracts import DerivationRule, FieldChange
from form_engine.errors import DerivationCycleError
from form_engine.utils.helpers import is_valid_value, values_equal

logger = logging.getLogger(__name__)


class DerivationGraph:
    """Acyclic set of derived-field rules"""

    def __init__(self, epsilon: float = NUMERIC_EPSILON):
        self.epsilon = epsilon
        self._rules: Dict[str, DerivationRule] = {}
        self._by_input: Dict[str, List[str]] = {}
        self._by_output: Dict[str, List[str]] = {}

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules

    # ========================
    # Registration
    # ========================

    def register(self, rule: DerivationRule) -> None:
        """
        Add a rule to the graph.

        Args:
            rule: DerivationRule to add

        Raises:
            ValueError: If a rule with the same id exists
            DerivationCycleError: If output is among inputs, or the rule
                closes a cycle through other rules
        """
        if rule.id in self._rules:
            raise ValueError(f"Duplicate derivation rule id: {rule.id}")

        if rule.output in rule.inputs:
            raise DerivationCycleError(f"Rule {rule.id} reads its own output {rule.output}")

        self._rules[rule.id] = rule
        for path in rule.inputs:
            self._by_input.setdefault(path, []).append(rule.id)
        self._by_output.setdefault(rule.output, []).append(rule.id)

        cycle = self._find_cycle_through(rule.id)
        if cycle:
            self._unregister(rule)
            raise DerivationCycleError(f"Rule {rule.id} introduces a cycle: {' -> '.join(cycle)}")

        logger.debug(f"Registered rule {rule.id}: {list(rule.inputs)} -> {rule.output}")

    def register_all(self, rules: Iterable[DerivationRule]) -> None:
        for rule in rules:
            self.register(rule)

    def _unregister(self, rule: DerivationRule) -> None:
        del self._rules[rule.id]
        for path in rule.inputs:
            self._by_input[path].remove(rule.id)
        self._by_output[rule.output].remove(rule.id)

    def _is_pair(self, first: DerivationRule, second: DerivationRule) -> bool:
        return first.counterpart == second.id or second.counterpart == first.id

    def _successors(self, rule: DerivationRule) -> List[DerivationRule]:
        """Rules that read this rule's output, excluding its counterpart"""
        result = []
        for rule_id in self._by_input.get(rule.output, []):
            successor = self._rules[rule_id]
            if not self._is_pair(rule, successor):
                result.append(successor)
        return result

    def _find_cycle_through(self, start_id: str) -> Optional[List[str]]:
        """
        Depth-first search for a path from start back to itself.

        The graph was acyclic before start was added, so any new cycle
        must pass through it.
        """
        start = self._rules[start_id]
        stack = [(start, [start.id])]
        visited = set()

        while stack:
            rule, trail = stack.pop()
            for successor in self._successors(rule):
                if successor.id == start_id:
                    return trail + [start_id]
                if successor.id not in visited:
                    visited.add(successor.id)
                    stack.append((successor, trail + [successor.id]))
        return None

    # ========================
    # Propagation
    # ========================

    def _evaluate(self, store, rule: DerivationRule) -> Optional[FieldChange]:
        values = tuple(store.get(path) for path in rule.inputs)
        new_value = rule.compute(values)
        current = store.get(rule.output)

        if values_equal(current, new_value, self.epsilon):
            return None

        return store.write_derived(rule.output, new_value, origin=rule.id)

    def recompute(self, store, changed_path: str, origin: Optional[str] = None) -> List[FieldChange]:
        """
        Propagate a change through dependent rules until nothing changes.

        Args:
            store: FieldStore holding current values
            changed_path: Path that was just written
            origin: Rule id that wrote changed_path (None for user writes)

        Returns:
            list[FieldChange]: Derived writes in application order
        """
        changes: List[FieldChange] = []
        queue = deque([(changed_path, origin)])

        while queue:
            path, source = queue.popleft()

            skipped = set()
            if source is not None:
                skipped.add(source)
                source_rule = self._rules.get(source)
                if source_rule is not None and source_rule.counterpart:
                    skipped.add(source_rule.counterpart)

            for rule_id in list(self._by_input.get(path, [])):
                if rule_id in skipped:
                    continue

                change = self._evaluate(store, self._rules[rule_id])
                if change is not None:
                    changes.append(change)
                    queue.append((change.path, rule_id))

        if changes:
            logger.debug(f"{changed_path}: propagated {len(changes)} derived changes")
        return changes

    def recompute_all(self, store) -> List[FieldChange]:
        """
        Settle a freshly hydrated store.

        Used after hydrating a store so totals and balances agree with the
        loaded inputs:
        1. A monthly/yearly pair with only one side loaded gets the other
           side from that side's rule. Pairs with both sides loaded are
           left alone so neither overwrites the other.
        2. Every unpaired rule runs once, in dependency order.
        """
        changes: List[FieldChange] = []
        for rule in self._rules.values():
            if rule.counterpart is None or not self._one_side_loaded(store, rule):
                continue
            change = self._evaluate(store, rule)
            if change is not None:
                changes.append(change)

        for rule in self.topological_order():
            change = self._evaluate(store, rule)
            if change is not None:
                changes.append(change)

        logger.info(f"Recomputed {len(changes)} derived fields after load")
        return changes

    @staticmethod
    def _one_side_loaded(store, rule: DerivationRule) -> bool:
        source = rule.inputs[0]
        if not (store.has(source) and is_valid_value(store.get(source))):
            return False
        return not (store.has(rule.output) and is_valid_value(store.get(rule.output)))

    def topological_order(self) -> List[DerivationRule]:
        """Unpaired rules ordered so producers come before consumers"""
        unpaired = {rid: r for rid, r in self._rules.items() if r.counterpart is None}

        indegree = {rid: 0 for rid in unpaired}
        for rule in unpaired.values():
            for successor in self._successors(rule):
                if successor.id in indegree:
                    indegree[successor.id] += 1

        ready = deque(rid for rid in unpaired if indegree[rid] == 0)
        ordered = []
        while ready:
            rule = unpaired[ready.popleft()]
            ordered.append(rule)
            for successor in self._successors(rule):
                if successor.id in indegree:
                    indegree[successor.id] -= 1
                    if indegree[successor.id] == 0:
                        ready.append(successor.id)
        return ordered

    # ========================
    # Queries
    # ========================

    def rules_for_input(self, path: str) -> List[DerivationRule]:
        return [self._rules[rid] for rid in self._by_input.get(path, [])]

    def derived_paths(self) -> set:
        """
        Outputs of unpaired rules.

        These are read-only to users; paired outputs (monthly/yearly) stay
        editable because either side may be typed.
        """
        return {r.output for r in self._rules.values() if r.counterpart is None}
