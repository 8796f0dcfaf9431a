"""
Field Store - Mutable form state keyed by dotted paths

Responsibilities:
- Hold every scalar form value in a single nested mapping
- Return declared defaults for unset paths
- Notify subscribers of changes (exact path or dotted prefix)
- Trigger derived-field propagation synchronously on every user write

Design principles:
- One owned instance per form session, passed explicitly (no singletons)
- Scalar leaves only: repeating data lives in RepeatingGroupManager
- Last-write-wins per path
- Reads return deep copies; callers never hold references into the store

CRITICAL: Propagation happens inside set()
- set() returns only after the bound DerivationGraph reached a fixed point
- Anyone reading the store after set() sees a consistent derived state
- Derived writes go through write_derived(), which never re-enters set()
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from form_engine.contracts import FieldChange
from form_engine.utils.helpers import get_nested, iter_leaves, set_nested, split_path

logger = logging.getLogger(__name__)

Listener = Callable[[FieldChange], None]

_UNSET = object()


class FieldStore:
    """Nested path -> value store with change events"""

    def __init__(self, defaults: Optional[Dict[str, Any]] = None):
        """
        Initialize empty store.

        Args:
            defaults: Declared fields mapped to their default value. When
                      provided, only declared paths can be written. When
                      None, any path is accepted and defaults to None.
        """
        self._defaults: Optional[Dict[str, Any]] = dict(defaults) if defaults is not None else None
        self._values: Dict[str, Any] = {}
        self._listeners: List[tuple] = []
        self._graph = None

        logger.debug(
            f"FieldStore initialized ({len(self._defaults) if self._defaults is not None else 'open'} declared fields)"
        )

    @classmethod
    def from_schema(cls, schema) -> "FieldStore":
        """Build a store whose declared fields come from a FormSchema"""
        return cls({path: spec.default for path, spec in schema.fields.items()})

    # ========================
    # Private Helpers
    # ========================

    def _validate_path(self, path: str) -> None:
        """
        Raises:
            ValueError: If path is malformed or not declared
        """
        split_path(path)
        if self._defaults is not None and path not in self._defaults:
            raise ValueError(f"Undeclared form path: {path}")

    def _validate_value(self, path: str, value: Any) -> None:
        if isinstance(value, (dict, list, tuple, set)):
            raise TypeError(f"{path}: collections are not field values (use a repeating group)")

    def _raw_get(self, path: str) -> Any:
        value = get_nested(self._values, path, _UNSET)
        if value is _UNSET:
            return self.default_for(path)
        return value

    def _notify(self, change: FieldChange) -> None:
        for prefix, listener in list(self._listeners):
            if not prefix or change.path == prefix or change.path.startswith(prefix + '.'):
                listener(change)

    # ========================
    # Reads
    # ========================

    def default_for(self, path: str) -> Any:
        """Declared default for a path (None for undeclared paths)"""
        if self._defaults is None:
            return None
        return copy.deepcopy(self._defaults.get(path))

    def is_declared(self, path: str) -> bool:
        return self._defaults is None or path in self._defaults

    def get(self, path: str) -> Any:
        """
        Get a field value.

        Unset paths return the declared default ('' for strings, 0 or
        None for numbers as declared). Paths not declared in the schema
        return None.

        Example:
            total = store.get('family_details.income_expense.income.total_monthly')
        """
        split_path(path)
        return self._raw_get(path)

    def has(self, path: str) -> bool:
        """True if the path was explicitly written (hydrate or set)"""
        return get_nested(self._values, path, _UNSET) is not _UNSET

    # ========================
    # Writes
    # ========================

    def bind_graph(self, graph) -> None:
        """Attach the DerivationGraph that set() propagates through"""
        self._graph = graph

    def set(self, path: str, value: Any, origin: Optional[str] = None) -> List[FieldChange]:
        """
        Set a field value and propagate derived fields.

        Args:
            path: Dotted form path
            value: Scalar value (number, string, boolean, None)
            origin: Rule id that produced the write (None for user writes)

        Returns:
            list[FieldChange]: The direct write followed by every derived
            write it caused. Empty if the value did not change.

        Raises:
            ValueError: If path is malformed or undeclared
            TypeError: If value is a collection
        """
        change = self.write_derived(path, value, origin)
        if change is None:
            return []

        changes = [change]
        if self._graph is not None:
            changes.extend(self._graph.recompute(self, path, origin=origin))
        return changes

    def write_derived(self, path: str, value: Any, origin: Optional[str] = None) -> Optional[FieldChange]:
        """
        Store a value and emit its change event without propagating.

        Used by DerivationGraph, which drives propagation itself.

        Returns:
            FieldChange if the stored value changed, None otherwise
        """
        self._validate_path(path)
        self._validate_value(path, value)

        old_value = self._raw_get(path)
        if self.has(path) and old_value == value and type(old_value) is type(value):
            return None

        set_nested(self._values, path, copy.deepcopy(value))
        change = FieldChange(path=path, old_value=old_value, new_value=value, origin=origin)

        logger.debug(f"{path} = {value!r} (origin={origin})")
        self._notify(change)
        return change

    def hydrate(self, values: Dict[str, Any]) -> int:
        """
        Bulk load values from a nested mapping (form load).

        No events, no propagation. Undeclared leaves are skipped with a
        warning rather than failing the whole load.

        Args:
            values: Nested dict, e.g. a persisted document's section objects

        Returns:
            int: Number of leaves stored
        """
        stored = 0
        for path, value in iter_leaves(values):
            if not self.is_declared(path):
                logger.warning(f"Skipping undeclared field on hydrate: {path}")
                continue
            if isinstance(value, (list, tuple, set)):
                logger.warning(f"Skipping collection value on hydrate: {path}")
                continue
            set_nested(self._values, path, copy.deepcopy(value))
            stored += 1

        logger.info(f"FieldStore hydrated with {stored} values")
        return stored

    # ========================
    # Subscriptions
    # ========================

    def subscribe(self, path_or_prefix: str, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Args:
            path_or_prefix: Exact path, dotted prefix (e.g. 'family_details'),
                            or '' for every change
            listener: Called with a FieldChange after each applied write

        Returns:
            Callable that removes the subscription
        """
        entry = (path_or_prefix, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    # ========================
    # Export Methods
    # ========================

    def export_section(self, section_key: str) -> Dict[str, Any]:
        """
        Nested copy of one section's values, defaults filled in.

        Returns:
            dict: {'income_expense': {...}, ...} for 'family_details'
        """
        result: Dict[str, Any] = {}
        prefix = section_key + '.'

        declared = self._defaults.keys() if self._defaults is not None else []
        for path in declared:
            if path.startswith(prefix):
                set_nested(result, path[len(prefix):], self._raw_get(path))

        stored = get_nested(self._values, section_key, {})
        if isinstance(stored, dict):
            for path, value in iter_leaves(stored):
                set_nested(result, path, copy.deepcopy(value))

        return result

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of every explicitly stored value"""
        return copy.deepcopy(self._values)
