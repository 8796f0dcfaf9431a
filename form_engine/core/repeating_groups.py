"""
Repeating Group Manager - Ordered collections of uniform rows

Responsibilities:
- Hold the rows of every repeating group (family members, QH repayment
  tranches, timeline, action plan, mentors, projections)
- Add / remove / update rows by stable row_id
- Keep fixed leading rows (e.g. the applicant's own family entry, QH1)
- Sequential naming (QH1, QH2, ...) that stays unique after removals
- Column aggregates for table footers

CRITICAL: row_id vs position
- row_id is an engine-assigned integer, unique per manager, never reused
- Position in the list is display order only
- Removing or inserting rows never changes another row's row_id
- NEVER address a row by its list index from outside this module
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from form_engine.core.form_schema import GroupSpec
from form_engine.utils.helpers import to_number

logger = logging.getLogger(__name__)


@dataclass
class Row:
    """One row of a repeating group"""
    row_id: int
    values: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'row_id': self.row_id, **copy.deepcopy(self.values)}


class RepeatingGroupManager:
    """CRUD over the repeating groups of one form session"""

    def __init__(self, groups: Iterable[GroupSpec]):
        """
        Args:
            groups: Group definitions (usually FormSchema.groups.values())
        """
        self._specs: Dict[str, GroupSpec] = {g.name: g for g in groups}
        self._rows: Dict[str, List[Row]] = {name: [] for name in self._specs}
        self._next_row_id = 1

        for spec in self._specs.values():
            self._pad_fixed_rows(spec)

        logger.debug(f"RepeatingGroupManager initialized with groups {sorted(self._specs)}")

    @classmethod
    def from_schema(cls, schema) -> "RepeatingGroupManager":
        return cls(schema.groups.values())

    # ========================
    # Private Helpers
    # ========================

    def _spec(self, group: str) -> GroupSpec:
        """
        Raises:
            ValueError: If group is not declared
        """
        if group not in self._specs:
            raise ValueError(f"Unknown repeating group: {group}")
        return self._specs[group]

    def _index_of(self, group: str, row_id: int) -> int:
        """
        Raises:
            ValueError: If row_id is not in the group
        """
        for index, row in enumerate(self._rows[group]):
            if row.row_id == row_id:
                return index
        raise ValueError(f"Row {row_id} does not exist in group {group}")

    def _new_row(self, spec: GroupSpec, values: Optional[Dict[str, Any]] = None) -> Row:
        row_values = spec.blank_row()
        if values:
            row_values.update(copy.deepcopy(values))

        if spec.naming_field and not row_values.get(spec.naming_field):
            row_values[spec.naming_field] = self._next_sequence_name(spec)

        row = Row(row_id=self._next_row_id, values=row_values)
        self._next_row_id += 1
        return row

    def _next_sequence_name(self, spec: GroupSpec) -> str:
        """
        Next sequential name: max existing numeric suffix + 1.

        Using max (not row count) keeps names unique after removals:
        QH1, QH2, QH3 -> remove QH2 -> next is QH4.
        """
        pattern = re.compile(rf"^{re.escape(spec.naming_prefix or '')}(\d+)$")
        highest = 0
        for row in self._rows[spec.name]:
            match = pattern.match(str(row.values.get(spec.naming_field, '')))
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{spec.naming_prefix or ''}{highest + 1}"

    def _pad_fixed_rows(self, spec: GroupSpec) -> None:
        while len(self._rows[spec.name]) < spec.fixed_row_count:
            self._rows[spec.name].append(self._new_row(spec))

    # ========================
    # Row Management
    # ========================

    def hydrate(self, group: str, rows: Optional[List[Dict[str, Any]]]) -> int:
        """
        Replace a group's rows with persisted data.

        Rows get fresh row_ids; server-side keys (e.g. 'id') are kept in the
        row values. The group is padded up to fixed_row_count.

        Returns:
            int: Number of rows after hydration
        """
        spec = self._spec(group)
        self._rows[group] = []

        for data in rows or []:
            if not isinstance(data, dict):
                logger.warning(f"Skipping non-object row in group {group}: {data!r}")
                continue
            self._rows[group].append(self._new_row(spec, data))

        self._pad_fixed_rows(spec)
        logger.debug(f"Group {group} hydrated with {len(self._rows[group])} rows")
        return len(self._rows[group])

    def add_row(self, group: str, initial_values: Optional[Dict[str, Any]] = None) -> int:
        """
        Append a row.

        Args:
            group: Group name
            initial_values: Optional field values for the new row

        Returns:
            int: row_id of the new row

        Example:
            row_id = groups.add_row('qh_fields')  # name = 'QH2'
        """
        spec = self._spec(group)
        row = self._new_row(spec, initial_values)
        self._rows[group].append(row)

        logger.info(f"Group {group}: added row {row.row_id}")
        return row.row_id

    def remove_row(self, group: str, row_id: int) -> bool:
        """
        Remove a row unless it is protected.

        Silent no-op (returns False) when row_id is one of the group's
        fixed leading rows, or when removal would leave fewer than
        fixed_row_count rows.

        Returns:
            bool: True if the row was removed

        Raises:
            ValueError: If group or row_id doesn't exist
        """
        spec = self._spec(group)
        index = self._index_of(group, row_id)
        rows = self._rows[group]

        if index < spec.fixed_row_count or len(rows) - 1 < spec.fixed_row_count:
            logger.warning(f"Group {group}: row {row_id} is a fixed row, not removed")
            return False

        del rows[index]
        logger.info(f"Group {group}: removed row {row_id}")
        return True

    def update_row(self, group: str, row_id: int, field_name: str, value: Any) -> Any:
        """
        Set one field of a row.

        Returns:
            The previous value

        Raises:
            ValueError: If group, row or field is unknown
        """
        spec = self._spec(group)
        if field_name not in dict(spec.fields):
            raise ValueError(f"Group {group} has no field {field_name}")

        row = self._rows[group][self._index_of(group, row_id)]
        old_value = row.values.get(field_name)
        row.values[field_name] = copy.deepcopy(value)

        logger.debug(f"Group {group} row {row_id}: {field_name} = {value!r}")
        return old_value

    # ========================
    # Queries
    # ========================

    def aggregate(self, group: str, field_name: str,
                  fn: Callable[[List[float]], Any] = sum) -> Any:
        """
        Aggregate one column across all rows.

        Unparseable cells count as 0.

        Example:
            total_qardan = groups.aggregate('timeline', 'qardan')
            longest = groups.aggregate('timeline', 'months', max)
        """
        self._spec(group)
        return fn([to_number(row.values.get(field_name)) for row in self._rows[group]])

    def group_names(self) -> List[str]:
        return list(self._specs)

    def spec(self, group: str) -> GroupSpec:
        return self._spec(group)

    def rows(self, group: str) -> List[Row]:
        """Deep copies of the group's rows in display order"""
        self._spec(group)
        return [Row(row_id=r.row_id, values=copy.deepcopy(r.values)) for r in self._rows[group]]

    def row_ids(self, group: str) -> List[int]:
        self._spec(group)
        return [r.row_id for r in self._rows[group]]

    def row_count(self, group: str) -> int:
        self._spec(group)
        return len(self._rows[group])

    def get_row(self, group: str, row_id: int) -> Dict[str, Any]:
        self._spec(group)
        return copy.deepcopy(self._rows[group][self._index_of(group, row_id)].values)

    def export_rows(self, group: str) -> List[Dict[str, Any]]:
        """Row values for persistence (row_id is engine-internal, not exported)"""
        self._spec(group)
        return [copy.deepcopy(r.values) for r in self._rows[group]]
