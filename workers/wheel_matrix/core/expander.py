"""
Expander — AxisSet + include/exclude overrides → deduplicated MatrixCells.

Order of operations:
  1. cartesian product of all axes (base cells)
  2. includes: merge into every matching base cell, else synthesize
  3. excludes: drop every cell matching all of the exclude's pairs

Excludes run last so an explicit exclude always wins over an include.
"""
from __future__ import annotations

import itertools
import logging
from typing import Dict, List, Mapping, Sequence

from wheel_matrix.core.axes import (
    DERIVED_ATTRIBUTES,
    AxisSet,
    MatrixCell,
    Override,
)
from wheel_matrix.core.errors import AmbiguousCellError, MatrixDefinitionError

logger = logging.getLogger(__name__)


def _base_cells(axes: AxisSet) -> List[MatrixCell]:
    if len(axes) == 0:
        return []
    names = axes.names
    cells = []
    for combo in itertools.product(*(axis.values for axis in axes)):
        cells.append(MatrixCell.build(dict(zip(names, combo))))
    return cells


def _include_matches(cell: MatrixCell, axis_part: Mapping[str, str], extra: Mapping[str, str]) -> bool:
    """
    An include matches a cell when every axis key it names equals the
    cell's value and none of its extra keys contradicts a value the cell
    already carries.
    """
    for key, value in axis_part.items():
        if cell.axis_values.get(key) != value:
            return False
    for key, value in extra.items():
        existing = cell.lookup(key)
        if existing is not None and existing != value:
            return False
    return True


def _cell_matches(cell: MatrixCell, pairs: Mapping[str, str]) -> bool:
    return all(cell.lookup(k) == v for k, v in pairs.items())


def _check_excludes(axes: AxisSet, excludes: Sequence[Override], includes: Sequence[Override]):
    known = set(axes.names) | set(DERIVED_ATTRIBUTES)
    for inc in includes:
        known.update(inc.values.keys())
    for exc in excludes:
        unknown = sorted(set(exc.values) - known)
        if unknown:
            raise MatrixDefinitionError(
                f"exclude {dict(exc.values)} references unknown keys {unknown}"
            )


def expand(
    axes: AxisSet,
    includes: Sequence[Override] = (),
    excludes: Sequence[Override] = (),
) -> List[MatrixCell]:
    """
    Expand the matrix into its final cell list, sorted by cell id.

    Raises AmbiguousCellError when two includes synthesize the same cell
    with different data, or an include synthesizes a base cell's id.
    """
    _check_excludes(axes, excludes, includes)

    base = _base_cells(axes)
    cells: Dict[str, MatrixCell] = {c.id: c for c in base}
    base_ids = set(cells)
    synthesized: Dict[str, MatrixCell] = {}

    for inc in includes:
        axis_part, extra = inc.split(axes.names)
        matched = False
        for cell_id in base_ids:
            cell = cells[cell_id]
            if _include_matches(cell, axis_part, extra):
                matched = True
                if extra:
                    cells[cell_id] = cell.with_attributes(extra)
        if matched:
            continue

        if not axis_part:
            raise MatrixDefinitionError(
                f"include {dict(inc.values)} matches no cell and names no axis to synthesize one"
            )
        new_cell = MatrixCell.build(axis_part, pinned=extra, synthesized=True)
        if new_cell.id in base_ids:
            raise AmbiguousCellError(
                new_cell.id,
                f"include {dict(inc.values)} conflicts with the base cell of the same id",
            )
        previous = synthesized.get(new_cell.id)
        if previous is not None:
            if dict(previous.attributes) != dict(new_cell.attributes):
                raise AmbiguousCellError(
                    new_cell.id,
                    "two includes synthesize this cell with different attributes",
                )
            continue
        logger.debug(f"Include {dict(inc.values)} synthesized cell {new_cell.id}")
        synthesized[new_cell.id] = new_cell
        cells[new_cell.id] = new_cell

    removed = 0
    for exc in excludes:
        doomed = [cid for cid, c in cells.items() if _cell_matches(c, exc.values)]
        for cid in doomed:
            del cells[cid]
        removed += len(doomed)

    result = [cells[cid] for cid in sorted(cells)]
    logger.info(
        f"Expanded matrix: {len(base)} base, {len(synthesized)} included, "
        f"{removed} excluded → {len(result)} cells"
    )
    return result
