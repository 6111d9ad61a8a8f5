"""
Module: budget_engines.hierarchy
Responsibility:
    Expand the cost-center tree into a traversable, weighted hierarchy for
    one as-of date: level, root-to-node path, human-readable path,
    depth-first sort key, cumulative weight, leaf flag and child count for
    every reachable eligible cost center.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import budget_kernel domain types, exceptions and logging.

Invariants enforced:
    - Termination: breadth-first expansion is bounded by ``max_depth`` and
      never re-inserts a cost center already placed, so parent-pointer
      cycles in the source data cannot loop.
    - level(node) == level(parent) + 1; roots are level 0.
    - cumulative_weight(node) == cumulative_weight(parent) * weight(node);
      a root starts from its own weight.
    - Eligibility (active unless ``include_inactive``, effective on
      ``as_of``) applies to every node, roots included.

Failure modes:
    - CostCenterNotFoundError when an explicit ``root_id`` is unknown.
    - ValueError on negative ``max_depth`` or duplicate cost-center ids.

Audit relevance:
    ``sort_key`` and ``path`` make every consolidated figure traceable to
    the exact branch of the tree it was rolled up through.

Usage:
    from budget_engines.hierarchy import HierarchyResolver

    resolver = HierarchyResolver(cost_centers)
    nodes = resolver.resolve(as_of=date(2026, 1, 1), max_depth=10)
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from budget_engines.tracer import traced_engine
from budget_kernel.domain.types import CostCenter, HierarchyNode
from budget_kernel.exceptions import CostCenterNotFoundError
from budget_kernel.logging_config import get_logger

logger = get_logger("engines.hierarchy")

PATH_DELIMITER = " > "
SORT_KEY_WIDTH = 10
WEIGHT_QUANTUM = Decimal("0.0000000001")


def _sort_segment(cost_center_id: int) -> str:
    return str(cost_center_id).zfill(SORT_KEY_WIDTH)


class HierarchyResolver:
    """
    Resolve cost-center hierarchies from an id-keyed arena.

    Contract:
        The resolver holds cost centers keyed by id plus a parent -> children
        index.  It never mutates them; every ``resolve`` call builds fresh
        ``HierarchyNode`` values.
    Guarantees:
        - Result size <= number of eligible cost centers.
        - Result is ordered by ``sort_key`` (depth-first, children by id).
    Non-goals:
        - Does not repair cyclic or orphaned parent pointers; unreachable
          cost centers simply do not appear.
    """

    def __init__(self, cost_centers: Iterable[CostCenter]):
        self._by_id: dict[int, CostCenter] = {}
        children: dict[int, list[int]] = defaultdict(list)
        for cc in cost_centers:
            if cc.cost_center_id in self._by_id:
                raise ValueError(f"Duplicate cost center id {cc.cost_center_id}")
            self._by_id[cc.cost_center_id] = cc
            if cc.parent_id is not None:
                children[cc.parent_id].append(cc.cost_center_id)
        self._children: dict[int, tuple[int, ...]] = {
            parent: tuple(sorted(ids)) for parent, ids in children.items()
        }

    def get(self, cost_center_id: int) -> CostCenter | None:
        return self._by_id.get(cost_center_id)

    def children_of(self, cost_center_id: int) -> tuple[CostCenter, ...]:
        return tuple(
            self._by_id[child_id]
            for child_id in self._children.get(cost_center_id, ())
        )

    @traced_engine(
        "hierarchy", "1.0",
        fingerprint_fields=("root_id", "max_depth", "include_inactive", "as_of"),
    )
    def resolve(
        self,
        *,
        as_of: date,
        root_id: int | None = None,
        max_depth: int = 10,
        include_inactive: bool = False,
    ) -> tuple[HierarchyNode, ...]:
        """
        Expand the tree below ``root_id`` (or below every root) as of a date.

        Preconditions:
            ``max_depth`` >= 0.  Levels 0..max_depth inclusive are produced.
        Postconditions:
            Every returned node is eligible on ``as_of``; no cost center
            appears twice.  A known but ineligible ``root_id`` yields ().
        Raises:
            CostCenterNotFoundError: ``root_id`` is not in the arena.
            ValueError: ``max_depth`` is negative.
        """
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")

        t0 = time.monotonic()

        def eligible(cc: CostCenter) -> bool:
            return cc.is_eligible(as_of, include_inactive)

        if root_id is not None:
            root = self._by_id.get(root_id)
            if root is None:
                raise CostCenterNotFoundError(root_id)
            roots = [root] if eligible(root) else []
        else:
            roots = [
                cc for cc in sorted(self._by_id.values(), key=lambda c: c.cost_center_id)
                if cc.parent_id is None and eligible(cc)
            ]

        placed: dict[int, HierarchyNode] = {}
        for cc in roots:
            placed[cc.cost_center_id] = HierarchyNode(
                cost_center_id=cc.cost_center_id,
                code=cc.code,
                name=cc.name,
                parent_id=cc.parent_id,
                level=0,
                path=(cc.cost_center_id,),
                path_names=cc.name,
                sort_key=_sort_segment(cc.cost_center_id),
                cumulative_weight=cc.allocation_weight.quantize(
                    WEIGHT_QUANTUM, rounding=ROUND_HALF_UP,
                ),
            )

        frontier = [placed[cc.cost_center_id] for cc in roots]
        level = 0
        while frontier and level < max_depth:
            level += 1
            next_frontier: list[HierarchyNode] = []
            for parent in frontier:
                for child in self.children_of(parent.cost_center_id):
                    if child.cost_center_id in placed or not eligible(child):
                        continue
                    node = HierarchyNode(
                        cost_center_id=child.cost_center_id,
                        code=child.code,
                        name=child.name,
                        parent_id=parent.cost_center_id,
                        level=level,
                        path=parent.path + (child.cost_center_id,),
                        path_names=parent.path_names + PATH_DELIMITER + child.name,
                        sort_key=parent.sort_key + "/" + _sort_segment(child.cost_center_id),
                        cumulative_weight=(
                            parent.cumulative_weight * child.allocation_weight
                        ).quantize(WEIGHT_QUANTUM, rounding=ROUND_HALF_UP),
                    )
                    placed[child.cost_center_id] = node
                    next_frontier.append(node)
            frontier = next_frontier

        # Finalization: leaf flag from the arena, child count from the result
        child_counts: dict[int, int] = defaultdict(int)
        for node in placed.values():
            if node.level > 0 and node.parent_id is not None:
                child_counts[node.parent_id] += 1

        finalized = []
        for node in placed.values():
            has_eligible_child = any(
                eligible(child) for child in self.children_of(node.cost_center_id)
            )
            finalized.append(replace(
                node,
                is_leaf=not has_eligible_child,
                child_count=child_counts.get(node.cost_center_id, 0),
            ))
        finalized.sort(key=lambda n: n.sort_key)

        logger.info("hierarchy_resolved", extra={
            "root_id": root_id,
            "as_of": as_of.isoformat(),
            "max_depth": max_depth,
            "node_count": len(finalized),
            "depth_reached": max((n.level for n in finalized), default=-1),
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return tuple(finalized)

    def hierarchy_path(
        self,
        cost_center_id: int,
        delimiter: str = PATH_DELIMITER,
        max_depth: int = 20,
    ) -> str:
        """
        Names from the top of the tree down to ``cost_center_id``.

        Walks parent pointers upward at most ``max_depth`` steps, so a
        cyclic chain yields a truncated path instead of looping.  Ignores
        eligibility.

        Raises:
            CostCenterNotFoundError: ``cost_center_id`` is unknown.
        """
        if cost_center_id not in self._by_id:
            raise CostCenterNotFoundError(cost_center_id)

        names: list[str] = []
        current: int | None = cost_center_id
        depth = 0
        while current is not None and depth < max_depth:
            cc = self._by_id.get(current)
            if cc is None:
                break
            names.append(cc.name)
            current = cc.parent_id
            depth += 1
        return delimiter.join(reversed(names))
