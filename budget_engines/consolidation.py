"""
Module: budget_engines.consolidation
Responsibility:
    Aggregate budget line items bottom-up through a resolved cost-center
    hierarchy, producing per (account, cost center, period) consolidated
    amounts, node subtotals, and intercompany eliminations.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Bottom-up order: nodes are processed deepest level first (ties by
      cost-center id), so a parent only ever reads finalized child
      subtotals.
    - Additivity: consolidated(A, node, P) == own(A, node, P) +
      sum(consolidated(A, child, P)) over processed direct children.
    - final == consolidated - elimination; rows where both are zero carry
      no final amount and are excluded.
    - Eliminations are matched by key (account -> partner account, cost
      center -> partner cost center, same period), never by row order.

Failure modes:
    - ValueError when the intercompany partner map is inconsistent
      (one cost center mapped to two partners).

Audit relevance:
    Flagged intercompany amounts with no offsetting partner balance are
    surfaced as ``UnreconciledAmount`` entries for the external
    reconciliation process rather than silently netted.

Usage:
    aggregator = ConsolidationAggregator(accounts, intercompany_partners={10: 20})
    result = aggregator.consolidate(
        budget_id=7, hierarchy=nodes, line_items=items,
    )
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from budget_engines.tracer import traced_engine
from budget_kernel.domain.types import (
    BudgetLineItem,
    ConsolidatedAmount,
    ConsolidatedKey,
    GLAccount,
    HierarchyNode,
)
from budget_kernel.logging_config import get_logger

logger = get_logger("engines.consolidation")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class UnreconciledAmount:
    """Intercompany balance with no (or only a partial) offsetting partner."""

    gl_account_id: int
    cost_center_id: int
    fiscal_period_id: int
    amount: Decimal
    partner_gl_account_id: int
    partner_cost_center_id: int | None
    partner_amount: Decimal
    unmatched_amount: Decimal


@dataclass(frozen=True)
class ConsolidationResult:
    """
    Immutable outcome of one consolidation.

    Guarantees:
        - ``amounts`` only holds rows with a final amount.
        - ``node_subtotals`` has an entry for every hierarchy node.
    """

    budget_id: int
    amounts: dict[ConsolidatedKey, ConsolidatedAmount]
    node_subtotals: dict[int, Decimal]
    elimination_count: int
    unreconciled: tuple[UnreconciledAmount, ...]
    processed_node_count: int
    unmapped_line_count: int

    def for_cost_center(self, cost_center_id: int) -> tuple[ConsolidatedAmount, ...]:
        return tuple(
            amount for key, amount in sorted(self.amounts.items())
            if key.cost_center_id == cost_center_id
        )

    @property
    def total_final(self) -> Decimal:
        return sum(
            (a.final_amount for a in self.amounts.values() if a.final_amount is not None),
            _ZERO,
        )


def _symmetrize(partners: Mapping[int, int]) -> dict[int, int]:
    result: dict[int, int] = {}
    for a, b in partners.items():
        for left, right in ((a, b), (b, a)):
            existing = result.get(left)
            if existing is not None and existing != right:
                raise ValueError(
                    f"Cost center {left} has conflicting intercompany partners "
                    f"{existing} and {right}"
                )
            result[left] = right
    return result


def _sign(value: Decimal) -> int:
    return (value > 0) - (value < 0)


class ConsolidationAggregator:
    """
    Bottom-up rollup with key-based intercompany elimination.

    Contract:
        ``consolidate`` is pure; it reads only its arguments and the
        account / partner snapshots given at construction.
    Guarantees:
        - Sibling order never changes a parent's totals.
        - Each key is written once per node.
    Non-goals:
        - Does not produce reconciliation reports; unmatched balances are
          listed only.
        - Does not persist results.
    """

    def __init__(
        self,
        accounts: Iterable[GLAccount],
        intercompany_partners: Mapping[int, int] | None = None,
    ):
        self._accounts = {a.account_id: a for a in accounts}
        self._partners = _symmetrize(intercompany_partners or {})

    @traced_engine(
        "consolidation", "1.0",
        fingerprint_fields=(
            "budget_id", "include_eliminations", "rounding_precision",
            "include_zero_balances",
        ),
    )
    def consolidate(
        self,
        *,
        budget_id: int,
        hierarchy: Sequence[HierarchyNode],
        line_items: Iterable[BudgetLineItem],
        include_eliminations: bool = True,
        rounding_precision: int | None = None,
        include_zero_balances: bool = True,
    ) -> ConsolidationResult:
        """
        Roll the budget's line items up through ``hierarchy``.

        Args:
            budget_id: Only line items of this budget are aggregated.
            hierarchy: Nodes from ``HierarchyResolver.resolve``.
            line_items: Candidate line items (other budgets are ignored).
            include_eliminations: Compute intercompany eliminations.
            rounding_precision: Round finals half-up to this many places.
            include_zero_balances: Keep rows whose final amount is zero.

        Returns:
            ConsolidationResult.
        """
        t0 = time.monotonic()
        node_ids = {n.cost_center_id for n in hierarchy}

        own: dict[ConsolidatedKey, Decimal] = defaultdict(lambda: _ZERO)
        own_counts: dict[ConsolidatedKey, int] = defaultdict(int)
        unmapped = 0
        for item in line_items:
            if item.budget_id != budget_id:
                continue
            if item.cost_center_id not in node_ids:
                unmapped += 1
                continue
            key = ConsolidatedKey(item.gl_account_id, item.cost_center_id, item.fiscal_period_id)
            own[key] += item.final_amount
            own_counts[key] += 1

        logger.info("consolidation_started", extra={
            "budget_id": budget_id,
            "node_count": len(hierarchy),
            "own_key_count": len(own),
            "unmapped_line_count": unmapped,
            "include_eliminations": include_eliminations,
        })

        own_elims: dict[ConsolidatedKey, Decimal] = {}
        unreconciled: list[UnreconciledAmount] = []
        if include_eliminations:
            own_elims, unreconciled = self._entity_eliminations(own)

        # Bottom-up rollup
        own_by_node: dict[int, list[ConsolidatedKey]] = defaultdict(list)
        for key in own:
            own_by_node[key.cost_center_id].append(key)
        elim_by_node: dict[int, list[ConsolidatedKey]] = defaultdict(list)
        for key in own_elims:
            elim_by_node[key.cost_center_id].append(key)

        children: dict[int, list[int]] = defaultdict(list)
        for node in hierarchy:
            if node.level > 0 and node.parent_id in node_ids:
                children[node.parent_id].append(node.cost_center_id)

        consolidated: dict[ConsolidatedKey, Decimal] = {}
        eliminations: dict[ConsolidatedKey, Decimal] = {}
        counts: dict[ConsolidatedKey, int] = {}
        # Account/period pairs present per node, for rolling up to the parent
        node_keys: dict[int, set[tuple[int, int]]] = {}
        subtotals: dict[int, Decimal] = {}

        ordered = sorted(hierarchy, key=lambda n: (-n.level, n.cost_center_id))
        for node in ordered:
            cc_id = node.cost_center_id
            subtotal = sum((own[k] for k in own_by_node.get(cc_id, ())), _ZERO)
            pairs: set[tuple[int, int]] = set()
            for key in own_by_node.get(cc_id, ()):
                pairs.add((key.gl_account_id, key.fiscal_period_id))
            for key in elim_by_node.get(cc_id, ()):
                pairs.add((key.gl_account_id, key.fiscal_period_id))

            for child_id in children.get(cc_id, ()):
                subtotal += subtotals[child_id]
                pairs |= node_keys[child_id]

            for account_id, period_id in pairs:
                key = ConsolidatedKey(account_id, cc_id, period_id)
                amount = own.get(key, _ZERO)
                elimination = own_elims.get(key, _ZERO)
                count = own_counts.get(key, 0)
                for child_id in children.get(cc_id, ()):
                    child_key = ConsolidatedKey(account_id, child_id, period_id)
                    amount += consolidated.get(child_key, _ZERO)
                    elimination += eliminations.get(child_key, _ZERO)
                    count += counts.get(child_key, 0)
                consolidated[key] = amount
                eliminations[key] = elimination
                counts[key] = count

            node_keys[cc_id] = pairs
            subtotals[cc_id] = subtotal

        amounts: dict[ConsolidatedKey, ConsolidatedAmount] = {}
        quantum = (
            Decimal(1).scaleb(-rounding_precision)
            if rounding_precision is not None else None
        )
        for key in sorted(consolidated):
            amount = consolidated[key]
            elimination = eliminations[key]
            if amount == 0 and elimination == 0:
                continue
            final = amount - elimination
            if quantum is not None:
                final = final.quantize(quantum, rounding=ROUND_HALF_UP)
            if not include_zero_balances and final == 0:
                continue
            amounts[key] = ConsolidatedAmount(
                gl_account_id=key.gl_account_id,
                cost_center_id=key.cost_center_id,
                fiscal_period_id=key.fiscal_period_id,
                consolidated_amount=amount,
                elimination_amount=elimination,
                final_amount=final,
                source_count=counts[key],
            )

        result = ConsolidationResult(
            budget_id=budget_id,
            amounts=amounts,
            node_subtotals=subtotals,
            elimination_count=sum(1 for v in own_elims.values() if v != 0),
            unreconciled=tuple(unreconciled),
            processed_node_count=len(ordered),
            unmapped_line_count=unmapped,
        )

        logger.info("consolidation_completed", extra={
            "budget_id": budget_id,
            "row_count": len(amounts),
            "elimination_count": result.elimination_count,
            "unreconciled_count": len(unreconciled),
            "total_final": str(result.total_final),
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return result

    def _entity_eliminations(
        self,
        own: Mapping[ConsolidatedKey, Decimal],
    ) -> tuple[dict[ConsolidatedKey, Decimal], list[UnreconciledAmount]]:
        """Match each flagged balance against its partner's offsetting balance."""
        eliminations: dict[ConsolidatedKey, Decimal] = {}
        unreconciled: list[UnreconciledAmount] = []

        for key in sorted(own):
            amount = own[key]
            account = self._accounts.get(key.gl_account_id)
            if (
                account is None
                or not account.is_intercompany
                or account.consolidation_account_id is None
                or amount == 0
            ):
                continue

            partner_cc = self._partners.get(key.cost_center_id)
            partner_amount = _ZERO
            if partner_cc is not None:
                partner_amount = own.get(
                    ConsolidatedKey(
                        account.consolidation_account_id, partner_cc, key.fiscal_period_id,
                    ),
                    _ZERO,
                )

            matched = _ZERO
            if partner_amount != 0 and _sign(partner_amount) != _sign(amount):
                matched = min(abs(amount), abs(partner_amount))
                eliminations[key] = _sign(amount) * matched

            unmatched = abs(amount) - matched
            if unmatched > 0:
                unreconciled.append(UnreconciledAmount(
                    gl_account_id=key.gl_account_id,
                    cost_center_id=key.cost_center_id,
                    fiscal_period_id=key.fiscal_period_id,
                    amount=amount,
                    partner_gl_account_id=account.consolidation_account_id,
                    partner_cost_center_id=partner_cc,
                    partner_amount=partner_amount,
                    unmatched_amount=_sign(amount) * unmatched,
                ))
                logger.debug("intercompany_unreconciled", extra={
                    "gl_account_id": key.gl_account_id,
                    "cost_center_id": key.cost_center_id,
                    "fiscal_period_id": key.fiscal_period_id,
                    "unmatched_amount": str(_sign(amount) * unmatched),
                })

        return eliminations, unreconciled
