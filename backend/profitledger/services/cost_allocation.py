"""Cost allocation engine.

WHAT: Turns a day's revenue/orders/units/spend plus COGS coverage into a full
      cost breakdown, contribution profit and spend ratios, tagged with an
      allocation mode (actual/hybrid/modeled) and a confidence label.
WHY:  Product costs are known for only part of the catalogue. The mode makes it
      explicit how much of the COGS figure is measured versus estimated.
REFERENCES:
  - profitledger/models.py:ClientCostSettings: Configuration row
  - profitledger/services/coverage.py: CoverageTotals input
  - profitledger/services/recompute_service.py: Uses these functions
  - tests_unit/test_cost_allocation.py: Unit tests

Mode rules (coverage = revenue_with_cogs / revenue, clamped to [0, 1]):
  - override set        -> the override; confidence follows the mode
  - coverage >= actual  -> actual / high    : known + clamped missing estimate
  - coverage >= hybrid  -> hybrid / medium  : known + uncovered revenue * (1 - margin)
  - otherwise           -> modeled / low    : revenue * (1 - margin), or
                                              units * avg_cogs_per_unit when no
                                              margin is configured
"""

import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Tuple

from profitledger.models import AllocationModeEnum, ConfidenceEnum
from profitledger.services.coverage import CoverageTotals, coverage_fraction

DEFAULT_THRESHOLD_ACTUAL = 0.95
DEFAULT_THRESHOLD_HYBRID = 0.25
DEFAULT_FALLBACK_MARGIN = 0.5

_CONFIDENCE_BY_MODE = {
    AllocationModeEnum.actual: ConfidenceEnum.high,
    AllocationModeEnum.hybrid: ConfidenceEnum.medium,
    AllocationModeEnum.modeled: ConfidenceEnum.low,
}


def _num(value: Any) -> Optional[float]:
    """Numeric or None; Decimal and numeric strings accepted, non-finite rejected."""
    if value is None:
        return None
    try:
        x = float(value)
    except (TypeError, ValueError):
        return None
    return x if math.isfinite(x) else None


def clamp01(x: float) -> float:
    if not math.isfinite(x):
        return 0.0
    return min(max(x, 0.0), 1.0)


def normalize_pct(value: Any) -> Optional[float]:
    """Accept 0.3 or 30 (meaning 30%) and return a fraction in [0, 1].

    Returns None for missing or non-numeric input so callers can tell
    "not configured" from zero.
    """
    x = _num(value)
    if x is None:
        return None
    if x > 1:
        x = x / 100
    return clamp01(x)


@dataclass(frozen=True)
class CostSettings:
    """Read-only cost assumptions for one client."""

    gross_margin: Optional[float] = None
    avg_cogs_per_unit: Optional[float] = None
    processing_fee_pct: float = 0.0
    processing_fee_fixed: float = 0.0
    pick_pack_per_order: float = 0.0
    shipping_subsidy_per_order: float = 0.0
    materials_per_order: float = 0.0
    other_variable_pct_revenue: float = 0.0
    other_fixed_per_day: float = 0.0
    threshold_actual: float = DEFAULT_THRESHOLD_ACTUAL
    threshold_hybrid: float = DEFAULT_THRESHOLD_HYBRID
    mode_override: Optional[AllocationModeEnum] = None
    exclude_pos_orders: bool = False

    @property
    def fallback_margin(self) -> float:
        """Configured gross margin, or 0.5 when none is set."""
        return self.gross_margin if self.gross_margin is not None else DEFAULT_FALLBACK_MARGIN

    @classmethod
    def from_row(cls, row: Any) -> "CostSettings":
        """Build from a ClientCostSettings row; None yields the defaults."""
        if row is None:
            return cls()

        actual = normalize_pct(row.cogs_coverage_threshold_actual)
        hybrid = normalize_pct(row.cogs_coverage_threshold_hybrid)
        actual = DEFAULT_THRESHOLD_ACTUAL if actual is None else actual
        hybrid = DEFAULT_THRESHOLD_HYBRID if hybrid is None else hybrid
        if hybrid > actual:
            actual, hybrid = hybrid, actual

        override = None
        raw_override = (row.cost_mode_override or "").strip().lower()
        if raw_override in {m.value for m in AllocationModeEnum}:
            override = AllocationModeEnum(raw_override)

        avg_cogs = _num(row.avg_cogs_per_unit)

        return cls(
            gross_margin=normalize_pct(row.default_gross_margin_pct),
            avg_cogs_per_unit=avg_cogs if avg_cogs and avg_cogs > 0 else None,
            processing_fee_pct=normalize_pct(row.processing_fee_pct) or 0.0,
            processing_fee_fixed=max(_num(row.processing_fee_fixed) or 0.0, 0.0),
            pick_pack_per_order=max(_num(row.pick_pack_per_order) or 0.0, 0.0),
            shipping_subsidy_per_order=max(_num(row.shipping_subsidy_per_order) or 0.0, 0.0),
            materials_per_order=max(_num(row.materials_per_order) or 0.0, 0.0),
            other_variable_pct_revenue=normalize_pct(row.other_variable_pct_revenue) or 0.0,
            other_fixed_per_day=max(_num(row.other_fixed_per_day) or 0.0, 0.0),
            threshold_actual=actual,
            threshold_hybrid=hybrid,
            mode_override=override,
            exclude_pos_orders=bool(row.exclude_pos_orders),
        )


def select_mode(coverage: float, settings: CostSettings) -> Tuple[AllocationModeEnum, ConfidenceEnum]:
    """Pick the allocation mode for a coverage fraction.

    Confidence never decreases as coverage increases (for fixed settings).
    """
    if settings.mode_override is not None:
        mode = settings.mode_override
    elif coverage >= settings.threshold_actual:
        mode = AllocationModeEnum.actual
    elif coverage >= settings.threshold_hybrid:
        mode = AllocationModeEnum.hybrid
    else:
        mode = AllocationModeEnum.modeled
    return mode, _CONFIDENCE_BY_MODE[mode]


@dataclass(frozen=True)
class CostBreakdown:
    """Unrounded result of one day's allocation."""

    revenue: float
    orders: int
    units: int
    paid_spend: float
    mode: AllocationModeEnum
    confidence: ConfidenceEnum
    coverage: float
    cogs: float
    processing_fees: float
    fulfillment: float
    other_variable: float
    fixed: float
    contribution_profit: float
    mer: float
    profit_mer: float

    @property
    def contribution_margin(self) -> float:
        return self.contribution_profit / self.revenue if self.revenue > 0 else 0.0

    def as_summary_row(self, client_id: str, day: date) -> Dict[str, Any]:
        """DailyProfitSummary payload; money rounded to cents only here."""
        return {
            "client_id": client_id,
            "date": day,
            "revenue": _money(self.revenue),
            "orders": int(self.orders),
            "units": int(self.units),
            "paid_spend": _money(self.paid_spend),
            "est_cogs": _money(self.cogs),
            "est_processing_fees": _money(self.processing_fees),
            "est_fulfillment_costs": _money(self.fulfillment),
            "est_other_variable_costs": _money(self.other_variable),
            "est_other_fixed_costs": _money(self.fixed),
            "contribution_profit": _money(self.contribution_profit),
            "mer": _ratio(self.mer),
            "profit_mer": _ratio(self.profit_mer),
            "cogs_coverage_pct": _ratio(self.coverage),
            "cost_mode": self.mode.value,
            "cost_confidence": self.confidence.value,
        }


def _money(x: float) -> float:
    return round(x, 2) + 0.0


def _ratio(x: float) -> float:
    return round(x, 4) + 0.0


def allocate_costs(
    revenue: float,
    orders: int,
    units: int,
    paid_spend: float,
    coverage: CoverageTotals,
    settings: CostSettings,
) -> CostBreakdown:
    """Allocate a day's costs.

    Args:
        revenue: Net storefront revenue for the day
        orders: Order count
        units: Units sold
        paid_spend: Total ad spend across ad sources
        coverage: Clamped coverage totals for the day (empty when no line items)
        settings: Client cost settings

    Returns:
        CostBreakdown with unrounded values
    """
    revenue = float(revenue or 0)
    orders = int(orders or 0)
    units = int(units or 0)
    paid_spend = float(paid_spend or 0)

    fraction = coverage_fraction(coverage.revenue_with_cogs, revenue)
    mode, confidence = select_mode(fraction, settings)
    margin = settings.fallback_margin

    if mode == AllocationModeEnum.actual:
        cogs = coverage.product_cogs_known + coverage.estimated_cogs_missing
    elif mode == AllocationModeEnum.hybrid:
        uncovered = max(revenue - coverage.revenue_with_cogs, 0.0)
        cogs = coverage.product_cogs_known + uncovered * (1 - margin)
    elif settings.gross_margin is None and settings.avg_cogs_per_unit:
        cogs = units * settings.avg_cogs_per_unit
    else:
        cogs = revenue * (1 - margin)
    cogs = min(max(cogs, 0.0), max(revenue, 0.0))

    processing_fees = revenue * settings.processing_fee_pct + orders * settings.processing_fee_fixed
    fulfillment = orders * settings.pick_pack_per_order
    other_variable = (
        orders * (settings.shipping_subsidy_per_order + settings.materials_per_order)
        + revenue * settings.other_variable_pct_revenue
    )
    fixed = settings.other_fixed_per_day

    profit = revenue - (cogs + processing_fees + fulfillment + other_variable + fixed + paid_spend)

    return CostBreakdown(
        revenue=revenue,
        orders=orders,
        units=units,
        paid_spend=paid_spend,
        mode=mode,
        confidence=confidence,
        coverage=fraction,
        cogs=cogs,
        processing_fees=processing_fees,
        fulfillment=fulfillment,
        other_variable=other_variable,
        fixed=fixed,
        contribution_profit=profit,
        mer=revenue / paid_spend if paid_spend > 0 else 0.0,
        profit_mer=profit / paid_spend if paid_spend > 0 else 0.0,
    )
