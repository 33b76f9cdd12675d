"""Plan-tier limits and the crawl/export gates.

The gates are pure: they only reduce requested values to what a plan
allows and report whether a reduction happened.
"""

import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

UNLIMITED = sys.maxsize


@dataclass(frozen=True)
class PlanLimits:
    """Limits for one subscription tier."""
    export_max_rows: int
    crawl_max_depth: int
    crawl_pages_limit: int
    crawls_per_month: int


PLAN_LIMITS: Dict[str, PlanLimits] = {
    'demo': PlanLimits(export_max_rows=50, crawl_max_depth=1, crawl_pages_limit=5, crawls_per_month=50),
    'starter': PlanLimits(export_max_rows=1000, crawl_max_depth=2, crawl_pages_limit=25, crawls_per_month=UNLIMITED),
    'pro': PlanLimits(export_max_rows=1_000_000, crawl_max_depth=3, crawl_pages_limit=100, crawls_per_month=UNLIMITED),
}

UPGRADE_TARGETS = {'demo': 'Starter', 'starter': 'Pro'}


@dataclass(frozen=True)
class CrawlGate:
    """Outcome of gating a crawl request."""
    plan: str
    max_depth: int
    pages_limit: int
    gated: bool
    original_depth: int
    original_pages_limit: Optional[int]

    @property
    def gate_reason(self) -> Optional[str]:
        if not self.gated:
            return None
        return (
            f"Plan limit: max depth {self.max_depth}, pages limit {self.pages_limit}. "
            f"Upgrade to increase limits."
        )

    @property
    def upgrade_hint(self) -> Optional[str]:
        return upgrade_hint(self.plan) if self.gated else None


@dataclass(frozen=True)
class ExportGate:
    """Outcome of gating an export."""
    rows: List[Any]
    watermark: str
    gated: bool
    original_rows: int


def get_plan_limits(plan: str) -> PlanLimits:
    """Look up the limits of ``plan``.

    Raises:
        ValueError: If the plan is unknown
    """
    try:
        return PLAN_LIMITS[plan]
    except KeyError:
        raise ValueError(f"Unknown plan: {plan!r}") from None


def upgrade_hint(plan: str) -> Optional[str]:
    target = UPGRADE_TARGETS.get(plan)
    if target is None:
        return None
    return f"Upgrade to {target} plan to crawl more pages per website."


def apply_crawl_gate(plan: str, requested_depth: int,
                     requested_pages_limit: Optional[int] = None) -> CrawlGate:
    """Cap a crawl request to what ``plan`` permits.

    Args:
        plan: Plan id (demo, starter, pro)
        requested_depth: Depth asked for by the caller
        requested_pages_limit: Pages asked for; the plan default when None

    Returns:
        CrawlGate with the allowed depth/pages and a gated flag
    """
    limits = get_plan_limits(plan)
    if requested_depth is None or requested_depth < 0:
        raise ValueError(f"Invalid crawl depth: {requested_depth!r}")
    if requested_pages_limit is not None and requested_pages_limit < 1:
        raise ValueError(f"Invalid pages limit: {requested_pages_limit!r}")

    max_depth = min(requested_depth, limits.crawl_max_depth)
    wanted_pages = limits.crawl_pages_limit if requested_pages_limit is None else requested_pages_limit
    pages_limit = min(wanted_pages, limits.crawl_pages_limit)

    return CrawlGate(
        plan=plan,
        max_depth=max_depth,
        pages_limit=pages_limit,
        gated=max_depth < requested_depth or pages_limit < wanted_pages,
        original_depth=requested_depth,
        original_pages_limit=requested_pages_limit,
    )


def apply_export_gate(plan: str, rows: Sequence[Any]) -> ExportGate:
    """Cap export rows to the plan's maximum and pick the watermark."""
    limits = get_plan_limits(plan)
    original = len(rows)
    gated = original > limits.export_max_rows
    kept = list(rows[:limits.export_max_rows])

    if plan == 'demo':
        watermark = f"DEMO (max {limits.export_max_rows} leads)"
    else:
        watermark = plan.upper()

    return ExportGate(rows=kept, watermark=watermark, gated=gated, original_rows=original)
