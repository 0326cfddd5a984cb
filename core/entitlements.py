# core/entitlements.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

PlanName = Literal["standard", "premium", "enterprise"]

# Feature flags a plan can grant.
FEATURE_JOURNALING = "journaling"
FEATURE_CUSTOM_PROMPT = "custom_prompt"
FEATURE_UNLIMITED_REMINDERS = "unlimited_reminders"
FEATURE_UNLIMITED_VISION = "unlimited_vision"
FEATURE_UNLIMITED_SCHEDULING = "unlimited_scheduling"


@dataclass(frozen=True)
class PlanEntitlements:
    plan: PlanName
    display_name: str
    features: frozenset[str]
    monthly_credits: int
    price_label: str


_STANDARD = frozenset({FEATURE_JOURNALING})
_PREMIUM = _STANDARD | {FEATURE_CUSTOM_PROMPT, FEATURE_UNLIMITED_REMINDERS}
_ENTERPRISE = _PREMIUM | {FEATURE_UNLIMITED_VISION, FEATURE_UNLIMITED_SCHEDULING}

# ---- Plan table (single source of truth) ----
# Each tier is a strict superset of the one below it.
_PLAN_TABLE: dict[str, PlanEntitlements] = {
    "standard": PlanEntitlements(
        plan="standard",
        display_name="Standard",
        features=_STANDARD,
        monthly_credits=500,
        price_label="$4.99/month",
    ),
    "premium": PlanEntitlements(
        plan="premium",
        display_name="Premium",
        features=frozenset(_PREMIUM),
        monthly_credits=1000,
        price_label="$9.99/month",
    ),
    "enterprise": PlanEntitlements(
        plan="enterprise",
        display_name="Enterprise",
        features=frozenset(_ENTERPRISE),
        monthly_credits=2000,
        price_label="$19.99/month",
    ),
}

PLAN_NAMES: tuple[str, ...] = tuple(_PLAN_TABLE.keys())


def normalize_plan(plan: str | None) -> str | None:
    p = (plan or "").strip().lower()
    return p if p in _PLAN_TABLE else None


def get_plan(plan: str | None) -> PlanEntitlements | None:
    p = normalize_plan(plan)
    return _PLAN_TABLE[p] if p else None


def plan_has_feature(plan: str | None, feature: str) -> bool:
    ent = get_plan(plan)
    return bool(ent and feature in ent.features)


def plan_monthly_credits(plan: str | None) -> int:
    ent = get_plan(plan)
    return int(ent.monthly_credits) if ent else 0


def all_plans() -> list[PlanEntitlements]:
    return [_PLAN_TABLE[p] for p in PLAN_NAMES]
