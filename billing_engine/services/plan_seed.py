import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.models.tenant import BillingPeriod, SubscriptionPlan

logger = logging.getLogger(__name__)

DEFAULT_PLANS: list[tuple[str, str, Decimal, BillingPeriod, list[str]]] = [
    (
        "Starter",
        "Perfect for small teams",
        Decimal("29.99"),
        BillingPeriod.monthly,
        ["5 users", "10GB storage", "Basic support"],
    ),
    (
        "Professional",
        "For growing businesses",
        Decimal("99.99"),
        BillingPeriod.monthly,
        ["25 users", "100GB storage", "Priority support", "Advanced analytics"],
    ),
    (
        "Enterprise",
        "For large organizations",
        Decimal("299.99"),
        BillingPeriod.monthly,
        [
            "Unlimited users",
            "1TB storage",
            "24/7 support",
            "Custom integrations",
            "SLA guarantee",
        ],
    ),
]


def seed_default_plans(db: Session) -> list[SubscriptionPlan]:
    """Insert the default plan catalog. Existing plans (matched by name) are left alone."""
    existing = {
        plan.name: plan
        for plan in db.scalars(
            select(SubscriptionPlan).where(SubscriptionPlan.deleted_at.is_(None))
        ).all()
    }
    plans = []
    for name, description, price, period, features in DEFAULT_PLANS:
        plan = existing.get(name)
        if plan is None:
            plan = SubscriptionPlan(
                name=name,
                description=description,
                price=price,
                billing_period=period,
                features=features,
                is_active=True,
                metadata_={},
            )
            db.add(plan)
            logger.info("Seeded plan %s", name)
        plans.append(plan)
    db.commit()
    return plans
