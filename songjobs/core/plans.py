"""
Subscription plans and quota grants.

Billing itself happens elsewhere; when a subscription is created, renewed
or changed, the billing side calls ``grant_plan`` to create or replace the
customer's quota ledger.
"""

from datetime import datetime
from typing import Optional

from songjobs.config.loader import AppConfig
from songjobs.logging_config import StructuredLogger
from songjobs.storage.models import QuotaLedger
from songjobs.storage.repository import upsert_ledger

logger = StructuredLogger(__name__)


def grant_plan(
    customer_id: str,
    plan_id: str,
    config: AppConfig,
    renews_at: Optional[datetime] = None,
    reset_usage: bool = False,
) -> QuotaLedger:
    """Create or replace a customer's ledger from a configured plan.

    Args:
        customer_id: Customer receiving the plan
        plan_id: Key into the configured plans
        config: Application configuration
        renews_at: End of the current billing period
        reset_usage: Zero the consumption counter (period renewal)

    Returns:
        The stored ledger

    Raises:
        ValueError: If the customer id is empty or the plan is unknown
    """
    if not customer_id or not customer_id.strip():
        raise ValueError("customer_id is required and cannot be empty")
    plan = config.get_plan(plan_id)

    ledger = upsert_ledger(
        QuotaLedger(
            customer_id=customer_id,
            allowance_per_period=plan.songs_per_period,
            consumed_count=0,
            period_renews_at=renews_at,
            plan_id=plan_id,
            plan_name=plan.name,
            revisions_per_song=plan.revisions_per_song,
            commercial=plan.commercial,
        ),
        db_path=config.database.path,
        reset_usage=reset_usage,
    )
    logger.info(
        "plan granted",
        customer_id=customer_id,
        plan_id=plan_id,
        allowance=ledger.allowance_per_period,
        consumed=ledger.consumed_count,
        reset_usage=reset_usage,
    )
    return ledger
