"""
Find registrations whose cached current_paid_amount differs from the sum of their active payments
and re-sync them. Each fix runs in its own locked transaction and is written to the activity log.

Usage: python -m app.scripts.resync_balances [--dry-run]
"""

import argparse
import asyncio
from decimal import Decimal
from typing import List, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.activity.audit_service import ActivityLogSink
from app.api.v1.payments.repository import to_money
from app.api.v1.payments.service import resync_paid_amount_direct
from app.core.enums import PaymentStatus
from app.core.models import Registration, RegistrationPayment
from app.db.session import AsyncSessionLocal


async def find_drifted_registrations(session: AsyncSession) -> List[Tuple[int, Decimal, Decimal]]:
    """Return (registration_id, cached, ledger_sum) for every registration out of sync."""
    active_sum = (
        select(
            RegistrationPayment.registration_id,
            func.coalesce(func.sum(RegistrationPayment.amount), 0).label("total"),
        )
        .where(RegistrationPayment.status == PaymentStatus.active.value)
        .group_by(RegistrationPayment.registration_id)
    ).subquery()
    rows = (
        await session.execute(
            select(
                Registration.id,
                Registration.current_paid_amount,
                func.coalesce(active_sum.c.total, 0),
            ).outerjoin(active_sum, Registration.id == active_sum.c.registration_id)
        )
    ).all()
    drifted = []
    for reg_id, cached, total in rows:
        if to_money(cached) != to_money(total):
            drifted.append((reg_id, to_money(cached), to_money(total)))
    return drifted


async def resync_balances(dry_run: bool = False) -> int:
    audit = ActivityLogSink(AsyncSessionLocal)
    async with AsyncSessionLocal() as session:
        drifted = await find_drifted_registrations(session)
        await session.rollback()
        if not drifted:
            print("All registration balances match the ledger.")
            return 0

        print(f"Found {len(drifted)} registration(s) out of sync.")
        for reg_id, cached, total in drifted:
            print(f"  registration {reg_id}: cached {cached}, ledger {total}")
            if not dry_run:
                await resync_paid_amount_direct(session, reg_id, actor=None, audit=audit)

        if not dry_run:
            print(f"Done. Re-synced {len(drifted)} registration(s).")
        return len(drifted)


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-sync cached paid amounts with the payment ledger")
    parser.add_argument("--dry-run", action="store_true", help="Only report registrations out of sync")
    args = parser.parse_args()
    asyncio.run(resync_balances(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
