"""Concurrent writers against one registration, each with its own session."""

import asyncio
from decimal import Decimal

import pytest

from app.api.v1.payments.service import add_payment, get_balance, list_registration_payments, void_payment
from app.api.v1.slips.service import approve_slip
from app.core.exceptions import AlreadyResolvedError, AlreadyVoidedError, DuplicateConversionError


@pytest.mark.asyncio
async def test_concurrent_adds_get_unique_sequence_numbers(
    session_factory, db_session, make_registration, admin, audit
) -> None:
    reg_id = await make_registration(full_amount="10000.00")

    async def add_one():
        async with session_factory() as session:
            return await add_payment(
                session,
                reg_id,
                {"amount": "100.00", "method": "Cash", "occurred_at": "2025-03-01T10:00:00Z"},
                actor=admin,
                audit=audit,
            )

    results = await asyncio.gather(*(add_one() for _ in range(50)))

    assert sorted(r.sequence_no for r in results) == list(range(1, 51))
    balance = await get_balance(db_session, reg_id)
    assert balance.paid_amount == Decimal("5000.00")
    assert balance.balance == Decimal("5000.00")
    assert audit.actions.count("payment_added") == 50


@pytest.mark.asyncio
async def test_concurrent_voids_succeed_once(session_factory, db_session, make_registration, admin, audit) -> None:
    reg_id = await make_registration()
    entry = await add_payment(
        db_session,
        reg_id,
        {"amount": "300.00", "method": "Card", "occurred_at": "2025-03-01T10:00:00Z"},
        actor=admin,
        audit=audit,
    )

    async def void_once():
        async with session_factory() as session:
            return await void_payment(session, entry.id, "Chargeback", actor=admin, audit=audit)

    results = await asyncio.gather(*(void_once() for _ in range(10)), return_exceptions=True)

    succeeded = [r for r in results if not isinstance(r, Exception)]
    assert len(succeeded) == 1
    assert all(isinstance(r, AlreadyVoidedError) for r in results if isinstance(r, Exception))
    assert (await get_balance(db_session, reg_id)).paid_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_concurrent_approvals_create_one_payment(
    session_factory, db_session, make_registration, admin, audit
) -> None:
    reg_id = await make_registration(
        slips=[{"id": "slip_1", "url": "https://files.example.com/s.jpg", "status": "pending"}]
    )

    async def approve_once():
        async with session_factory() as session:
            return await approve_slip(session, reg_id, 0, Decimal("250.00"), actor=admin, audit=audit)

    results = await asyncio.gather(*(approve_once() for _ in range(10)), return_exceptions=True)

    succeeded = [r for r in results if not isinstance(r, Exception)]
    assert len(succeeded) == 1
    assert all(
        isinstance(r, (AlreadyResolvedError, DuplicateConversionError))
        for r in results
        if isinstance(r, Exception)
    )
    assert len(await list_registration_payments(db_session, reg_id)) == 1
    assert (await get_balance(db_session, reg_id)).paid_amount == Decimal("250.00")
