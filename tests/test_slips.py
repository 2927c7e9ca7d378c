from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app.api.v1.payments import repository
from app.api.v1.payments.service import add_payment, get_balance, list_registration_payments
from app.api.v1.slips.schemas import SlipUpload
from app.api.v1.slips.service import approve_slip, decline_slip, list_slips, upload_slip
from app.core.config import settings
from app.core.enums import ActivityStatus, SlipStatus
from app.core.exceptions import (
    AlreadyResolvedError,
    DuplicateConversionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)


def slip(slip_id: str = "slip_1", uploaded_at: str = "2025-03-01T09:00:00Z", **extra) -> dict:
    data = {
        "id": slip_id,
        "url": f"https://files.example.com/{slip_id}.jpg",
        "uploadedAt": uploaded_at,
        "status": "pending",
    }
    data.update(extra)
    return data


@pytest.mark.asyncio
async def test_approve_converts_slip_exactly_once(db_session, make_registration, admin, audit) -> None:
    reg_id = await make_registration(slips=[slip("slip_1")])

    created = await approve_slip(db_session, reg_id, 0, Decimal("250.00"), actor=admin, audit=audit)
    assert created.amount == Decimal("250.00")
    assert created.reference == "slip_1"
    assert created.method == settings.slip_payment_method
    assert created.sequence_no == 1

    with pytest.raises(AlreadyResolvedError) as exc_info:
        await approve_slip(db_session, reg_id, 0, Decimal("250.00"), actor=admin, audit=audit)
    assert "approved" in exc_info.value.message

    assert (await get_balance(db_session, reg_id)).paid_amount == Decimal("250.00")
    assert len(await list_registration_payments(db_session, reg_id)) == 1

    ok, blocked = audit.records[-2:]
    assert ok["action"] == "payment_slip_approved"
    assert ok["after"]["slip"]["status"] == "approved"
    assert ok["after"]["slip"]["approvedAt"]
    assert blocked["action"] == "payment_slip_approve_failed"
    assert blocked["status"] == ActivityStatus.blocked


@pytest.mark.asyncio
async def test_existing_payment_for_slip_blocks_conversion(
    db_session, make_registration, admin, audit
) -> None:
    reg_id = await make_registration(slips=[slip("slip_1")])
    await add_payment(
        db_session,
        reg_id,
        {"amount": "250.00", "method": "Bank Transfer", "reference": "slip_1", "occurred_at": "2025-03-02T10:00:00Z"},
        actor=admin,
        audit=audit,
    )

    with pytest.raises(DuplicateConversionError):
        await approve_slip(db_session, reg_id, 0, Decimal("250.00"), actor=admin, audit=audit)

    assert audit.last()["status"] == ActivityStatus.blocked
    assert (await get_balance(db_session, reg_id)).paid_amount == Decimal("250.00")
    queue = await list_slips(db_session, status_filter="pending")
    assert [s.slip_id for s in queue] == ["slip_1"]


@pytest.mark.asyncio
async def test_decline_leaves_money_untouched(db_session, make_registration, admin, audit) -> None:
    reg_id = await make_registration(slips=[slip("slip_1"), slip("slip_2")])

    declined = await decline_slip(db_session, reg_id, 1, actor=admin, audit=audit)
    assert declined.status == SlipStatus.declined
    assert declined.declined_at is not None
    assert declined.slip_id == "slip_2"

    assert (await get_balance(db_session, reg_id)).paid_amount == Decimal("0.00")
    assert await list_registration_payments(db_session, reg_id) == []

    with pytest.raises(AlreadyResolvedError) as exc_info:
        await approve_slip(db_session, reg_id, 1, Decimal("100.00"), actor=admin, audit=audit)
    assert "declined" in exc_info.value.message

    with pytest.raises(AlreadyResolvedError):
        await decline_slip(db_session, reg_id, 1, actor=admin, audit=audit)

    # The other slip is unaffected
    pending = await list_slips(db_session, status_filter="pending")
    assert [s.slip_id for s in pending] == ["slip_1"]


@pytest.mark.asyncio
async def test_slip_not_found(db_session, make_registration, admin, audit) -> None:
    reg_id = await make_registration(slips=[slip("slip_1")])
    empty_id = await make_registration()

    with pytest.raises(NotFoundError):
        await approve_slip(db_session, reg_id, 3, Decimal("10.00"), actor=admin, audit=audit)
    with pytest.raises(NotFoundError):
        await approve_slip(db_session, reg_id, -1, Decimal("10.00"), actor=admin, audit=audit)
    with pytest.raises(NotFoundError):
        await decline_slip(db_session, empty_id, 0, actor=admin, audit=audit)
    with pytest.raises(NotFoundError):
        await approve_slip(db_session, 9999, 0, Decimal("10.00"), actor=admin, audit=audit)

    assert all(r["status"] == ActivityStatus.failure for r in audit.records)


@pytest.mark.asyncio
async def test_approve_rejects_bad_amount(db_session, make_registration, admin, audit) -> None:
    reg_id = await make_registration(slips=[slip("slip_1")])
    with pytest.raises(ValidationError):
        await approve_slip(db_session, reg_id, 0, Decimal("0"), actor=admin, audit=audit)
    before = audit.last()["before"]
    assert before["slip"]["id"] == "slip_1"
    assert before["registration"].id == reg_id
    pending = await list_slips(db_session, status_filter="pending")
    assert len(pending) == 1


@pytest.mark.asyncio
async def test_legacy_slip_without_id_or_status(db_session, make_registration, admin, audit) -> None:
    legacy = {"url": "https://files.example.com/old.jpg", "uploadedAt": "2024-12-01T08:00:00Z"}
    reg_id = await make_registration(slips=legacy)

    queue = await list_slips(db_session, status_filter="pending")
    assert len(queue) == 1
    assert queue[0].slip_id == "index_0"

    created = await approve_slip(db_session, reg_id, 0, Decimal("75.50"), actor=admin, audit=audit)
    assert created.reference == "index_0"
    assert await list_slips(db_session, status_filter="pending") == []


@pytest.mark.asyncio
async def test_upload_appends_pending_slip(db_session, make_registration, audit) -> None:
    reg_id = await make_registration(slips=[slip("slip_1", status="approved")])

    uploaded = await upload_slip(
        db_session, reg_id, SlipUpload(url="https://files.example.com/new.jpg"), audit=audit
    )
    assert uploaded.slip_index == 1
    assert uploaded.status == SlipStatus.pending
    assert uploaded.slip_id.startswith("slip_")
    assert uploaded.slip_id != "slip_1"
    assert audit.last()["action"] == "payment_slip_uploaded"
    assert audit.last()["actor"] is None

    second = await upload_slip(
        db_session, reg_id, SlipUpload(url="https://files.example.com/new2.jpg"), audit=audit
    )
    assert second.slip_id != uploaded.slip_id


@pytest.mark.asyncio
async def test_upload_rejected_for_deleted_registration(db_session, make_registration, audit) -> None:
    reg_id = await make_registration(deleted=True)
    with pytest.raises(ValidationError):
        await upload_slip(db_session, reg_id, SlipUpload(url="https://files.example.com/x.jpg"), audit=audit)
    with pytest.raises(NotFoundError):
        await upload_slip(db_session, 9999, SlipUpload(url="https://files.example.com/x.jpg"), audit=audit)
    assert audit.actions == ["payment_slip_upload_failed", "payment_slip_upload_failed"]


@pytest.mark.asyncio
async def test_queue_filter_search_and_order(db_session, make_registration) -> None:
    await make_registration(
        full_name="Chidi Nwosu",
        slips=[
            slip("slip_c1", uploaded_at="2025-03-05T09:00:00Z"),
            slip("slip_c2", uploaded_at="2025-03-01T09:00:00Z", status="declined"),
        ],
    )
    await make_registration(full_name="Dana Levi", slips=[slip("slip_d1", uploaded_at="2025-03-03T09:00:00Z")])
    await make_registration(full_name="Deleted Person", slips=[slip("slip_x")], deleted=True)

    everything = await list_slips(db_session)
    assert [s.slip_id for s in everything] == ["slip_c2", "slip_d1", "slip_c1"]

    pending = await list_slips(db_session, status_filter="pending")
    assert [s.slip_id for s in pending] == ["slip_d1", "slip_c1"]

    by_name = await list_slips(db_session, search="dana")
    assert [s.slip_id for s in by_name] == ["slip_d1"]

    by_register_id = await list_slips(db_session, search="REG-0001")
    assert {s.slip_id for s in by_register_id} == {"slip_c1", "slip_c2"}

    with pytest.raises(ValidationError):
        await list_slips(db_session, status_filter="archived")


@pytest.mark.asyncio
async def test_storage_failure_during_slip_checks(
    db_session, make_registration, admin, audit, monkeypatch
) -> None:
    reg_id = await make_registration(slips=[slip("slip_1")])

    async def connection_reset(*args, **kwargs):
        raise OperationalError("SELECT registration_payments", {}, Exception("connection reset"))

    with monkeypatch.context() as patched:
        patched.setattr(repository, "find_payment_by_reference", connection_reset)
        with pytest.raises(PersistenceError):
            await approve_slip(db_session, reg_id, 0, Decimal("250.00"), actor=admin, audit=audit)
    record = audit.last()
    assert record["action"] == "payment_slip_approve_failed"
    assert record["status"] == ActivityStatus.failure
    assert "connection reset" in record["meta"]["cause"]

    with monkeypatch.context() as patched:
        patched.setattr(repository, "get_registration", connection_reset)
        with pytest.raises(PersistenceError):
            await decline_slip(db_session, reg_id, 0, actor=admin, audit=audit)
        with pytest.raises(PersistenceError):
            await upload_slip(db_session, reg_id, SlipUpload(url="https://files.example.com/y.jpg"), audit=audit)
    assert audit.actions[-2:] == ["payment_slip_decline_failed", "payment_slip_upload_failed"]

    pending = await list_slips(db_session, status_filter="pending")
    assert [s.slip_id for s in pending] == ["slip_1"]
    assert await list_registration_payments(db_session, reg_id) == []
