"""
Wallet ledger: check-and-deduct, refunds, idempotent references and replay.
"""

from decimal import Decimal

import pytest
from backend.app.core.exceptions import InsufficientBalanceError, IdempotencyConflictError, LedgerIntegrityError
from backend.app.domain.actor import Actor
from backend.app.domain.ledger.wallet_ledger import WalletLedger
from backend.app.models.ledger_enums import WalletTransactionType

actor = Actor.system("wallet-test")


@pytest.mark.asyncio
async def test_deduct_within_balance(db_session, network):
    result = await WalletLedger.check_and_deduct(
        db_session, network.brand.id, Decimal("250.50"), "debit-1", actor,
    )
    await db_session.commit()

    assert result.replayed is False
    assert result.balance_after == Decimal("749.50")
    assert result.transaction.type == WalletTransactionType.DEBIT
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("749.50")


@pytest.mark.asyncio
async def test_insufficient_balance_reports_shortfall(db_session, network):
    with pytest.raises(InsufficientBalanceError) as exc:
        await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("1200.00"), "debit-1", actor)

    assert exc.value.status_code == 402
    assert exc.value.shortfall == Decimal("200.00")
    assert exc.value.details["current"] == "1000.00"
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_exact_balance_can_be_spent(db_session, network):
    result = await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("1000.00"), "debit-1", actor)

    assert result.balance_after == Decimal("0.00")


@pytest.mark.asyncio
async def test_replayed_debit_does_not_charge_twice(db_session, network):
    first = await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("100"), "debit-1", actor)
    again = await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("100"), "debit-1", actor)

    assert again.replayed is True
    assert again.transaction.id == first.transaction.id
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("900.00")


@pytest.mark.asyncio
async def test_reference_reused_with_other_amount_conflicts(db_session, network):
    await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("100"), "debit-1", actor)

    with pytest.raises(IdempotencyConflictError):
        await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("90"), "debit-1", actor)


@pytest.mark.asyncio
async def test_non_positive_amount_rejected(db_session, network):
    with pytest.raises(LedgerIntegrityError):
        await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("0"), "debit-1", actor)


@pytest.mark.asyncio
async def test_refund_links_original_debit(db_session, network):
    debit = await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("300"), "debit-1", actor)
    refund = await WalletLedger.refund(
        db_session, network.brand.id, Decimal("300"), "refund-1", "debit-1", actor,
    )

    assert refund.transaction.type == WalletTransactionType.CREDIT
    assert refund.transaction.related_transaction_id == debit.transaction.id
    assert refund.transaction.description.startswith("REFUND")
    assert refund.balance_after == Decimal("1000.00")

    replay = await WalletLedger.refund(
        db_session, network.brand.id, Decimal("300"), "refund-1", "debit-1", actor,
    )
    assert replay.replayed is True
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_refund_cannot_exceed_debit(db_session, network):
    await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("300"), "debit-1", actor)
    await WalletLedger.refund(db_session, network.brand.id, Decimal("200"), "refund-1", "debit-1", actor)

    with pytest.raises(LedgerIntegrityError):
        await WalletLedger.refund(db_session, network.brand.id, Decimal("150"), "refund-2", "debit-1", actor)


@pytest.mark.asyncio
async def test_refund_requires_debit_on_same_account(db_session, network):
    await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("300"), "debit-1", actor)

    with pytest.raises(LedgerIntegrityError):
        await WalletLedger.refund(db_session, network.customer.id, Decimal("300"), "refund-1", "debit-1", actor)


@pytest.mark.asyncio
async def test_consistency_report(db_session, network):
    await WalletLedger.check_and_deduct(db_session, network.brand.id, Decimal("120.25"), "debit-1", actor)
    await WalletLedger.credit(db_session, network.brand.id, Decimal("50"), "credit-1", actor)
    await db_session.commit()

    report = await WalletLedger.verify_consistency(db_session, network.brand.id)

    assert report.consistent
    assert report.transaction_count == 3
    assert report.computed_balance == Decimal("929.75")

    transactions = await WalletLedger.list_transactions(db_session, network.brand.id)
    assert transactions[0].reference == "credit-1"
