"""Tests for the reconciliation matcher."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from pos_payments.database import (
    ManualEntryStatus,
    QRPayment,
    QRPaymentStatus,
    QR_MATCH_SENTINEL,
    UnmatchedTransactionRepository,
)
from pos_payments.manual_entries import ManualEntryService
from pos_payments.reconciliation import MatchReport, ReconciliationMatcher
from pos_payments.registry import QRPaymentRegistry

from conftest import SAMPLE_MESSAGE


@pytest.fixture
def registry(db_session, clock):
    return QRPaymentRegistry(db_session, clock=clock)


@pytest.fixture
def transactions(db_session):
    return UnmatchedTransactionRepository(db_session)


@pytest.fixture
def matcher(db_session, registry, clock):
    return ReconciliationMatcher(db_session, registry=registry, clock=clock)


async def _qr(registry, clock, amount="1000", offset_minutes=0):
    at = clock.now
    clock.now = at + timedelta(minutes=offset_minutes)
    payment = await registry.create(Decimal(amount), created_by_user_id=1)
    clock.now = at
    return payment


async def _txn(transactions, clock, code, amount="1000.00", offset_minutes=10):
    return await transactions.create(
        code, Decimal(amount), received_at=clock.now + timedelta(minutes=offset_minutes)
    )


class TestAmountsMatch:
    """Tests for the amount tolerance."""

    @pytest.mark.parametrize(
        "received,expected",
        [("1000.00", True), ("1000.009", True), ("999.991", True), ("1000.01", False), ("999", False)],
    )
    def test_epsilon(self, matcher, received, expected):
        assert matcher.amounts_match(Decimal("1000"), Decimal(received)) is expected


class TestQRMatching:
    """Tests for matching transactions to pending QR payments."""

    async def test_transaction_in_window_pays_qr(self, matcher, registry, transactions, db_session, clock):
        """A 1000 payment received 10 minutes after the QR was issued settles it."""
        payment = await _qr(registry, clock)
        txn = await _txn(transactions, clock, "QK7AB12CDE")
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()

        assert [m.reference for m in report.matched] == [payment.reference]
        assert report.matched[0].transaction_code == "QK7AB12CDE"
        assert report.pending_checked == 1
        assert report.transactions_checked == 1

        await db_session.refresh(payment)
        await db_session.refresh(txn)
        assert payment.status == QRPaymentStatus.PAID.value
        assert payment.transaction_code == "QK7AB12CDE"
        assert payment.receipt_number == "QK7AB12CDE"
        assert txn.sale_id == QR_MATCH_SENTINEL
        assert txn.is_used is True
        assert txn.matched_reference == payment.reference

    async def test_second_pass_matches_nothing(self, matcher, registry, transactions, db_session, clock):
        """A consumed transaction is never offered again."""
        await _qr(registry, clock)
        await _txn(transactions, clock, "QK7AB12CDE")
        await db_session.commit()
        clock.advance(minutes=15)

        await matcher.run_pass()
        report = await matcher.run_pass()

        assert report.matched == []
        assert report.transactions_checked == 0
        assert report.pending_checked == 0

    async def test_amount_mismatch_is_not_matched(self, matcher, registry, transactions, db_session, clock):
        payment = await _qr(registry, clock)
        await _txn(transactions, clock, "QK7AB12CDE", amount="999.00")
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()

        assert report.matched == []
        await db_session.refresh(payment)
        assert payment.status == QRPaymentStatus.PENDING.value

    async def test_transaction_before_window_is_not_matched(
        self, matcher, registry, transactions, db_session, clock
    ):
        """A payment received before the QR was created cannot be for it."""
        await _qr(registry, clock)
        await _txn(transactions, clock, "QK7AB12CDE", offset_minutes=-1)
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()
        assert report.matched == []

    async def test_one_transaction_two_payments(self, matcher, registry, transactions, db_session, clock):
        """A single transaction settles only the oldest of two equal QR payments."""
        first = await _qr(registry, clock)
        second = await _qr(registry, clock, offset_minutes=1)
        await _txn(transactions, clock, "QK7AB12CDE")
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()

        assert [m.reference for m in report.matched] == [first.reference]
        await db_session.refresh(second)
        assert second.status == QRPaymentStatus.PENDING.value

    async def test_earliest_of_several_candidates_wins(
        self, matcher, registry, transactions, db_session, clock
    ):
        """With several qualifying transactions the earliest is taken and the QR is flagged."""
        payment = await _qr(registry, clock)
        await _txn(transactions, clock, "LATE000001", offset_minutes=8)
        await _txn(transactions, clock, "EARLY00001", offset_minutes=5)
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()

        assert report.matched[0].transaction_code == "EARLY00001"
        assert report.matched[0].candidates == 2
        assert report.multiple_candidates == [payment.reference]
        assert report.ambiguous == []

        late = await transactions.get_by_code("LATE000001")
        assert late.sale_id is None

    async def test_tie_is_left_for_review(self, matcher, registry, transactions, db_session, clock):
        """Two candidates received at the same instant are not guessed between."""
        payment = await _qr(registry, clock)
        await _txn(transactions, clock, "TIE0000001", offset_minutes=5)
        await _txn(transactions, clock, "TIE0000002", offset_minutes=5)
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()

        assert report.matched == []
        assert report.ambiguous == [payment.reference]
        assert report.multiple_candidates == [payment.reference]
        await db_session.refresh(payment)
        assert payment.status == QRPaymentStatus.PENDING.value

    async def test_lost_race_releases_transaction(self, matcher, registry, transactions, db_session, clock):
        """If the QR payment was resolved elsewhere the transaction is given back."""
        payment = await _qr(registry, clock)
        await _txn(transactions, clock, "QK7AB12CDE")
        await db_session.commit()
        clock.advance(minutes=15)
        registry.mark_paid = AsyncMock(return_value=False)

        report = await matcher.run_pass()

        assert report.matched == []
        assert report.lost_races == [payment.reference]
        txn = await transactions.get_by_code("QK7AB12CDE")
        await db_session.refresh(txn)
        assert txn.sale_id is None
        assert txn.is_used is False
        assert txn.version == 2

    async def test_error_on_one_pair_does_not_stop_pass(
        self, matcher, registry, transactions, db_session, clock
    ):
        """A failing pair is rolled back and reported; the next pair still matches."""
        broken = await _qr(registry, clock, amount="100")
        healthy = await _qr(registry, clock, amount="200", offset_minutes=1)
        await _txn(transactions, clock, "AMT1000001", amount="100.00")
        await _txn(transactions, clock, "AMT2000001", amount="200.00")
        await db_session.commit()
        broken_reference = broken.reference
        healthy_reference = healthy.reference
        clock.advance(minutes=15)

        real_mark_paid = registry.mark_paid

        async def flaky_mark_paid(reference, receipt_number, transaction_code):
            if reference == broken_reference:
                raise RuntimeError("database hiccup")
            return await real_mark_paid(reference, receipt_number, transaction_code)

        registry.mark_paid = flaky_mark_paid

        report = await matcher.run_pass()

        assert [m.reference for m in report.matched] == [healthy_reference]
        assert len(report.errors) == 1
        assert report.errors[0].reference == broken_reference
        assert report.errors[0].transaction_code == "AMT1000001"
        assert "RuntimeError" in report.errors[0].error

        untouched = await transactions.get_by_code("AMT1000001")
        await db_session.refresh(untouched)
        assert untouched.sale_id is None
        still_pending = await registry.get(broken_reference)
        await db_session.refresh(still_pending)
        assert still_pending.status == QRPaymentStatus.PENDING.value


class TestManualEntryConfirmation:
    """Tests for confirming manual entries by transaction code."""

    async def test_pending_entry_is_auto_verified(self, matcher, transactions, db_session, clock):
        """The gateway reporting the quoted code verifies the entry."""
        entry = await ManualEntryService(db_session, clock=clock).create_entry(SAMPLE_MESSAGE, 3)
        txn = await _txn(transactions, clock, "RK61H8I2Q7", amount="500.00")
        await db_session.commit()

        report = await matcher.run_pass()

        assert len(report.entry_confirmations) == 1
        confirmation = report.entry_confirmations[0]
        assert confirmation.entry_id == entry.id
        assert confirmation.auto_verified is True
        assert report.entries_checked == 1

        await db_session.refresh(entry)
        await db_session.refresh(txn)
        assert entry.status == ManualEntryStatus.VERIFIED.value
        assert entry.is_verified is True
        assert txn.sale_id == QR_MATCH_SENTINEL
        assert txn.matched_reference == f"manual-entry:{entry.id}"

    async def test_confirmed_transaction_cannot_pay_qr(
        self, matcher, registry, transactions, db_session, clock
    ):
        """A transaction claimed by a manual entry is not also used for a QR payment."""
        payment = await _qr(registry, clock, amount="500")
        await ManualEntryService(db_session, clock=clock).create_entry(SAMPLE_MESSAGE, 3)
        await _txn(transactions, clock, "RK61H8I2Q7", amount="500.00")
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()

        assert len(report.entry_confirmations) == 1
        assert report.matched == []
        await db_session.refresh(payment)
        assert payment.status == QRPaymentStatus.PENDING.value

    async def test_linked_entry_carries_sale(self, matcher, transactions, db_session, clock):
        """The sale of a linked entry is recorded on the transaction."""
        service = ManualEntryService(db_session, clock=clock)
        entry = await service.create_entry(SAMPLE_MESSAGE, 3)
        await service.verify(entry.id, accept=True)
        await service.link_to_sale(entry.id, 77)
        txn = await _txn(transactions, clock, "RK61H8I2Q7", amount="500.00")
        await db_session.commit()

        report = await matcher.run_pass()

        assert report.entry_confirmations[0].auto_verified is False
        await db_session.refresh(txn)
        assert txn.sale_id == 77

    async def test_amount_mismatch_is_reported(self, matcher, transactions, db_session, clock):
        """A matching code with a different amount is flagged, not consumed."""
        entry = await ManualEntryService(db_session, clock=clock).create_entry(SAMPLE_MESSAGE, 3)
        txn = await _txn(transactions, clock, "RK61H8I2Q7", amount="50.00")
        await db_session.commit()

        report = await matcher.run_pass()

        assert report.entry_confirmations == []
        assert report.amount_mismatches == [entry.id]
        await db_session.refresh(txn)
        assert txn.sale_id is None

    async def test_invalid_entry_is_ignored(self, matcher, transactions, db_session, clock):
        """Rejected entries are never confirmed."""
        service = ManualEntryService(db_session, clock=clock)
        entry = await service.create_entry(SAMPLE_MESSAGE, 3)
        await service.verify(entry.id, accept=False)
        await _txn(transactions, clock, "RK61H8I2Q7", amount="500.00")
        await db_session.commit()

        report = await matcher.run_pass()

        assert report.entries_checked == 0
        assert report.entry_confirmations == []


class TestConcurrentPasses:
    """Tests for matcher passes racing on separate sessions."""

    CODE = "QK7AB12CDE"

    async def _seed(self, session_factory, clock, payments=4):
        async with session_factory() as session:
            registry = QRPaymentRegistry(session, clock=clock)
            references = [
                (await registry.create(Decimal("1000"), created_by_user_id=1)).reference
                for _ in range(payments)
            ]
            await UnmatchedTransactionRepository(session).create(
                self.CODE, Decimal("1000.00"), received_at=clock.now + timedelta(minutes=10)
            )
            await session.commit()
        clock.advance(minutes=15)
        return references

    async def _paid(self, session_factory):
        async with session_factory() as session:
            result = await session.execute(
                select(QRPayment).where(QRPayment.status == QRPaymentStatus.PAID.value)
            )
            paid = list(result.scalars().all())
            txn = await UnmatchedTransactionRepository(session).get_by_code(self.CODE)
        return paid, txn

    async def test_one_transaction_settles_one_payment(self, file_session_factory, clock):
        """Four passes competing for one transaction pay exactly one QR payment."""
        await self._seed(file_session_factory, clock)

        async def run_pass():
            async with file_session_factory() as session:
                return await ReconciliationMatcher(session, clock=clock).run_pass()

        reports = await asyncio.gather(*(run_pass() for _ in range(4)))

        matched = [pair for report in reports for pair in report.matched]
        assert len(matched) == 1
        assert all(report.errors == [] for report in reports)

        paid, txn = await self._paid(file_session_factory)
        assert [p.reference for p in paid] == [matched[0].reference]
        assert paid[0].transaction_code == self.CODE
        assert txn.sale_id == QR_MATCH_SENTINEL
        assert txn.matched_reference == paid[0].reference

    async def test_pass_racing_direct_confirmation(self, file_session_factory, clock):
        """A gateway confirmation and a pass on the same payment never both win."""
        references = await self._seed(file_session_factory, clock, payments=1)

        async def confirm():
            async with file_session_factory() as session:
                paid = await QRPaymentRegistry(session, clock=clock).mark_paid(
                    references[0], "R-DIRECT", "QK7DIRECT1"
                )
                await session.commit()
                return paid

        async def run_pass():
            async with file_session_factory() as session:
                return await ReconciliationMatcher(session, clock=clock).run_pass()

        confirmed, report = await asyncio.gather(confirm(), run_pass())

        assert confirmed != bool(report.matched)
        paid, txn = await self._paid(file_session_factory)
        assert len(paid) == 1
        if confirmed:
            assert paid[0].transaction_code == "QK7DIRECT1"
            assert txn.sale_id is None
        else:
            assert paid[0].transaction_code == self.CODE
            assert txn.matched_reference == references[0]


class TestMatchReport:
    """Tests for report rendering."""

    async def test_report_dicts(self, matcher, registry, transactions, db_session, clock):
        payment = await _qr(registry, clock)
        await _txn(transactions, clock, "QK7AB12CDE")
        await db_session.commit()
        clock.advance(minutes=15)

        report = await matcher.run_pass()
        summary = report.to_summary_dict()
        full = report.to_full_dict()

        assert summary["statistics"] == {
            "pending_checked": 1,
            "transactions_checked": 1,
            "entries_checked": 0,
            "qr_matched": 1,
            "entries_confirmed": 0,
            "errors": 0,
        }
        assert summary["completed_at"] == clock.now.isoformat()
        assert "matched" not in summary
        assert full["matched"][0]["reference"] == payment.reference
        assert full["matched"][0]["amount"] == "1000.00"
        assert full["errors"] == []
        assert report.total_matched == 1

    def test_empty_report(self):
        report = MatchReport()
        assert report.total_matched == 0
        assert report.to_summary_dict()["completed_at"] is None
