"""Match gateway-confirmed transactions against open payments.

A customer can pay the till directly instead of through the push prompt or
the QR session. The gateway still confirms the payment, and the callback
collaborator records it as an unmatched transaction. A matcher pass then:

1. Confirms manual entries whose transaction code the gateway has now
   reported, so the same payment cannot also satisfy a QR payment.
2. Resolves pending QR payments by amount and time window: a transaction
   qualifies when its amount is within 0.01 of the QR amount and it was
   received between the QR payment's creation and expiry. The earliest
   qualifying transaction wins; a tie on the earliest time is left for a
   human and reported as ambiguous.

Each pair is claimed with a compare-and-swap on the transaction's version
and committed on its own. An error on one pair is logged, rolled back and
reported; the pass carries on with the rest.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from ..database import (
    ManualEntryRepository,
    ManualEntryStatus,
    UnmatchedTransactionRepository,
    QR_MATCH_SENTINEL,
    utcnow,
)
from ..manual_entries.service import ManualEntryService
from ..registry import QRPaymentRegistry
from .models import (
    EntryCandidate,
    EntryConfirmation,
    MatchError,
    MatchReport,
    MatchedPair,
    QRCandidate,
    TransactionCandidate,
)

logger = logging.getLogger(__name__)

AMOUNT_EPSILON = Decimal("0.01")


class ReconciliationMatcher:
    """One instance per session; call run_pass() as often as needed."""

    def __init__(
        self,
        session: AsyncSession,
        registry: Optional[QRPaymentRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        amount_epsilon: Decimal = AMOUNT_EPSILON,
        qr_batch_size: int = 100,
        transaction_batch_size: int = 500,
    ):
        """Initialize the matcher.

        Args:
            session: Async database session; the matcher commits per pair.
            registry: QR registry to resolve payments through. Defaults to
                one on the same session and clock.
            clock: Returns naive UTC "now".
            amount_epsilon: Amounts closer than this are equal.
            qr_batch_size: Pending QR payments considered per pass.
            transaction_batch_size: Unconsumed transactions considered per pass.
        """
        self.session = session
        self.registry = registry or QRPaymentRegistry(session, clock=clock)
        self.transactions = UnmatchedTransactionRepository(session)
        self.entries = ManualEntryRepository(session)
        self.entry_service = ManualEntryService(session, clock=clock)
        self._clock = clock
        self.amount_epsilon = amount_epsilon
        self.qr_batch_size = qr_batch_size
        self.transaction_batch_size = transaction_batch_size

    def amounts_match(self, expected: Decimal, received: Decimal) -> bool:
        return abs(Decimal(received) - Decimal(expected)) < self.amount_epsilon

    def qualifies(self, qr: QRCandidate, txn: TransactionCandidate) -> bool:
        """Amount within epsilon and received inside the QR payment's window."""
        return (
            self.amounts_match(qr.amount, txn.amount)
            and qr.created_at <= txn.received_at <= qr.expires_at
        )

    async def run_pass(self) -> MatchReport:
        """Run one matcher pass over current pending payments and transactions."""
        report = MatchReport(started_at=self._clock())

        # Snapshot rows up front; ORM instances expire on a per-pair rollback.
        pending = [
            QRCandidate.model_validate(p)
            for p in await self.registry.list_pending(limit=self.qr_batch_size, oldest_first=True)
        ]
        transactions = [
            TransactionCandidate.model_validate(t)
            for t in await self.transactions.list_unconsumed(limit=self.transaction_batch_size)
        ]
        entries = [
            EntryCandidate.model_validate(e)
            for e in await self.entry_service.list_with_codes()
        ]
        report.pending_checked = len(pending)
        report.transactions_checked = len(transactions)
        report.entries_checked = len(entries)

        claimed: Set[int] = set()
        if transactions:
            await self._confirm_entries(entries, transactions, claimed, report)
            await self._match_qr_payments(pending, transactions, claimed, report)

        report.completed_at = self._clock()
        logger.info(
            f"Matcher pass: {len(report.matched)} QR matched, "
            f"{len(report.entry_confirmations)} entries confirmed, "
            f"{len(report.ambiguous)} ambiguous, {len(report.errors)} errors"
        )
        return report

    async def _confirm_entries(
        self,
        entries: List[EntryCandidate],
        transactions: List[TransactionCandidate],
        claimed: Set[int],
        report: MatchReport,
    ) -> None:
        by_code = {t.transaction_code.upper(): t for t in transactions}
        for entry in entries:
            txn = by_code.get(entry.transaction_code.upper())
            if txn is None or txn.id in claimed:
                continue
            if not self.amounts_match(entry.amount, txn.amount):
                logger.warning(
                    f"Manual entry {entry.id} quotes {txn.transaction_code} for {entry.amount} "
                    f"but gateway reported {txn.amount}"
                )
                report.amount_mismatches.append(entry.id)
                continue

            claimed.add(txn.id)
            try:
                confirmation = await self._confirm_entry(entry, txn)
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error(f"Failed to confirm manual entry {entry.id} with {txn.transaction_code}: {e}")
                report.errors.append(MatchError(
                    reference=f"manual-entry:{entry.id}",
                    transaction_code=txn.transaction_code,
                    error=f"{type(e).__name__}: {e}",
                ))
                continue
            if confirmation is not None:
                report.entry_confirmations.append(confirmation)

    async def _confirm_entry(
        self,
        entry: EntryCandidate,
        txn: TransactionCandidate,
    ) -> Optional[EntryConfirmation]:
        sale_id = entry.sale_id if entry.sale_id is not None else QR_MATCH_SENTINEL
        consumed = await self.transactions.consume(
            txn.id, txn.version, sale_id, matched_reference=f"manual-entry:{entry.id}"
        )
        if not consumed:
            logger.info(f"Transaction {txn.transaction_code} consumed elsewhere, skipping entry {entry.id}")
            return None

        auto_verified = False
        if entry.status == ManualEntryStatus.PENDING.value:
            auto_verified = await self.entries.transition(
                entry.id,
                ManualEntryStatus.PENDING.value,
                {
                    "is_verified": True,
                    "verified_at": self._clock(),
                    "status": ManualEntryStatus.VERIFIED.value,
                    "verification_notes": f"Confirmed by gateway transaction {txn.transaction_code}",
                },
            )
        logger.info(f"Manual entry {entry.id} confirmed by gateway transaction {txn.transaction_code}")
        return EntryConfirmation(
            entry_id=entry.id,
            transaction_code=txn.transaction_code,
            amount=txn.amount,
            auto_verified=auto_verified,
        )

    async def _match_qr_payments(
        self,
        pending: List[QRCandidate],
        transactions: List[TransactionCandidate],
        claimed: Set[int],
        report: MatchReport,
    ) -> None:
        for qr in pending:
            # transactions is ordered by received_at, so the first candidate is earliest
            candidates = [
                t for t in transactions if t.id not in claimed and self.qualifies(qr, t)
            ]
            if not candidates:
                continue

            chosen = candidates[0]
            if len(candidates) > 1:
                report.multiple_candidates.append(qr.reference)
                tied = [t for t in candidates if t.received_at == chosen.received_at]
                if len(tied) > 1:
                    logger.warning(
                        f"QR payment {qr.reference} has {len(tied)} transactions received at "
                        f"{chosen.received_at.isoformat()}, leaving for manual review"
                    )
                    report.ambiguous.append(qr.reference)
                    continue
                logger.warning(
                    f"QR payment {qr.reference} has {len(candidates)} qualifying transactions, "
                    f"taking earliest {chosen.transaction_code}"
                )

            claimed.add(chosen.id)
            try:
                pair = await self._claim(qr, chosen, len(candidates))
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error(f"Failed to match {qr.reference} with {chosen.transaction_code}: {e}")
                report.errors.append(MatchError(
                    reference=qr.reference,
                    transaction_code=chosen.transaction_code,
                    error=f"{type(e).__name__}: {e}",
                ))
                continue

            if pair is None:
                report.lost_races.append(qr.reference)
            else:
                report.matched.append(pair)

    async def _claim(
        self,
        qr: QRCandidate,
        txn: TransactionCandidate,
        candidates: int,
    ) -> Optional[MatchedPair]:
        consumed = await self.transactions.consume(
            txn.id, txn.version, QR_MATCH_SENTINEL, matched_reference=qr.reference
        )
        if not consumed:
            logger.info(f"Transaction {txn.transaction_code} consumed elsewhere, skipping {qr.reference}")
            return None

        code = txn.transaction_code
        if not await self.registry.mark_paid(qr.reference, code, code):
            # Someone else resolved the QR payment first; give the transaction back.
            await self.transactions.release(txn.id, txn.version + 1)
            return None

        logger.info(f"Matched QR payment {qr.reference} with transaction {code}")
        return MatchedPair(
            reference=qr.reference,
            transaction_code=code,
            amount=txn.amount,
            received_at=txn.received_at,
            candidates=candidates,
        )
