"""
Schedule Synchronizer Module

Keeps every loan's persisted schedule and cached progress fields consistent
with its terms and its payment ledger:

- ensure_schedule creates a loan's schedule at most once, relying on the
  storage uniqueness of deterministic installment ids to reject a concurrent
  second writer.
- resync reruns reconciliation and moves the loan cache (and persisted
  installment statuses) toward what the ledger says.
- sync_all does both for every loan, continuing past failures.
"""

from datetime import date
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from .currency import Money
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent, EventHandler
from .schedule import LoanTerms, Installment, generate_schedule
from .reconciliation import LoanStatus, ReconciliationResult, IntegrityAnomaly, reconcile
from .exceptions import ScheduleConflictError, DuplicateRecordError, LoanStateError
from .logging_config import get_logger, log_action


@dataclass
class SyncReport:
    """Per-loan tally of a batch synchronization"""
    total: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    schedules_created: int = 0
    caches_repaired: int = 0
    anomalies: List[IntegrityAnomaly] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    def to_dict(self) -> Dict:
        return {
            'total': self.total,
            'succeeded': self.success_count,
            'failed': self.failure_count,
            'failures': dict(self.failed),
            'schedules_created': self.schedules_created,
            'caches_repaired': self.caches_repaired,
            'anomalies': [a.to_dict() for a in self.anomalies]
        }


def _is_complete(installments: List[Installment], expected: int) -> bool:
    return [i.sequence for i in installments] == list(range(1, expected + 1))


class ScheduleSynchronizer:
    """
    Ensures persisted schedules exist and repairs loan cache drift
    """

    def __init__(
        self,
        loan_manager,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        discard_partial: bool = True
    ):
        self.loan_manager = loan_manager
        self.storage = loan_manager.storage
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.discard_partial = discard_partial
        self.logger = get_logger("loan_portfolio.synchronizer")

    def ensure_schedule(self, loan_id: str,
                        observers: Optional[List[EventHandler]] = None) -> int:
        """
        Make sure a loan has its full persisted schedule

        Args:
            loan_id: Loan ID
            observers: Per-call event observers

        Returns:
            Number of installments created (0 when the schedule already existed)

        Raises:
            LoanNotFoundError: if the loan does not exist
            ScheduleConflictError: if a partial schedule cannot be safely
                discarded, or another caller created the schedule concurrently
        """
        loan = self.loan_manager.require_loan(loan_id)
        expected = loan.terms.installment_count
        existing = self.loan_manager.get_installments(loan_id)

        if existing and _is_complete(existing, expected):
            return 0

        schedule = generate_schedule(loan.terms, loan.id)

        removed = None
        try:
            with self.storage.atomic():
                # Another caller may have completed the schedule since the first read
                existing = self.loan_manager.get_installments(loan_id)
                if existing and _is_complete(existing, expected):
                    return 0
                if existing:
                    removed = self._discard_partial(loan_id, expected, existing)
                self.loan_manager.insert_installments(schedule)
        except DuplicateRecordError as e:
            log_action(self.logger, "warning",
                       f"Schedule for loan {loan_id} was created by another caller",
                       action="schedule_conflict", resource=f"loan:{loan_id}")
            raise ScheduleConflictError(
                loan_id, f"Schedule for loan {loan_id} already exists (concurrent creation)",
                expected=expected, found=len(self.loan_manager.get_installments(loan_id))
            ) from e

        if removed is not None:
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_DISCARDED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={"expected": expected, "found": len(existing), "removed": removed}
            )

        self.audit_trail.log_event(
            event_type=AuditEventType.SCHEDULE_CREATED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={
                "installments": len(schedule),
                "first_due_date": schedule[0].due_date.isoformat(),
                "last_due_date": schedule[-1].due_date.isoformat()
            }
        )
        self.dispatcher.emit(DomainEvent.SCHEDULE_CREATED, "loan", loan_id,
                             {"installments": len(schedule)}, observers)
        log_action(self.logger, "info", f"Created {len(schedule)} installments for loan {loan_id}",
                   action="schedule_created", resource=f"loan:{loan_id}")
        return len(schedule)

    def _discard_partial(self, loan_id: str, expected: int, existing: List[Installment]) -> int:
        """Drop a partial schedule, or refuse when that could lose ledger links"""
        found = len(existing)
        payments = self.loan_manager.count_payment_records(loan_id)
        if not self.discard_partial or payments:
            log_action(self.logger, "error",
                       f"Partial schedule for loan {loan_id}: {found} of {expected} installments",
                       action="schedule_conflict", resource=f"loan:{loan_id}",
                       extra={"expected": expected, "found": found, "payments": payments})
            raise ScheduleConflictError(
                loan_id,
                f"Loan {loan_id} has a partial schedule ({found} of {expected} installments) "
                f"that cannot be safely discarded",
                expected=expected, found=found
            )

        removed = self.loan_manager.delete_installments(loan_id)
        log_action(self.logger, "warning",
                   f"Discarded partial schedule for loan {loan_id} ({found} of {expected})",
                   action="schedule_discarded", resource=f"loan:{loan_id}")
        return removed

    def reconcile_loan(self, loan_id: str, as_of: Optional[date] = None) -> ReconciliationResult:
        """Read-only reconciliation of a loan against its ledger"""
        self.loan_manager.require_loan(loan_id)
        return reconcile(
            self.loan_manager.get_installments(loan_id),
            self.loan_manager.get_payment_records(loan_id),
            as_of
        )

    def resync(self, loan_id: str, as_of: Optional[date] = None,
               observers: Optional[List[EventHandler]] = None) -> int:
        """
        Recompute a loan's cached progress from its payment ledger

        Returns:
            Paid installment count after repair

        Raises:
            LoanNotFoundError: if the loan does not exist
            ScheduleConflictError: if the loan has no complete schedule
        """
        result, _ = self._resync(loan_id, as_of, observers)
        return result.paid_count

    def _resync(self, loan_id: str, as_of: Optional[date],
                observers: Optional[List[EventHandler]]) -> Tuple[ReconciliationResult, bool]:
        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            persisted = self.loan_manager.get_installments(loan_id)
            expected = loan.terms.installment_count
            if not _is_complete(persisted, expected):
                raise ScheduleConflictError(
                    loan_id,
                    f"Loan {loan_id} has {len(persisted)} of {expected} installments; "
                    f"run ensure_schedule first",
                    expected=expected, found=len(persisted)
                )

            result = reconcile(persisted, self.loan_manager.get_payment_records(loan_id), as_of)

            for before, after in zip(persisted, result.installments):
                if before != after:
                    self.loan_manager.save_installment(after)

            status = result.loan_status
            # Default flags come from outside; only full payoff clears them
            if loan.status == LoanStatus.DEFAULTED and status != LoanStatus.COMPLETED:
                status = LoanStatus.DEFAULTED

            previous = {
                "paid_installments": loan.paid_installments,
                "remaining_balance": str(loan.remaining_balance.amount),
                "status": loan.status.value
            }
            current = {
                "paid_installments": result.paid_count,
                "remaining_balance": str(result.remaining_balance.amount),
                "status": status.value
            }
            changed = previous != current
            if changed:
                loan.paid_installments = result.paid_count
                loan.remaining_balance = result.remaining_balance
                loan.status = status
                self.loan_manager.save_loan(loan)

        for anomaly in result.anomalies:
            log_action(self.logger, "warning", f"Integrity anomaly on loan {loan_id}: {anomaly.detail}",
                       action="integrity_anomaly", resource=f"loan:{loan_id}",
                       extra=anomaly.to_dict())
            self.dispatcher.emit(DomainEvent.INTEGRITY_ANOMALY, "loan", loan_id,
                                 anomaly.to_dict(), observers)

        if changed:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CACHE_REPAIRED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={"before": previous, "after": current}
            )
            self.dispatcher.emit(DomainEvent.LOAN_RESYNCED, "loan", loan_id,
                                 {"before": previous, "after": current}, observers)
            if status == LoanStatus.COMPLETED and previous["status"] != LoanStatus.COMPLETED.value:
                self.dispatcher.emit(DomainEvent.LOAN_COMPLETED, "loan", loan_id,
                                     {"paid_installments": result.paid_count}, observers)
            log_action(self.logger, "info", f"Repaired cache of loan {loan_id}",
                       action="loan_cache_repaired", resource=f"loan:{loan_id}",
                       extra={"before": previous, "after": current})

        return result, changed

    def sync_all(self, as_of: Optional[date] = None) -> SyncReport:
        """
        Ensure schedules and resync every loan in the portfolio

        Individual loan failures are recorded in the report and never abort
        the batch.
        """
        report = SyncReport()
        for loan in self.loan_manager.list_loans():
            report.total += 1
            try:
                report.schedules_created += 1 if self.ensure_schedule(loan.id) else 0
                result, changed = self._resync(loan.id, as_of, None)
            except Exception as e:
                report.failed[loan.id] = f"{type(e).__name__}: {e}"
                log_action(self.logger, "error", f"Synchronization failed for loan {loan.id}: {e}",
                           action="sync_failed", resource=f"loan:{loan.id}")
                continue

            report.succeeded.append(loan.id)
            report.caches_repaired += 1 if changed else 0
            report.anomalies.extend(result.anomalies)

        log_action(self.logger, "info",
                   f"Synchronized {report.success_count} of {report.total} loans",
                   action="sync_all", extra=report.to_dict())
        return report

    def regenerate_schedule(self, loan_id: str, terms: Optional[LoanTerms] = None,
                            observers: Optional[List[EventHandler]] = None) -> List[Installment]:
        """
        Discard and recreate a loan's entire schedule, optionally with new terms

        Raises:
            InvalidTermsError: if the new terms are invalid or in another currency
            LoanStateError: if any payment has been recorded for the loan
        """
        loan = self.loan_manager.require_loan(loan_id)
        terms = terms or loan.terms
        self.loan_manager.check_currency(terms)
        schedule = generate_schedule(terms, loan_id)

        payment_count = self.loan_manager.count_payment_records(loan_id)
        if payment_count:
            raise LoanStateError(
                loan_id, f"Loan {loan_id} has {payment_count} recorded payments; "
                         f"its schedule cannot be regenerated"
            )

        total = Money.sum((i.total for i in schedule), terms.currency)
        with self.storage.atomic():
            removed = self.loan_manager.delete_installments(loan_id)
            self.loan_manager.insert_installments(schedule)
            loan = replace(
                loan,
                terms=terms,
                installment_value=schedule[0].total,
                total_amount=total,
                end_date=schedule[-1].due_date,
                remaining_balance=total,
                paid_installments=0,
                status=LoanStatus.ACTIVE
            )
            self.loan_manager.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.SCHEDULE_REGENERATED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"removed": removed, "created": len(schedule), "terms": terms.to_dict()}
        )
        self.dispatcher.emit(DomainEvent.SCHEDULE_REGENERATED, "loan", loan_id,
                             {"installments": len(schedule)}, observers)
        log_action(self.logger, "info", f"Regenerated schedule of loan {loan_id}",
                   action="schedule_regenerated", resource=f"loan:{loan_id}")
        return schedule
