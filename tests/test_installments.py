"""
Test suite for the installment schedule manager

Tests plan generation, plan locking, bulk edits with per-row failures,
payment and skip transitions under concurrency, and wipes.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date, datetime, timezone

from lms_ledger.currency import Money, Currency
from lms_ledger.storage import InMemoryStorage
from lms_ledger.audit import AuditTrail
from lms_ledger.loans import LoanBook, TransactionType
from lms_ledger.installments import (
    InstallmentScheduleManager, InstallmentStatus, InstallmentEdit, add_months, parse_date
)
from lms_ledger.errors import (
    AlreadyScheduledError, ConflictError, NotFoundError, PlanLockedError, ValidationError
)


def gbp(amount):
    return Money(Decimal(amount), Currency.GBP)


class FlakyStorage(InMemoryStorage):
    """Storage whose conditional writes fail for chosen record ids"""

    def __init__(self):
        super().__init__()
        self.broken_ids = set()

    def compare_and_set(self, table, record_id, expected, updates):
        if record_id in self.broken_ids:
            raise ConnectionError("write timed out")
        return super().compare_and_set(table, record_id, expected, updates)


class ScheduleTestCase:

    def setup_method(self):
        self.storage = self.make_storage()
        self.audit_trail = AuditTrail(self.storage)
        self.loan_book = LoanBook(self.storage, self.audit_trail)
        self.manager = InstallmentScheduleManager(
            self.storage, self.loan_book, self.audit_trail,
            today=lambda: date(2025, 3, 15)
        )
        self.customer = self.loan_book.create_customer("Hina", "Raza")
        self.loan = self.loan_book.grant_loan(
            self.customer.id, gbp("1000.00"), 3,
            granted_at=datetime(2025, 1, 1, tzinfo=timezone.utc)
        )
        self.service = self.loan_book.transactions_for_loans(
            [self.loan.id], [TransactionType.SERVICE]
        )[0]

    def make_storage(self):
        return InMemoryStorage()

    def generate(self, amount="1000.00", term=3, first_due=date(2025, 2, 1)):
        return self.manager.generate(self.service.id, gbp(amount), term, first_due, actor="emp-1")


class TestHelpers:

    def test_add_months_clamps_month_end(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)

    def test_parse_date(self):
        assert parse_date("2025-02-01") == date(2025, 2, 1)
        assert parse_date("2025-02-01T10:00:00Z") == date(2025, 2, 1)
        with pytest.raises(ValidationError):
            parse_date("01/02/2025")
        with pytest.raises(ValidationError):
            parse_date(None)


class TestGenerate(ScheduleTestCase):

    def test_generate_splits_exactly(self):
        installments = self.generate()

        assert [i.installment_number for i in installments] == [1, 2, 3]
        assert [i.amount for i in installments] == [gbp("333.34"), gbp("333.33"), gbp("333.33")]
        assert [i.due_date for i in installments] == [date(2025, 2, 1), date(2025, 3, 1), date(2025, 4, 1)]
        assert all(i.status == InstallmentStatus.PENDING for i in installments)

        stored = self.manager.list_for_transaction(self.service.id)
        assert sum((i.amount for i in stored), gbp("0")) == gbp("1000.00")

    def test_generate_twice(self):
        self.generate()
        with pytest.raises(AlreadyScheduledError):
            self.generate()
        assert len(self.manager.list_for_transaction(self.service.id)) == 3

    def test_generate_validation(self):
        with pytest.raises(ValidationError):
            self.generate(term=0)
        with pytest.raises(ValidationError):
            self.generate(term=121)
        with pytest.raises(ValidationError):
            self.generate(amount="0.00")
        with pytest.raises(NotFoundError):
            self.manager.generate("missing", gbp("10.00"), 1, date(2025, 2, 1))

    def test_generate_requires_service_transaction(self):
        payment = self.loan_book.post_payment(self.loan.id, gbp("10.00"))
        with pytest.raises(ValidationError):
            self.manager.generate(payment.id, gbp("10.00"), 1, date(2025, 2, 1))

    def test_generate_audited(self):
        self.generate()
        views, total = self.audit_trail.query(self.service.id)
        assert total == 1
        assert views[0].entry.action == "SCHEDULE_GENERATED"

    def test_list_empty(self):
        assert self.manager.list_for_transaction("nothing-here") == []
        assert not self.manager.is_locked("nothing-here")

    def test_overdue_computed_on_read(self):
        installments = self.generate()
        today = self.manager.today()

        assert installments[0].effective_status(today) == InstallmentStatus.OVERDUE
        assert installments[1].effective_status(today) == InstallmentStatus.OVERDUE
        assert installments[2].effective_status(today) == InstallmentStatus.PENDING
        stored = self.storage.load("loan_installments", installments[0].id)
        assert stored["status"] == "pending"
        assert installments[0].to_response(today)["status"] == "overdue"


class TestEdit(ScheduleTestCase):

    def test_edit_updates_rows(self):
        installments = self.generate()
        result = self.manager.edit(self.service.id, [
            InstallmentEdit(installments[0].id, due_date=date(2025, 2, 10), amount=gbp("400.00")),
            InstallmentEdit(installments[1].id, amount=gbp("300.00")),
        ], actor="emp-1")

        assert result.success
        assert result.updated == [installments[0].id, installments[1].id]
        stored = self.manager.list_for_transaction(self.service.id)
        assert stored[0].due_date == date(2025, 2, 10)
        assert stored[0].amount == gbp("400.00")
        assert stored[1].amount == gbp("300.00")
        assert stored[1].due_date == date(2025, 3, 1)

    def test_paid_installment_locks_whole_plan(self):
        installments = self.generate()
        self.manager.mark_paid(installments[0].id, gbp("333.34"))
        assert self.manager.is_locked(self.service.id)

        for installment in installments:
            with pytest.raises(PlanLockedError):
                self.manager.edit(self.service.id, [
                    InstallmentEdit(installment.id, amount=gbp("1.00"))
                ])

    def test_partial_payment_locks_plan(self):
        installments = self.generate()
        self.manager.mark_paid(installments[2].id, gbp("10.00"))

        with pytest.raises(PlanLockedError):
            self.manager.edit(self.service.id, [InstallmentEdit(installments[0].id, amount=gbp("1.00"))])

    def test_skipped_installment_does_not_lock(self):
        installments = self.generate()
        self.manager.skip(installments[0].id)
        assert not self.manager.is_locked(self.service.id)

    def test_edit_validation_happens_before_writes(self):
        installments = self.generate()

        with pytest.raises(ValidationError):
            self.manager.edit(self.service.id, [
                InstallmentEdit(installments[0].id, amount=gbp("1.00")),
                InstallmentEdit("foreign-id", amount=gbp("1.00")),
            ])
        with pytest.raises(ValidationError):
            self.manager.edit(self.service.id, [
                InstallmentEdit(installments[0].id, amount=gbp("1.00")),
                InstallmentEdit(installments[0].id, amount=gbp("2.00")),
            ])
        with pytest.raises(ValidationError):
            self.manager.edit(self.service.id, [])

        assert self.manager.list_for_transaction(self.service.id)[0].amount == gbp("333.34")

    def test_edit_parse(self):
        edit = InstallmentEdit.parse("inst-1", "2025-05-01", "120.50", Currency.GBP)
        assert edit.due_date == date(2025, 5, 1)
        assert edit.amount == gbp("120.50")

        with pytest.raises(ValidationError):
            InstallmentEdit.parse("inst-1", None, None, Currency.GBP)
        with pytest.raises(ValidationError):
            InstallmentEdit.parse("inst-1", None, "0", Currency.GBP)
        with pytest.raises(ValidationError):
            InstallmentEdit.parse("", "2025-05-01", None, Currency.GBP)

    def test_edit_unknown_plan(self):
        with pytest.raises(NotFoundError):
            self.manager.edit("no-plan", [InstallmentEdit("x", amount=gbp("1.00"))])


class TestEditPartialFailure(ScheduleTestCase):

    def make_storage(self):
        return FlakyStorage()

    def test_failed_row_reported_and_others_written(self):
        installments = self.generate()
        self.storage.broken_ids.add(installments[1].id)

        result = self.manager.edit(self.service.id, [
            InstallmentEdit(i.id, amount=gbp("100.00")) for i in installments
        ])

        assert not result.success
        assert result.updated == [installments[0].id, installments[2].id]
        assert list(result.failed) == [installments[1].id]
        assert "write timed out" in result.failed[installments[1].id]

        stored = self.manager.list_for_transaction(self.service.id)
        assert [i.amount for i in stored] == [gbp("100.00"), gbp("333.33"), gbp("100.00")]


class TestMarkPaid(ScheduleTestCase):

    def test_full_payment(self):
        installments = self.generate()
        paid = self.manager.mark_paid(
            installments[0].id, gbp("333.34"), payment_method="Cash",
            actor="emp-1", paid_on=date(2025, 2, 1)
        )

        assert paid.status == InstallmentStatus.PAID
        stored = self.manager.require_installment(installments[0].id)
        assert stored.status == InstallmentStatus.PAID
        assert stored.amount_paid == gbp("333.34")
        assert stored.paid_date == date(2025, 2, 1)
        assert stored.payment_method == "Cash"

        payments = self.loan_book.transactions_for_loans([self.loan.id], [TransactionType.PAYMENT])
        assert payments[0].remark == "Installment payment - Term 1/3"
        assert self.loan_book.require_loan(self.loan.id).current_balance == gbp("666.66")

    def test_partial_then_paid(self):
        installments = self.generate()
        first = self.manager.mark_paid(installments[1].id, gbp("100.00"))
        assert first.status == InstallmentStatus.PARTIAL

        second = self.manager.mark_paid(installments[1].id, gbp("233.33"))
        assert second.status == InstallmentStatus.PAID
        assert second.amount_paid == gbp("333.33")

    def test_terminal_states_conflict(self):
        installments = self.generate()
        self.manager.mark_paid(installments[0].id, gbp("333.34"))
        self.manager.skip(installments[1].id)

        with pytest.raises(ConflictError):
            self.manager.mark_paid(installments[0].id, gbp("1.00"))
        with pytest.raises(ConflictError):
            self.manager.mark_paid(installments[1].id, gbp("1.00"))

    def test_validation(self):
        installments = self.generate()
        with pytest.raises(ValidationError):
            self.manager.mark_paid(installments[0].id, gbp("0.00"))
        with pytest.raises(ValidationError):
            self.manager.mark_paid(installments[0].id, gbp("1000.01"))
        with pytest.raises(NotFoundError):
            self.manager.mark_paid("missing", gbp("1.00"))
        assert self.manager.require_installment(installments[0].id).status == InstallmentStatus.PENDING

    def test_without_recording_payment(self):
        installments = self.generate()
        self.manager.mark_paid(installments[0].id, gbp("333.34"), record_payment=False)
        assert self.loan_book.total_paid(self.loan.id) == gbp("0.00")

    def test_concurrent_mark_paid_single_winner(self):
        installments = self.generate()
        target = installments[0].id
        barrier = threading.Barrier(2)
        outcomes = []

        def pay():
            barrier.wait()
            try:
                self.manager.mark_paid(target, gbp("333.34"))
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["conflict", "ok"]
        assert self.manager.require_installment(target).status == InstallmentStatus.PAID
        assert self.loan_book.total_paid(self.loan.id) == gbp("333.34")

    def test_stale_write_conflicts(self):
        installments = self.generate()
        self.storage.update("loan_installments", installments[0].id, {"status": "partial"})

        self.storage.compare_and_set = lambda *args: False
        with pytest.raises(ConflictError):
            self.manager.mark_paid(installments[0].id, gbp("1.00"))


class TestSkip(ScheduleTestCase):

    def test_skip_redistributes_remaining_balance(self):
        installments = self.generate()
        self.manager.mark_paid(installments[0].id, gbp("333.34"))

        result = self.manager.skip(installments[1].id, actor="emp-1")

        assert result.installment.status == InstallmentStatus.SKIPPED
        assert result.remaining_balance == gbp("666.66")
        assert [i.id for i in result.redistributed] == [installments[2].id]

        stored = self.manager.list_for_transaction(self.service.id)
        assert stored[1].status == InstallmentStatus.SKIPPED
        assert stored[1].amount_paid == gbp("0.00")
        assert stored[2].amount == gbp("666.66")

    def test_skip_spreads_across_pending(self):
        installments = self.generate(amount="1000.00", term=4)
        result = self.manager.skip(installments[0].id)

        assert [i.amount for i in result.redistributed] == [gbp("333.34"), gbp("333.33"), gbp("333.33")]
        total = sum((i.amount for i in self.manager.list_for_transaction(self.service.id)
                     if i.status == InstallmentStatus.PENDING), gbp("0"))
        assert total == gbp("1000.00")

    def test_skip_invalid_transitions(self):
        installments = self.generate()
        self.manager.mark_paid(installments[0].id, gbp("333.34"))
        self.manager.mark_paid(installments[1].id, gbp("10.00"))
        self.manager.skip(installments[2].id)

        for installment in installments:
            with pytest.raises(ConflictError):
                self.manager.skip(installment.id)

    def test_skip_last_pending(self):
        installments = self.generate(term=1)
        result = self.manager.skip(installments[0].id)
        assert result.redistributed == []


class TestWipe(ScheduleTestCase):

    def test_wipe_removes_plan(self):
        installments = self.generate()
        self.manager.mark_paid(installments[0].id, gbp("333.34"))

        assert self.manager.wipe(self.service.id, actor="emp-1") == 3
        assert self.manager.list_for_transaction(self.service.id) == []

        # A wiped plan can be generated again
        assert len(self.generate()) == 3
        actions = [v.entry.action for v in self.audit_trail.query(self.service.id)[0]]
        assert "SCHEDULE_WIPED" in actions

    def test_wipe_empty(self):
        assert self.manager.wipe("nothing") == 0


class TestCreateMissing(ScheduleTestCase):

    def test_creates_only_missing_plans(self):
        self.generate()
        other_loan = self.loan_book.grant_loan(
            self.customer.id, gbp("600.00"), 6,
            deposit=gbp("120.00"),
            granted_at=datetime(2025, 1, 31, tzinfo=timezone.utc)
        )
        other_service = self.loan_book.transactions_for_loans(
            [other_loan.id], [TransactionType.SERVICE]
        )[0]

        summary = self.manager.create_missing_schedules(default_term_months=3)

        assert summary["total"] == 2
        assert summary["skipped"] == 1
        assert summary["created"] == 6
        assert summary["errors"] == 0

        created = self.manager.list_for_transaction(other_service.id)
        assert [i.amount for i in created] == [gbp("80.00")] * 6
        assert created[0].due_date == date(2025, 2, 28)

        again = self.manager.create_missing_schedules()
        assert again["created"] == 0
        assert again["skipped"] == 2
