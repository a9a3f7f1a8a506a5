import threading
import unittest
from datetime import timedelta
from unittest import mock

from lending_fixtures import TODAY, LendingTestCase

from models.lending_models import LOAN_BORROWED, LOAN_OVERDUE
from services import loan_service
from services.errors import NotFound
from services.loan_service import complete_loan, create_loan, get_loan
from services.overdue_service import OverdueSweeper, SweepResult, run_overdue_sweep


class OverdueSweepTests(LendingTestCase):
    def setUp(self):
        super().setUp()
        self.item = self.make_item(total=10, name="Oscilloscope")

    def _loan(self, due_in_days, borrower="Ada"):
        return create_loan(self.db, self.item.ItemID, 1, TODAY + timedelta(days=due_in_days), borrower, clock=self.clock)

    def test_sweep_promotes_only_past_due_borrowed_loans(self):
        late = self._loan(1)
        also_late = self._loan(2, "Grace")
        on_time = self._loan(30, "Linus")
        returned = self._loan(1, "Barbara")
        complete_loan(self.db, returned.LoanID, clock=self.clock)
        self.clock.advance(days=5)

        result = run_overdue_sweep(self.db, self.clock)

        self.assertEqual((result.scanned, result.updated, result.skipped, result.failed), (2, 2, 0, 0))
        self.assertEqual(get_loan(self.db, late.LoanID).Status, LOAN_OVERDUE)
        self.assertEqual(get_loan(self.db, also_late.LoanID).Status, LOAN_OVERDUE)
        self.assertEqual(get_loan(self.db, on_time.LoanID).Status, LOAN_BORROWED)
        self.assertEqual(self.notification_types().count("Overdue"), 2)
        self.assertEqual(self.item_row(self.item.ItemID).InUseQuantity, 3)

    def test_second_sweep_changes_nothing(self):
        self._loan(1)
        self.clock.advance(days=2)
        run_overdue_sweep(self.db, self.clock)

        again = run_overdue_sweep(self.db, self.clock)

        self.assertEqual(again.to_dict()["scanned"], 0)
        self.assertEqual(again.updated, 0)
        self.assertEqual(self.notification_types().count("Overdue"), 1)

    def test_loan_promoted_between_scan_and_update_is_skipped(self):
        loan = self._loan(1)
        self.clock.advance(days=2)
        real_mark_overdue = loan_service.mark_overdue

        def promoted_elsewhere(db, loan_id, clock, notify=False):
            real_mark_overdue(db, loan_id, clock)
            return real_mark_overdue(db, loan_id, clock, notify=notify)

        with mock.patch("services.overdue_service.mark_overdue", side_effect=promoted_elsewhere):
            result = run_overdue_sweep(self.db, self.clock)

        self.assertEqual((result.updated, result.skipped), (0, 1))
        self.assertEqual(get_loan(self.db, loan.LoanID).Status, LOAN_OVERDUE)

    def test_failures_are_collected_per_loan(self):
        loan = self._loan(1)
        self.clock.advance(days=2)

        with mock.patch("services.overdue_service.mark_overdue", side_effect=NotFound("gone")):
            result = run_overdue_sweep(self.db, self.clock)

        self.assertEqual(result.failed, 1)
        self.assertEqual(result.failures, [{"loanID": loan.LoanID, "code": "not_found", "message": "gone"}])

    def test_due_today_is_not_overdue(self):
        loan = self._loan(0)
        result = run_overdue_sweep(self.db, self.clock)
        self.assertEqual(result.scanned, 0)
        self.assertEqual(get_loan(self.db, loan.LoanID).Status, LOAN_BORROWED)


class OverdueSweeperTests(LendingTestCase):
    def test_tick_runs_one_pass_in_its_own_session(self):
        item = self.make_item(total=3)
        loan = create_loan(self.db, item.ItemID, 1, TODAY + timedelta(days=1), "Ada", clock=self.clock)
        self.clock.advance(days=3)
        sweeper = OverdueSweeper(self.SessionLocal, interval_seconds=0, clock=self.clock)

        self.assertEqual(sweeper.tick().updated, 1)
        self.assertEqual(sweeper.tick().updated, 0)
        self.assertEqual(get_loan(self.db, loan.LoanID).Status, LOAN_OVERDUE)

    def test_tick_logs_and_swallows_pass_failure(self):
        session = mock.MagicMock()
        sweeper = OverdueSweeper(lambda: session, interval_seconds=0)

        with mock.patch("services.overdue_service.run_overdue_sweep", side_effect=RuntimeError("boom")):
            with self.assertLogs("lab_lending.sweep", level="ERROR"):
                self.assertIsNone(sweeper.tick())
        session.close.assert_called_once()

    def test_zero_interval_never_starts(self):
        sweeper = OverdueSweeper(mock.MagicMock(), interval_seconds=0)
        sweeper.start()
        self.assertFalse(sweeper.is_running)
        sweeper.stop()

    def test_start_runs_immediately_and_stop_joins(self):
        ran = threading.Event()

        def record_pass(db, clock):
            ran.set()
            return SweepResult()

        sweeper = OverdueSweeper(mock.MagicMock(), interval_seconds=3600)
        with mock.patch("services.overdue_service.run_overdue_sweep", side_effect=record_pass):
            sweeper.start()
            self.assertTrue(ran.wait(timeout=5))
            self.assertTrue(sweeper.is_running)
            sweeper.stop(timeout=5)

        self.assertFalse(sweeper.is_running)


if __name__ == "__main__":
    unittest.main()
