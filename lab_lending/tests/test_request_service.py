import re
import unittest
from datetime import timedelta
from unittest import mock

from lending_fixtures import TODAY, LendingTestCase

from db.store import store_call
from models.lending_models import (
    LOAN_BORROWED,
    LOAN_OVERDUE,
    LOAN_RETURNED,
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    REQUEST_RELEASED,
    BorrowRequest,
)
from services import loan_service
from services.errors import AlreadyTerminal, Conflict, InsufficientStock, NotFound, ValidationError
from services.ledger_service import release, reserve
from services.loan_service import Disposition, create_loan, get_loan
from services.reconciliation_service import return_loan
from services.request_service import (
    RequestLineInput,
    approve_request,
    create_request,
    delete_request,
    get_request,
    get_request_by_reference,
    list_requests,
    reject_request,
    release_request,
    serialize_request,
)


class RequestTestCase(LendingTestCase):
    def setUp(self):
        super().setUp()
        self.desired = TODAY + timedelta(days=14)

    def _request(self, lines, borrower="Ada Lovelace", desired=None):
        return create_request(
            self.db,
            borrower,
            "S-100",
            desired or self.desired,
            [RequestLineInput(item_id, quantity) for item_id, quantity in lines],
            clock=self.clock,
        )


class CreateRequestTests(RequestTestCase):
    def test_create_assigns_reference_and_queues_notice(self):
        item = self.make_item(total=5)
        request = self._request([(item.ItemID, 2)])

        self.assertRegex(request.ReferenceCode, r"^REQ-\d{6}$")
        self.assertEqual(request.Status, REQUEST_PENDING)
        self.assertEqual(request.RequestedOn, TODAY)
        self.assertEqual(self.notification_types(), ["RequestSubmitted"])
        self.assertEqual(self.item_row(item.ItemID).InUseQuantity, 0)

    def test_create_validates_lines(self):
        item = self.make_item(total=5)
        with self.assertRaises(ValidationError):
            self._request([])
        with self.assertRaises(ValidationError):
            self._request([(item.ItemID, 0)])
        with self.assertRaises(ValidationError):
            self._request([(item.ItemID, 1)], borrower=" ")
        with self.assertRaises(NotFound):
            self._request([(999, 1)])
        self.assertEqual(list_requests(self.db), [])

    def test_lookup_by_reference_ignores_case(self):
        item = self.make_item(total=5)
        request = self._request([(item.ItemID, 1)])

        found = get_request_by_reference(self.db, f"  {request.ReferenceCode.lower()} ")
        self.assertEqual(found.RequestID, request.RequestID)
        with self.assertRaises(NotFound):
            get_request_by_reference(self.db, "REQ-UNKNOWN")

    def test_list_requests_filters(self):
        item = self.make_item(total=5)
        first = self._request([(item.ItemID, 1)], borrower="Ada Lovelace")
        self._request([(item.ItemID, 1)], borrower="Grace Hopper")
        reject_request(self.db, first.RequestID)

        self.assertEqual([r.BorrowerName for r in list_requests(self.db, status=REQUEST_PENDING)], ["Grace Hopper"])
        self.assertEqual([r.RequestID for r in list_requests(self.db, search="lovelace")], [first.RequestID])
        with self.assertRaises(ValidationError):
            list_requests(self.db, status="Lost")


class ApproveRequestTests(RequestTestCase):
    def test_preflight_failure_touches_nothing(self):
        flask = self.make_item(total=5, name="Flask")
        burner = self.make_item(total=2, name="Bunsen Burner")
        request = self._request([(flask.ItemID, 3), (burner.ItemID, 3)])

        with self.assertRaises(InsufficientStock) as ctx:
            approve_request(self.db, request.RequestID, self.clock)

        self.assertEqual(ctx.exception.item_id, burner.ItemID)
        self.assertEqual((ctx.exception.requested, ctx.exception.available), (3, 2))
        self.assertEqual(self.item_row(flask.ItemID).InUseQuantity, 0)
        self.assertEqual(self.loan_count(), 0)
        self.assertEqual(get_request(self.db, request.RequestID).Status, REQUEST_PENDING)

    def test_preflight_sums_lines_for_the_same_item(self):
        flask = self.make_item(total=5, name="Flask")
        request = self._request([(flask.ItemID, 3), (flask.ItemID, 3)])

        with self.assertRaises(InsufficientStock) as ctx:
            approve_request(self.db, request.RequestID, self.clock)
        self.assertEqual((ctx.exception.requested, ctx.exception.available), (6, 5))
        self.assertEqual(self.loan_count(), 0)

    def test_approval_creates_and_links_one_loan_per_line(self):
        flask = self.make_item(total=5, name="Flask")
        burner = self.make_item(total=2, name="Bunsen Burner")
        request = self._request([(flask.ItemID, 3), (burner.ItemID, 2)])

        result = approve_request(self.db, request.RequestID, self.clock)

        self.assertTrue(result.approved)
        self.assertFalse(result.partial)
        self.assertEqual(len(result.created_loan_ids), 2)
        approved = get_request(self.db, request.RequestID)
        self.assertEqual(approved.Status, REQUEST_APPROVED)
        self.assertEqual([line.LinkedLoanID for line in approved.Lines], result.created_loan_ids)
        for loan_id in result.created_loan_ids:
            loan = get_loan(self.db, loan_id)
            self.assertEqual(loan.DueOn, self.desired)
            self.assertEqual(loan.Status, LOAN_BORROWED)
            self.assertEqual(loan.BorrowerName, "Ada Lovelace")
            self.assertEqual(loan.Notes, f"Request {approved.ReferenceCode}")
        self.assertEqual(self.item_row(flask.ItemID).InUseQuantity, 3)
        self.assertEqual(self.item_row(burner.ItemID).InUseQuantity, 2)
        self.assertEqual(self.notification_types(), ["RequestSubmitted", "RequestApproved"])
        self.assertEqual(serialize_request(approved)["linkedLines"], 2)

    def test_past_desired_return_date_yields_overdue_loans(self):
        flask = self.make_item(total=5, name="Flask")
        request = self._request([(flask.ItemID, 1)], desired=TODAY - timedelta(days=1))

        result = approve_request(self.db, request.RequestID, self.clock)
        self.assertEqual(get_loan(self.db, result.created_loan_ids[0]).Status, LOAN_OVERDUE)

    def test_approving_twice_is_already_terminal(self):
        flask = self.make_item(total=5, name="Flask")
        request = self._request([(flask.ItemID, 1)])
        approve_request(self.db, request.RequestID, self.clock)

        with self.assertRaises(AlreadyTerminal):
            approve_request(self.db, request.RequestID, self.clock)
        self.assertEqual(self.item_row(flask.ItemID).InUseQuantity, 1)

    def test_mid_stream_failure_keeps_converted_lines_and_resumes(self):
        flask = self.make_item(total=5, name="Flask")
        burner = self.make_item(total=4, name="Bunsen Burner")
        request = self._request([(flask.ItemID, 2), (burner.ItemID, 3)])
        calls = []

        def racing_create_loan(db, item_id, *args, **kwargs):
            calls.append(item_id)
            if len(calls) == 2:
                with store_call(db, "reserve"):
                    reserve(db, burner.ItemID, 4)
            return loan_service.create_loan(db, item_id, *args, **kwargs)

        with mock.patch("services.request_service.create_loan", side_effect=racing_create_loan):
            result = approve_request(self.db, request.RequestID, self.clock)

        self.assertFalse(result.approved)
        self.assertTrue(result.partial)
        self.assertEqual(result.failed_item_id, burner.ItemID)
        self.assertEqual(result.error.code, "insufficient_stock")
        self.assertEqual(len(result.created_loan_ids), 1)
        self.assertEqual(result.to_dict()["status"], REQUEST_PENDING)
        pending = get_request(self.db, request.RequestID)
        self.assertEqual(pending.Status, REQUEST_PENDING)
        self.assertEqual([line.LinkedLoanID for line in pending.Lines], [result.created_loan_ids[0], None])
        self.assertEqual(self.item_row(flask.ItemID).InUseQuantity, 2)

        with store_call(self.db, "release"):
            release(self.db, burner.ItemID, 4)
        resumed = approve_request(self.db, request.RequestID, self.clock)

        self.assertTrue(resumed.approved)
        self.assertEqual(resumed.skipped_line_ids, [pending.Lines[0].LineID])
        self.assertEqual(len(resumed.created_loan_ids), 1)
        self.assertEqual(self.item_row(flask.ItemID).InUseQuantity, 2)
        self.assertEqual(self.item_row(burner.ItemID).InUseQuantity, 3)
        self.assertEqual(self.loan_count(), 2)


class RequestStateTests(RequestTestCase):
    def setUp(self):
        super().setUp()
        self.flask = self.make_item(total=5, name="Flask")
        self.request = self._request([(self.flask.ItemID, 2)])

    def test_reject_records_reason_and_notifies(self):
        rejected = reject_request(self.db, self.request.RequestID, " Out of term ")

        self.assertEqual(rejected.Status, REQUEST_REJECTED)
        self.assertEqual(rejected.AdminNotes, "Rejected: Out of term")
        self.assertEqual(self.notification_types()[-1], "RequestRejected")
        with self.assertRaises(AlreadyTerminal):
            approve_request(self.db, self.request.RequestID, self.clock)
        with self.assertRaises(AlreadyTerminal):
            reject_request(self.db, self.request.RequestID)

    def test_reject_refused_once_lines_are_linked(self):
        loan = create_loan(self.db, self.flask.ItemID, 2, self.desired, "Ada", clock=self.clock)
        with store_call(self.db, "link"):
            get_request(self.db, self.request.RequestID).Lines[0].LinkedLoanID = loan.LoanID

        with self.assertRaises(Conflict):
            reject_request(self.db, self.request.RequestID)
        self.assertEqual(get_request(self.db, self.request.RequestID).Status, REQUEST_PENDING)

    def test_release_requires_approval(self):
        with self.assertRaises(Conflict):
            release_request(self.db, self.request.RequestID)

        approve_request(self.db, self.request.RequestID, self.clock)
        self.assertEqual(release_request(self.db, self.request.RequestID).Status, REQUEST_RELEASED)
        with self.assertRaises(AlreadyTerminal):
            release_request(self.db, self.request.RequestID)


class DeleteRequestTests(RequestTestCase):
    def test_delete_cascades_only_to_linked_loans(self):
        flask = self.make_item(total=5, name="Flask")
        burner = self.make_item(total=4, name="Bunsen Burner")
        unrelated = create_loan(self.db, flask.ItemID, 1, self.desired, "Grace", clock=self.clock)
        request = self._request([(flask.ItemID, 2), (burner.ItemID, 3)])
        result = approve_request(self.db, request.RequestID, self.clock)
        self.assertEqual(self.item_row(flask.ItemID).InUseQuantity, 3)

        summary = delete_request(self.db, request.RequestID)

        self.assertEqual(summary["referenceCode"], request.ReferenceCode)
        self.assertEqual(sorted(entry["id"] for entry in summary["deletedLoans"]), sorted(result.created_loan_ids))
        self.assertEqual(self.item_row(flask.ItemID).InUseQuantity, 1)
        self.assertEqual(self.item_row(burner.ItemID).InUseQuantity, 0)
        self.assertEqual(get_loan(self.db, unrelated.LoanID).Quantity, 1)
        self.assertEqual(self.loan_count(), 1)
        self.assertIsNone(self.db.get(BorrowRequest, request.RequestID))
        with self.assertRaises(NotFound):
            get_request(self.db, request.RequestID)

    def test_delete_restores_stock_only_for_unreturned_lines(self):
        flask = self.make_item(total=5, name="Flask")
        burner = self.make_item(total=4, name="Bunsen Burner")
        request = self._request([(flask.ItemID, 2), (burner.ItemID, 3)])
        flask_loan_id, burner_loan_id = approve_request(self.db, request.RequestID, self.clock).created_loan_ids
        return_loan(self.db, flask_loan_id, Disposition(good=1, defective=1), self.clock)
        self.assertEqual(get_loan(self.db, flask_loan_id).Status, LOAN_RETURNED)
        self.assertEqual(get_loan(self.db, burner_loan_id).Status, LOAN_BORROWED)
        flask_before = self.item_row(flask.ItemID)
        self.assertEqual((flask_before.InUseQuantity, flask_before.TotalQuantity), (0, 4))

        summary = delete_request(self.db, request.RequestID)

        self.assertEqual([entry["outcome"] for entry in summary["deletedLoans"]], ["ok", "ok"])
        flask_after = self.item_row(flask.ItemID)
        burner_after = self.item_row(burner.ItemID)
        self.assertEqual((flask_after.InUseQuantity, flask_after.TotalQuantity), (0, 4))
        self.assertEqual((burner_after.InUseQuantity, burner_after.TotalQuantity), (0, 4))
        self.assertItemInvariant(flask.ItemID)
        self.assertItemInvariant(burner.ItemID)
        self.assertEqual(self.loan_count(), 0)

    def test_delete_pending_request_without_loans(self):
        flask = self.make_item(total=5, name="Flask")
        request = self._request([(flask.ItemID, 2)])

        summary = delete_request(self.db, request.RequestID)

        self.assertEqual(summary["deletedLoans"], [])
        self.assertEqual(list_requests(self.db), [])
        self.assertTrue(re.match(r"^REQ-\d{6}$", summary["referenceCode"]))


if __name__ == "__main__":
    unittest.main()
