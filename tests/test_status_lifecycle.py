import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

import appointment_workflow as appt
from entity_errors import IllegalTransitionError, SchemaError
from status_lifecycle import (
    BACKWARD_MOVE,
    GENERIC_LIFECYCLE,
    NOT_ALLOWED,
    TERMINAL_STATE,
    UNKNOWN_STATE,
    workflow_from_dict,
)


class TestAppointmentWorkflow(unittest.TestCase):
    def test_forward_skips_are_allowed(self) -> None:
        self.assertTrue(appt.can_transition_to("draft", "completed"))
        self.assertTrue(appt.can_transition_to("booked", "no_show"))
        self.assertTrue(appt.can_transition_to("payment_pending", "cancelled"))

    def test_backward_and_terminal_moves_rejected(self) -> None:
        self.assertFalse(appt.can_transition_to("in_progress", "booked"))
        self.assertFalse(appt.can_transition_to("completed", "cancelled"))
        self.assertFalse(appt.can_transition_to("booked", "booked"))

    def test_no_show_only_before_service_starts(self) -> None:
        self.assertFalse(appt.can_transition_to("draft", "no_show"))
        self.assertFalse(appt.can_transition_to("in_progress", "no_show"))
        self.assertTrue(appt.can_transition_to("checked_in", "no_show"))

    def test_is_forward_move(self) -> None:
        self.assertTrue(appt.is_forward_move("booked", "completed"))
        self.assertTrue(appt.is_forward_move("in_progress", "cancelled"))
        self.assertFalse(appt.is_forward_move("completed", "cancelled"))
        self.assertFalse(appt.is_forward_move("checked_in", "booked"))

    def test_terminal_states(self) -> None:
        for state in ("completed", "cancelled", "no_show"):
            self.assertTrue(appt.is_terminal(state))
            self.assertEqual(appt.allowed_next_states(state), [])
        self.assertFalse(appt.is_terminal("draft"))

    def test_allowed_next_states_in_workflow_order(self) -> None:
        self.assertEqual(appt.allowed_next_states("in_progress"), ["payment_pending", "completed", "cancelled"])

    def test_check_transition_reasons(self) -> None:
        cases = [
            ("completed", "booked", TERMINAL_STATE),
            ("checked_in", "booked", BACKWARD_MOVE),
            ("in_progress", "no_show", NOT_ALLOWED),
            ("booked", "teleported", UNKNOWN_STATE),
        ]
        for current, target, reason in cases:
            with self.assertRaises(IllegalTransitionError) as ctx:
                appt.check_transition(current, target)
            self.assertEqual(ctx.exception.reason, reason, (current, target))
            self.assertEqual(ctx.exception.code, "ILLEGAL_TRANSITION")

    def test_restore_bypasses_table(self) -> None:
        self.assertEqual(appt.APPOINTMENT_WORKFLOW.restore("completed", "booked"), "booked")
        with self.assertRaises(IllegalTransitionError):
            appt.APPOINTMENT_WORKFLOW.restore("completed", "lost")


class TestGenericLifecycle(unittest.TestCase):
    def test_archive_and_restore(self) -> None:
        self.assertTrue(GENERIC_LIFECYCLE.can_transition("active", "archived"))
        self.assertTrue(GENERIC_LIFECYCLE.can_transition("archived", "active"))
        self.assertTrue(GENERIC_LIFECYCLE.can_transition("archived", "archived"))

    def test_deleted_is_terminal(self) -> None:
        self.assertFalse(GENERIC_LIFECYCLE.can_transition("deleted", "active"))
        self.assertFalse(GENERIC_LIFECYCLE.can_transition("deleted", "deleted"))
        with self.assertRaises(IllegalTransitionError) as ctx:
            GENERIC_LIFECYCLE.check_transition("deleted", "active")
        self.assertEqual(ctx.exception.reason, TERMINAL_STATE)


class TestWorkflowFromDict(unittest.TestCase):
    def test_builds_definition(self) -> None:
        wf = workflow_from_dict(
            {
                "name": "ticket",
                "states": ["open", "closed"],
                "transitions": {"open": ["closed"], "closed": []},
                "initial_state": "open",
                "status_field": "ticket_status",
            }
        )
        self.assertTrue(wf.can_transition("open", "closed"))
        self.assertTrue(wf.is_terminal("closed"))
        self.assertEqual(wf.status_field, "ticket_status")

    def test_rejects_unknown_states(self) -> None:
        with self.assertRaises(SchemaError) as ctx:
            workflow_from_dict({"name": "t", "states": ["a"], "transitions": {"a": ["b"]}})
        self.assertEqual(ctx.exception.code, "WORKFLOW_INVALID")
        self.assertEqual(ctx.exception.detail["errors"][0]["code"], "WORKFLOW_UNKNOWN_STATE")

    def test_rejects_non_object(self) -> None:
        with self.assertRaises(SchemaError):
            workflow_from_dict(["a"])


if __name__ == "__main__":
    unittest.main()
