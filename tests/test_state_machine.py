from __future__ import annotations

import pytest

from billing.errors import InvalidTransitionError
from billing.state_machine import (
    INITIAL_STATE,
    TERMINAL_STATES,
    allowed_targets,
    can_transition,
    is_terminal,
    transition_state,
)


def test_estimate_lifecycle() -> None:
    assert INITIAL_STATE == "draft"
    assert transition_state("estimate", "draft", "sent") == "sent"
    assert transition_state("estimate", "sent", "approved") == "approved"
    assert transition_state("estimate", "sent", "rejected") == "rejected"
    assert transition_state("estimate", "sent", "expired") == "expired"


def test_invoice_lifecycle() -> None:
    assert transition_state("invoice", "draft", "sent") == "sent"
    assert transition_state("invoice", "sent", "overdue") == "overdue"
    assert transition_state("invoice", "overdue", "paid") == "paid"
    assert transition_state("invoice", "overdue", "cancelled") == "cancelled"


def test_transitions_are_case_insensitive() -> None:
    assert transition_state("Invoice", " SENT ", "Paid") == "paid"


def test_invalid_transition_raises() -> None:
    with pytest.raises(InvalidTransitionError, match="Invalid transition: draft -> paid"):
        transition_state("invoice", "draft", "paid")


def test_paid_to_paid_is_rejected() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        transition_state("invoice", "paid", "paid")
    assert exc_info.value.current == "paid"
    assert exc_info.value.requested == "paid"


def test_unknown_state_raises() -> None:
    with pytest.raises(InvalidTransitionError, match="unknown invoice state"):
        transition_state("invoice", "void", "sent")


def test_unknown_kind_raises() -> None:
    with pytest.raises(ValueError, match="Unknown document kind"):
        can_transition("receipt", "draft", "sent")


def test_terminal_states_have_no_outbound_transitions() -> None:
    assert TERMINAL_STATES["estimate"] == {"approved", "rejected", "expired"}
    assert TERMINAL_STATES["invoice"] == {"paid", "cancelled"}
    for kind, states in TERMINAL_STATES.items():
        for state in states:
            assert is_terminal(kind, state)
            assert allowed_targets(kind, state) == set()
            assert not can_transition(kind, state, "draft")


def test_draft_cannot_be_cancelled() -> None:
    assert not can_transition("invoice", "draft", "cancelled")
    assert allowed_targets("invoice", "draft") == {"sent"}
