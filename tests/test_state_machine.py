"""Unit tests for payment state-machine guardrails."""

import pytest

from spacepay.common.errors import InvalidTransition
from spacepay.common.state_machine import PaymentStatus, is_terminal, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("PENDING", "PROCESSING")
    validate_transition("PROCESSING", "COMPLETED")
    validate_transition("PENDING", "CANCELLED")


def test_invalid_transition():
    """Skipping the provider acknowledgement is not allowed."""

    with pytest.raises(InvalidTransition):
        validate_transition("PENDING", "COMPLETED")


@pytest.mark.parametrize("status", ["COMPLETED", "FAILED", "CANCELLED"])
def test_terminal_states_have_no_exits(status):
    assert is_terminal(status)
    assert is_terminal(PaymentStatus(status))
    with pytest.raises(InvalidTransition):
        validate_transition(status, "PROCESSING")


def test_in_flight_states_are_not_terminal():
    assert not is_terminal("PENDING")
    assert not is_terminal(PaymentStatus.PROCESSING)
