import itertools

import pytest

from apps.orders.domain import (
    OrderStatus,
    TERMINAL_STATUSES,
    TransitionDecision,
    decide_transition,
    map_gateway_status,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("approved", OrderStatus.PAID),
        ("APPROVED", OrderStatus.PAID),
        ("rejected", OrderStatus.FAILED),
        ("cancelled", OrderStatus.FAILED),
        ("refunded", OrderStatus.REFUNDED),
        ("pending", OrderStatus.PENDING),
        ("in_process", OrderStatus.PENDING),
        ("charged_back", OrderStatus.PENDING),
        ("", OrderStatus.PENDING),
        (None, OrderStatus.PENDING),
    ],
)
def test_gateway_status_mapping_is_total(raw, expected):
    assert map_gateway_status(raw) == expected


@pytest.mark.parametrize("target", sorted(TERMINAL_STATUSES))
def test_pending_moves_to_any_terminal(target):
    assert decide_transition(OrderStatus.PENDING, target) == TransitionDecision.APPLY


@pytest.mark.parametrize("current", sorted(TERMINAL_STATUSES))
def test_same_status_is_noop_and_back_to_pending_is_stale(current):
    assert decide_transition(current, current) == TransitionDecision.NOOP
    assert decide_transition(current, OrderStatus.PENDING) == TransitionDecision.STALE


def test_paid_to_refunded_is_the_only_terminal_move():
    for current, target in itertools.permutations(TERMINAL_STATUSES, 2):
        decision = decide_transition(current, target)
        if (current, target) == (OrderStatus.PAID, OrderStatus.REFUNDED):
            assert decision == TransitionDecision.APPLY
        else:
            assert decision == TransitionDecision.ANOMALY, (current, target)
