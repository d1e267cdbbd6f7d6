"""
Readiness gate
"""
import pytest

from ntpu_assistant.services.readiness import ReadinessGate

pytestmark = pytest.mark.unit


def test_not_ready_during_grace_period(clock):
    gate = ReadinessGate(600, clock=clock)
    clock.advance(599)
    assert not gate.is_ready()
    status = gate.status()
    assert status["ready"] is False
    assert status["reason"] == "data refresh in progress"
    assert status["elapsed_seconds"] == 599
    assert status["timeout_seconds"] == 600


def test_grace_period_elapsed(clock):
    gate = ReadinessGate(600, clock=clock)
    clock.advance(600)
    assert gate.is_ready()
    assert gate.status()["reason"] == "grace period elapsed"


def test_mark_ready_is_sticky(clock):
    gate = ReadinessGate(600, clock=clock)
    gate.mark_ready()
    gate.mark_ready()
    assert gate.is_ready()
    assert gate.status() == {
        "ready": True,
        "reason": "ready",
        "elapsed_seconds": 0,
        "timeout_seconds": 600,
    }


def test_wall_clock_jump_does_not_open_gate(clock):
    from datetime import timedelta

    gate = ReadinessGate(600, clock=clock)
    clock.set(clock.now() - timedelta(days=1))
    assert not gate.is_ready()
