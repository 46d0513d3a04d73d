"""Tests for wait budgets and the poller."""
import threading
from datetime import timedelta

import pytest

from metal_vsphere.exceptions import PlatformError, WaitCancelled
from metal_vsphere.schemas import MachineLocation, MachineOptions, MachineSpec
from metal_vsphere.waiting import Poller, WaitOutcome, WaitStatus, remaining_wait_time

from conftest import T0, FakeClock


def _spec(started_at=None):
    return MachineSpec(name="web1", location=MachineLocation(
        driver_url="vsphere://vc:443/sdk?use_ssl=true&insecure=false",
        driver_version="0.1.0",
        server_id="vm-1",
        allocated_at=T0,
        started_at=started_at,
    ))


def test_remaining_wait_time_counts_from_allocation():
    """Test the create budget applies before any restart."""
    options = MachineOptions(create_timeout=600, start_timeout=100)
    assert remaining_wait_time(_spec(), options, T0 + timedelta(seconds=50)) == 550


def test_remaining_wait_time_counts_from_restart():
    """Test the start budget replaces the create budget after a restart."""
    options = MachineOptions(create_timeout=600, start_timeout=100)
    spec = _spec(started_at=T0 + timedelta(seconds=700))
    assert remaining_wait_time(spec, options, T0 + timedelta(seconds=730)) == 70


def test_remaining_wait_time_goes_negative():
    options = MachineOptions()
    assert remaining_wait_time(_spec(), options, T0 + timedelta(seconds=900)) == -300


def test_remaining_wait_time_requires_location():
    with pytest.raises(ValueError):
        remaining_wait_time(MachineSpec(name="web1"), MachineOptions(), T0)


def test_wait_outcome_helpers():
    assert WaitOutcome.ready().is_ready
    assert WaitOutcome.timed_out().is_timed_out
    error = PlatformError("boom")
    failed = WaitOutcome.failed(error)
    assert failed.status is WaitStatus.FAILED
    assert failed.error is error
    assert not failed.is_ready and not failed.is_timed_out


def test_poller_returns_ready_without_sleeping():
    """Test a condition that already holds ends the wait immediately."""
    clock = FakeClock()
    outcome = Poller(clock, 5).poll(lambda: True, lambda now: 100)

    assert outcome.is_ready
    assert clock.sleeps == []


def test_poller_polls_until_condition_holds():
    clock = FakeClock()
    ticks = []

    outcome = Poller(clock, 5).poll(lambda: clock.elapsed >= 12, lambda now: 100, ticks.append)

    assert outcome.is_ready
    assert clock.elapsed == 15
    assert len(ticks) == 3


def test_poller_times_out_at_zero():
    """Test an exhausted budget is reported, not raised."""
    clock = FakeClock()
    deadline = T0 + timedelta(seconds=12)

    outcome = Poller(clock, 5).poll(lambda: False, lambda now: (deadline - now).total_seconds())

    assert outcome.is_timed_out
    # never sleeps past the budget
    assert clock.sleeps == [5, 5, 2]


def test_poller_reevaluates_budget_each_tick():
    """Test the budget is consulted again before every sleep."""
    clock = FakeClock()
    budgets = iter([5, 5, 5, 0])

    outcome = Poller(clock, 5).poll(lambda: False, lambda now: next(budgets))

    assert outcome.is_timed_out
    assert clock.elapsed == 15


def test_poller_check_error_fails_wait():
    clock = FakeClock()

    def check():
        raise PlatformError("vm vanished", operation="guest_probe")

    outcome = Poller(clock, 5).poll(check, lambda now: 100)

    assert outcome.status is WaitStatus.FAILED
    assert isinstance(outcome.error, PlatformError)


def test_poller_cancel():
    """Test cancel() ends the wait on the next tick."""
    clock = FakeClock()
    poller = Poller(clock, 5)

    def tick(left):
        if clock.elapsed >= 10:
            poller.cancel()

    outcome = poller.poll(lambda: False, lambda now: 100, tick)

    assert poller.cancelled
    assert outcome.status is WaitStatus.FAILED
    assert isinstance(outcome.error, WaitCancelled)
    assert clock.elapsed == 15


def test_remaining_wait_time_reaches_zero_at_create_timeout():
    options = MachineOptions(create_timeout=600)
    assert remaining_wait_time(_spec(), options, T0 + timedelta(seconds=600)) == 0
    assert remaining_wait_time(_spec(), options, T0 + timedelta(seconds=599)) > 0


def test_remaining_wait_time_reaches_zero_at_start_timeout():
    options = MachineOptions(create_timeout=600, start_timeout=300)
    started_at = T0 + timedelta(seconds=900)
    spec = _spec(started_at=started_at)

    assert remaining_wait_time(spec, options, started_at + timedelta(seconds=300)) == 0
    assert remaining_wait_time(spec, options, started_at + timedelta(seconds=299)) > 0


def test_shared_cancel_event_reaches_later_pollers():
    """Test a cancel issued between two waits stops the second one."""
    clock = FakeClock()
    event = threading.Event()
    Poller(clock, 5, event).cancel()

    outcome = Poller(clock, 5, event).poll(lambda: False, lambda now: 100)

    assert isinstance(outcome.error, WaitCancelled)
    assert clock.sleeps == []
