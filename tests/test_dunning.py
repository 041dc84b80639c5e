"""
Tests for the dunning calculator:
- Grace window is 28 days from the failure
- Countdown and reminder checkpoints while past due
- Dunning email slots (days 1, 3, 7, 14)
"""
from datetime import timedelta

from conftest import NOW
from services.dunning import (
    DEFAULT_PAST_DUE_GRACE_DAYS,
    build_dunning_state,
    grace_window,
    resolve_dunning_email_day,
    resolve_reminder_checkpoint,
)


def test_grace_window_is_28_days():
    start, end = grace_window(NOW)
    assert start == NOW
    assert end - start == timedelta(days=DEFAULT_PAST_DUE_GRACE_DAYS)


def test_day_twenty_of_grace():
    start, end = grace_window(NOW)
    state = build_dunning_state("past_due", start, end, NOW + timedelta(days=20))
    assert state.in_grace_period is True
    assert state.days_in_grace_period == 20
    assert state.days_until_downgrade == 8
    assert state.reminder_checkpoint_day == 14
    assert state.grace_ends_at == end


def test_first_day_has_no_checkpoint():
    start, end = grace_window(NOW)
    state = build_dunning_state("past_due", start, end, NOW + timedelta(hours=3))
    assert state.days_in_grace_period == 0
    assert state.days_until_downgrade == 28
    assert state.reminder_checkpoint_day is None


def test_exhausted_grace_reports_zero_days_left():
    start, end = grace_window(NOW)
    state = build_dunning_state("past_due", start, end, end + timedelta(hours=1))
    assert state.in_grace_period is False
    assert state.days_until_downgrade == 0


def test_not_past_due_has_empty_state():
    state = build_dunning_state("active", NOW, NOW + timedelta(days=30), NOW)
    assert state.in_grace_period is False
    assert state.grace_ends_at is None


def test_missing_start_derives_days_from_countdown():
    end = NOW + timedelta(days=10)
    state = build_dunning_state("past_due", None, end, NOW)
    assert state.grace_started_at is None
    assert state.days_in_grace_period == 18
    assert state.reminder_checkpoint_day == 14


def test_reminder_checkpoints():
    assert resolve_reminder_checkpoint(6) is None
    assert resolve_reminder_checkpoint(7) == 7
    assert resolve_reminder_checkpoint(21) == 21
    assert resolve_reminder_checkpoint(27) == 21


def test_dunning_email_days():
    assert resolve_dunning_email_day(NOW, NOW) == 1
    assert resolve_dunning_email_day(NOW, NOW + timedelta(days=1)) == 1
    assert resolve_dunning_email_day(NOW, NOW + timedelta(days=2)) == 3
    assert resolve_dunning_email_day(NOW, NOW + timedelta(days=6)) == 7
    assert resolve_dunning_email_day(NOW, NOW + timedelta(days=20)) == 14
