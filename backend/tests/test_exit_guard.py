from examguard.services.attempt_state import AutoSubmitReason
from examguard.services.exit_guard import ExitGuard, ExitPhase

from conftest import at


def test_third_exit_auto_submits():
    guard = ExitGuard(max_exits=3, warning_seconds=10)

    t = guard.fullscreen_lost(at(0))
    assert t.phase is ExitPhase.EXIT_PENDING
    assert t.exit_count == 1
    assert t.changed
    assert guard.fullscreen_restored(at(5)).phase is ExitPhase.NORMAL

    assert guard.fullscreen_lost(at(20)).exit_count == 2
    assert guard.fullscreen_restored(at(25)).phase is ExitPhase.NORMAL

    t = guard.fullscreen_lost(at(30))
    assert t.phase is ExitPhase.AUTO_SUBMIT
    assert t.reason is AutoSubmitReason.MAX_EXITS
    assert t.exit_count == 3


def test_repeated_loss_while_pending_counts_once():
    guard = ExitGuard(max_exits=3, warning_seconds=10)
    guard.fullscreen_lost(at(0))
    t = guard.fullscreen_lost(at(2))
    assert not t.changed
    assert t.exit_count == 1
    assert guard.pending_since == at(0)


def test_countdown_lapses_when_it_reaches_zero():
    guard = ExitGuard(max_exits=3, warning_seconds=10)
    guard.fullscreen_lost(at(0))

    assert guard.check(at(9)).phase is ExitPhase.EXIT_PENDING
    assert guard.seconds_to_return(at(10)) == 0
    t = guard.check(at(10))
    assert t.phase is ExitPhase.AUTO_SUBMIT
    assert t.reason is AutoSubmitReason.EXIT_TIMEOUT

    # returning too late does not cancel it
    assert guard.fullscreen_restored(at(10)).reason is AutoSubmitReason.EXIT_TIMEOUT


def test_return_just_before_zero_is_in_time():
    guard = ExitGuard(max_exits=3, warning_seconds=10)
    guard.fullscreen_lost(at(0))
    t = guard.fullscreen_restored(at(9.999))
    assert t.phase is ExitPhase.NORMAL
    assert t.changed


def test_seconds_to_return():
    guard = ExitGuard(max_exits=3, warning_seconds=10)
    assert guard.seconds_to_return(at(0)) is None
    guard.fullscreen_lost(at(0))
    assert guard.seconds_to_return(at(4)) == 6
    assert guard.deadline == at(10)


def test_window_blur_is_counted_but_harmless():
    guard = ExitGuard(max_exits=1, warning_seconds=10)
    assert guard.window_blurred() == 1
    assert guard.window_blurred() == 2
    assert guard.phase is ExitPhase.NORMAL
    assert guard.exit_count == 0


def test_return_without_exit_is_noop():
    guard = ExitGuard(max_exits=3, warning_seconds=10)
    t = guard.fullscreen_restored(at(0))
    assert t.phase is ExitPhase.NORMAL
    assert not t.changed
