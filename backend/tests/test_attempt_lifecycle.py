import asyncio

import pytest

from examguard.errors import (
    ForbiddenError,
    NotFoundError,
    TimeExceededError,
    TransientStoreError,
    ValidationError,
)
from examguard.services.attempt_state import AutoSubmitReason, StartStatus

from conftest import EXAM_ID, OWNER_ID, at


async def started(lifecycle, name="Alice", now=0):
    outcome = await lifecycle.start(EXAM_ID, name, now=at(now))
    return outcome.attempt_id


# ---- start / resume / recover ----------------------------------------------

async def test_start_creates_attempt_with_full_duration(env):
    lifecycle, store, _ = env
    outcome = await lifecycle.start(EXAM_ID, "Alice", client_ip="10.0.0.1", now=at(0))

    assert outcome.status is StartStatus.ACTIVE
    assert outcome.time_remaining_seconds == 600
    attempt = store.attempts[outcome.attempt_id]
    assert attempt.student_name == "Alice"
    assert attempt.client_ip == "10.0.0.1"
    assert not attempt.completed


async def test_start_again_returns_the_open_attempt(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))

    again = await lifecycle.start(EXAM_ID, "  alice ", now=at(30))

    assert again.status is StartStatus.RESUME_PENDING
    assert again.attempt_id == attempt_id
    assert again.time_remaining_seconds == 570
    assert again.answers == {"q1": "q1-a"}
    assert len(store.attempts) == 1


async def test_resume_does_not_count_time_twice(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)

    pending = await lifecycle.start(EXAM_ID, "Alice", now=at(100))
    assert pending.time_remaining_seconds == 500

    resumed = await lifecycle.resume(attempt_id, exam_id=EXAM_ID, now=at(130))
    assert resumed.status is StartStatus.ACTIVE
    assert resumed.time_remaining_seconds == 470


async def test_concurrent_starts_share_one_attempt(env):
    lifecycle, store, _ = env
    outcomes = await asyncio.gather(*[lifecycle.start(EXAM_ID, "Alice", now=at(0)) for _ in range(5)])

    assert len(store.attempts) == 1
    assert len({o.attempt_id for o in outcomes}) == 1
    assert [o.status for o in outcomes].count(StartStatus.ACTIVE) == 1


async def test_start_validation(env):
    lifecycle, _, catalog = env
    with pytest.raises(ValidationError):
        await lifecycle.start(EXAM_ID, "   ", now=at(0))
    with pytest.raises(NotFoundError):
        await lifecycle.start("no-such-exam", "Alice", now=at(0))

    catalog.set_active(EXAM_ID, False)
    with pytest.raises(ForbiddenError):
        await lifecycle.start(EXAM_ID, "Alice", now=at(0))


async def test_access_code_is_checked(make_env):
    lifecycle, _, _ = make_env(requires_access_code=True, access_code="XYZ")
    with pytest.raises(ForbiddenError):
        await lifecycle.start(EXAM_ID, "Alice", now=at(0))
    with pytest.raises(ForbiddenError):
        await lifecycle.start(EXAM_ID, "Alice", access_code="nope", now=at(0))

    outcome = await lifecycle.start(EXAM_ID, "Alice", access_code=" XYZ ", now=at(0))
    assert outcome.status is StartStatus.ACTIVE


async def test_completed_attempt_is_reported_not_restarted(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.submit(attempt_id, {"q1": "q1-a"}, now=at(60))

    again = await lifecycle.start(EXAM_ID, "Alice", now=at(70))

    assert again.status is StartStatus.COMPLETED
    assert again.result.already_completed
    assert again.result.score == 50.0
    assert len(store.attempts) == 1


async def test_start_grades_an_open_attempt_whose_time_ran_out(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))
    await lifecycle.heartbeat(attempt_id, now=at(300))

    again = await lifecycle.start(EXAM_ID, "Alice", now=at(650))

    assert again.status is StartStatus.COMPLETED
    assert again.expired
    assert again.result.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED
    assert again.result.score == 50.0
    assert store.attempts[attempt_id].completed


async def test_stale_checkpoint_keeps_stored_time_but_submit_is_late(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))

    # nothing checkpointed for longer than the whole exam
    again = await lifecycle.start(EXAM_ID, "Alice", now=at(700))
    assert again.status is StartStatus.RESUME_PENDING
    assert again.time_remaining_seconds == 600
    assert not store.attempts[attempt_id].completed

    with pytest.raises(TimeExceededError) as exc:
        await lifecycle.submit(attempt_id, {"q2": "q2-b"}, now=at(701))
    assert exc.value.result.score == 50.0


async def test_start_racing_submit_reports_the_finished_attempt(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    find_incomplete = store.find_incomplete

    async def find_then_submit(exam_id, name_key):
        found = await find_incomplete(exam_id, name_key)
        await lifecycle.submit(attempt_id, {"q1": "q1-a"}, now=at(60))
        return found

    store.find_incomplete = find_then_submit
    again = await lifecycle.start(EXAM_ID, "Alice", now=at(61))

    assert again.status is StartStatus.COMPLETED
    assert again.attempt_id == attempt_id
    assert again.result.already_completed
    assert again.result.score == 50.0
    assert len(store.attempts) == 1
    assert store.completions == 1


async def test_recover_by_name(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))

    recovered = await lifecycle.recover(EXAM_ID, "ALICE", now=at(50))
    assert recovered.status is StartStatus.RESUME_PENDING
    assert recovered.attempt_id == attempt_id
    assert recovered.answers == {"q1": "q1-a"}
    assert recovered.time_remaining_seconds == 550

    missing = await lifecycle.recover(EXAM_ID, "Bob", now=at(50))
    assert missing.status is StartStatus.NOT_FOUND


# ---- answers -----------------------------------------------------------------

async def test_answer_validation(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)

    with pytest.raises(NotFoundError):
        await lifecycle.answer(attempt_id, "q9", "q1-a", now=at(5))
    with pytest.raises(ValidationError):
        await lifecycle.answer(attempt_id, "q1", "q2-a", now=at(5))
    with pytest.raises(ForbiddenError):
        await lifecycle.answer(attempt_id, "q1", "q1-a", exam_id="other-exam", now=at(5))

    assert await lifecycle.answer(attempt_id, "q1", None, now=at(5))
    assert store.answers[attempt_id]["q1"].selected_option_id is None


async def test_answers_are_never_graded_on_save(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(5))
    assert store.answers[attempt_id]["q1"].is_correct is None


async def test_stale_sequence_is_dropped(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)

    assert await lifecycle.answer(attempt_id, "q1", "q1-b", sequence=2, now=at(5))
    assert not await lifecycle.answer(attempt_id, "q1", "q1-a", sequence=1, now=at(6))
    assert store.answers[attempt_id]["q1"].selected_option_id == "q1-b"

    # without a sequence the last write wins
    assert await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(7))
    assert store.answers[attempt_id]["q1"].selected_option_id == "q1-a"


async def test_answer_after_time_is_up_closes_attempt(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))
    hb = await lifecycle.heartbeat(attempt_id, now=at(300))
    assert hb.written

    with pytest.raises(TimeExceededError) as exc:
        await lifecycle.answer(attempt_id, "q2", "q2-b", now=at(601))

    assert exc.value.result.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED
    assert exc.value.result.score == 50.0
    assert store.attempts[attempt_id].completed


async def test_answer_on_completed_attempt_is_rejected(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.submit(attempt_id, {}, now=at(30))
    with pytest.raises(ForbiddenError):
        await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(31))


# ---- submit ------------------------------------------------------------------

async def test_submit_grades_with_server_answer_key(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))
    await lifecycle.answer(attempt_id, "q2", "q2-a", now=at(20))

    result = await lifecycle.submit(attempt_id, {}, now=at(60))

    assert result.score == 50.0
    assert result.earned_points == 1
    assert result.total_points == 2
    assert result.time_spent_seconds == 60
    assert result.passed is False
    assert not result.auto_submitted
    assert store.answers[attempt_id]["q1"].is_correct is True
    assert store.answers[attempt_id]["q2"].is_correct is False


async def test_submit_ignores_client_correctness_flags(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    result = await lifecycle.submit(attempt_id, {
        "q1": {"option_id": "q1-b", "is_correct": True},
        "q2": {"option_id": "q2-b", "is_correct": False},
    }, now=at(60))
    assert result.earned_points == 1
    assert result.score == 50.0


async def test_submit_merges_client_answers_over_saved_ones(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))

    result = await lifecycle.submit(attempt_id, {"q2": "q2-b"}, now=at(60))
    assert result.score == 100.0
    assert result.passed


async def test_second_submit_returns_stored_result(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    first = await lifecycle.submit(attempt_id, {"q1": "q1-a"}, now=at(60))
    second = await lifecycle.submit(attempt_id, {"q1": "q1-a", "q2": "q2-b"}, now=at(70))

    assert not first.already_completed
    assert second.already_completed
    assert second.score == first.score == 50.0
    assert second.completed_at == first.completed_at
    assert store.completions == 1


async def test_double_submit_grades_once(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    results = await asyncio.gather(
        lifecycle.submit(attempt_id, {"q1": "q1-a"}, now=at(60)),
        lifecycle.submit(attempt_id, {"q1": "q1-a"}, now=at(60)),
    )

    assert store.completions == 1
    assert sorted(r.already_completed for r in results) == [False, True]
    assert results[0].score == results[1].score


async def test_submit_racing_expiry_grades_once(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))

    results = await asyncio.gather(
        lifecycle.submit(attempt_id, {"q1": "q1-a"}, now=at(600)),
        lifecycle.expire(attempt_id, now=at(600)),
    )

    assert store.completions == 1
    assert [r.already_completed for r in results].count(False) == 1
    assert store.attempts[attempt_id].score == 50.0


async def test_late_submit_is_refused_and_graded_with_saved_answers(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-b", now=at(5))

    with pytest.raises(TimeExceededError) as exc:
        await lifecycle.submit(attempt_id, {"q1": "q1-a", "q2": "q2-b"}, now=at(605))

    result = exc.value.result
    assert result.score == 0.0
    assert result.auto_submitted
    assert result.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED
    stored = store.attempts[attempt_id]
    assert stored.completed
    assert stored.score == 0.0
    assert store.answers[attempt_id]["q1"].selected_option_id == "q1-b"


async def test_submit_within_grace_is_accepted(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    result = await lifecycle.submit(attempt_id, {"q1": "q1-a", "q2": "q2-b"}, now=at(602))
    assert result.score == 100.0
    assert not result.auto_submitted


async def test_submit_on_deactivated_exam_is_rejected(env):
    lifecycle, _, catalog = env
    attempt_id = await started(lifecycle)
    catalog.set_active(EXAM_ID, False)
    with pytest.raises(ForbiddenError):
        await lifecycle.submit(attempt_id, {}, now=at(30))


async def test_submit_rejects_non_mapping_answers(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    with pytest.raises(ValidationError):
        await lifecycle.submit(attempt_id, ["q1-a"], now=at(30))


# ---- expiry / admin ---------------------------------------------------------

async def test_expire_only_once_time_is_used(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)

    assert await lifecycle.expire(attempt_id, now=at(300)) is None
    assert not store.attempts[attempt_id].completed

    result = await lifecycle.expire(attempt_id, now=at(600))
    assert result.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED
    assert store.attempts[attempt_id].time_remaining_seconds == 0


async def test_force_finish_by_owner_only(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.answer(attempt_id, "q1", "q1-a", now=at(10))

    with pytest.raises(ForbiddenError):
        await lifecycle.force_finish(attempt_id, "someone-else", now=at(100))

    result = await lifecycle.force_finish(attempt_id, OWNER_ID, now=at(100))
    assert result.auto_submit_reason is AutoSubmitReason.ADMIN_FORCED
    assert result.score == 50.0


async def test_get_result(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    with pytest.raises(ForbiddenError):
        await lifecycle.get_result(attempt_id)

    await lifecycle.submit(attempt_id, {"q2": "q2-b"}, now=at(40))
    result = await lifecycle.get_result(attempt_id, exam_id=EXAM_ID)
    assert result.score == 50.0
    assert result.already_completed


# ---- heartbeat / offline ----------------------------------------------------

async def test_heartbeats_are_coalesced(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)

    first = await lifecycle.heartbeat(attempt_id, now=at(5))
    assert not first.written
    assert first.time_remaining_seconds == 595

    second = await lifecycle.heartbeat(attempt_id, now=at(12))
    assert second.written
    assert second.time_remaining_seconds == 588

    third = await lifecycle.heartbeat(attempt_id, now=at(15))
    assert not third.written
    assert third.time_remaining_seconds == 585
    assert store.calls["update_attempt"] == 1


async def test_heartbeat_after_time_up_auto_submits(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.heartbeat(attempt_id, now=at(300))
    hb = await lifecycle.heartbeat(attempt_id, now=at(601))
    assert hb.result.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED
    assert store.attempts[attempt_id].completed


async def test_offline_grace_pauses_the_timer(make_env):
    lifecycle, store, _ = make_env(offline_grace_seconds=90)
    attempt_id = await started(lifecycle)

    offline = await lifecycle.mark_offline(attempt_id, now=at(100))
    assert offline.offline
    assert offline.time_remaining_seconds == 500

    online = await lifecycle.mark_online(attempt_id, now=at(220))
    assert online.added == 90
    assert online.total == 90
    assert online.grace_remaining == 0
    assert online.time_remaining_seconds == 470

    await lifecycle.mark_offline(attempt_id, now=at(300))
    online = await lifecycle.mark_online(attempt_id, now=at(330))
    assert online.added == 0
    assert online.time_remaining_seconds == 360
    assert store.attempts[attempt_id].total_offline_seconds == 90


async def test_duplicate_offline_event_keeps_first_start(make_env):
    lifecycle, store, _ = make_env(offline_grace_seconds=90)
    attempt_id = await started(lifecycle)
    await lifecycle.mark_offline(attempt_id, now=at(100))
    await lifecycle.mark_offline(attempt_id, now=at(130))
    assert store.attempts[attempt_id].went_offline_at == at(100)


async def test_reload_while_offline_closes_offline_period(make_env):
    lifecycle, store, _ = make_env(offline_grace_seconds=90)
    attempt_id = await started(lifecycle)
    await lifecycle.mark_offline(attempt_id, now=at(100))

    resumed = await lifecycle.resume(attempt_id, now=at(160))

    assert resumed.time_remaining_seconds == 500
    stored = store.attempts[attempt_id]
    assert stored.total_offline_seconds == 60
    assert stored.went_offline_at is None


# ---- fullscreen / activity --------------------------------------------------

async def test_third_fullscreen_exit_auto_submits(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)

    first = await lifecycle.fullscreen_exit(attempt_id, client_ip="10.0.0.1", now=at(10))
    assert first.phase == "exit_pending"
    assert first.exit_count == 1
    assert first.seconds_to_return == 10
    assert (await lifecycle.fullscreen_return(attempt_id, now=at(15))).phase == "normal"

    assert (await lifecycle.fullscreen_exit(attempt_id, now=at(30))).exit_count == 2
    assert (await lifecycle.fullscreen_return(attempt_id, now=at(32))).phase == "normal"

    third = await lifecycle.fullscreen_exit(attempt_id, now=at(50))
    assert third.phase == "auto_submit"
    assert third.result.auto_submit_reason is AutoSubmitReason.MAX_EXITS

    stored = store.attempts[attempt_id]
    assert stored.completed
    assert stored.auto_submitted
    assert stored.exit_count == 3
    assert [a.type for a in stored.suspicious_activities] == ["fullscreen_exit"] * 3
    assert stored.suspicious_activities[0].client_ip == "10.0.0.1"


async def test_exit_countdown_lapses_on_heartbeat(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.fullscreen_exit(attempt_id, now=at(10))

    hb = await lifecycle.heartbeat(attempt_id, now=at(25))

    assert hb.result.auto_submit_reason is AutoSubmitReason.EXIT_TIMEOUT
    assert store.attempts[attempt_id].completed


async def test_returning_too_late_auto_submits(env):
    lifecycle, _, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.fullscreen_exit(attempt_id, now=at(10))

    back = await lifecycle.fullscreen_return(attempt_id, now=at(21))
    assert back.phase == "auto_submit"
    assert back.result.auto_submit_reason is AutoSubmitReason.EXIT_TIMEOUT


async def test_repeated_exit_event_counts_once(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    await lifecycle.fullscreen_exit(attempt_id, now=at(10))
    again = await lifecycle.fullscreen_exit(attempt_id, now=at(12))

    assert again.exit_count == 1
    assert again.seconds_to_return == 8
    assert len(store.attempts[attempt_id].suspicious_activities) == 1


async def test_activity_log(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)

    await lifecycle.record_activity(attempt_id, "window_blur", now=at(5))
    attempt = await lifecycle.record_activity(attempt_id, "window_blur", now=at(6))
    assert attempt.window_switch_count == 2

    await lifecycle.record_activity(attempt_id, "copy", detail="ctrl+c", client_ip="10.0.0.2", now=at(7))
    stored = store.attempts[attempt_id]
    assert [a.type for a in stored.suspicious_activities] == ["window_blur", "window_blur", "copy"]
    assert stored.suspicious_activities[-1].detail == "ctrl+c"
    assert stored.exit_count == 0

    with pytest.raises(ValidationError):
        await lifecycle.record_activity(attempt_id, "fullscreen_exit", now=at(8))
    with pytest.raises(ValidationError):
        await lifecycle.record_activity(attempt_id, "teleport", now=at(8))


# ---- misc -------------------------------------------------------------------

async def test_questions_for_attempt_hide_answers_and_keep_order(make_env):
    lifecycle, _, _ = make_env(shuffle_questions=True, shuffle_options=True)
    attempt_id = await started(lifecycle)

    first = await lifecycle.questions_for_attempt(attempt_id, exam_id=EXAM_ID)
    second = await lifecycle.questions_for_attempt(attempt_id, exam_id=EXAM_ID)

    assert first == second
    assert {q["id"] for q in first} == {"q1", "q2"}
    assert all("is_correct" not in o for q in first for o in q["options"])


async def test_transient_store_failure_is_retried(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    store.fail_next = 1

    hb = await lifecycle.heartbeat(attempt_id, now=at(20))

    assert hb.written
    assert store.calls["get_attempt"] == 2


async def test_store_outage_surfaces_after_retries(env):
    lifecycle, store, _ = env
    attempt_id = await started(lifecycle)
    store.fail_next = 100
    with pytest.raises(TransientStoreError):
        await lifecycle.heartbeat(attempt_id, now=at(20))
