"""Tests for the leasing dispatcher."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from project_notifications.application.use_cases.notifications import (
    DispatchOutcome,
    DispatcherOptions,
    NotificationDispatcher,
    NotificationPreferenceFilter,
    publish_notification,
    retry_delay,
)
from project_notifications.domain.entities import Notification, NotificationKind
from project_notifications.infrastructure.models import ERROR_MAX_LENGTH
from project_notifications.infrastructure.repositories import (
    DispatchRecordRepository,
    NotificationPreferenceRepository,
    NotificationRepository,
)


class RecordingSink:
    def __init__(self):
        self.batches = []

    def deliver(self, notifications):
        self.batches.append(list(notifications))


class ExplodingSink:
    def deliver(self, notifications):
        raise RuntimeError("sink offline")


class FailingResolver:
    name = "failing"

    def __init__(self, error):
        self.error = error

    def resolve(self, query):
        raise self.error


def failing_filter_factory(error):
    return lambda session: NotificationPreferenceFilter([FailingResolver(error)])


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def make_dispatcher(session_factory, clock, sink):
    def _make(**kwargs):
        kwargs.setdefault("delivery_sink", sink)
        kwargs.setdefault("clock", clock)
        return NotificationDispatcher(session_factory, **kwargs)

    return _make


def _records(session_factory):
    session = session_factory()
    try:
        return DispatchRecordRepository(session).list_all()
    finally:
        session.close()


def _notifications(session_factory, recipient_id):
    session = session_factory()
    try:
        return NotificationRepository(session).list_for_recipient(recipient_id, limit=None)
    finally:
        session.close()


def test_dispatch_creates_linked_notification_and_delivers(session, session_factory, make_dispatcher, sink, clock):
    [record] = publish_notification(
        session,
        NotificationKind.PLAN_APPROVED,
        ["u1"],
        {"planId": 1},
        module="plans",
        event_type="approved",
        project_id=3,
        route="/projects3/plans/1",
        title="Plan approved",
        fingerprint="plan:1",
        clock=clock,
    )
    dispatcher = make_dispatcher()

    assert dispatcher.process_batch() is True

    assert dispatcher.last_result.outcomes == {record.id: DispatchOutcome.DELIVERED}
    [notification] = _notifications(session_factory, "u1")
    assert notification.source_dispatch_id == record.id
    assert notification.title == "Plan approved"
    assert notification.route == "/projects/3/plans/1"
    assert notification.fingerprint == "plan:1"
    assert notification.created_at == clock.now
    assert notification.read_at is None

    [stored] = _records(session_factory)
    assert stored.dispatched_at == clock.now
    assert stored.locked_until is None
    assert stored.attempt_count == 1
    assert stored.is_terminal

    assert [[n.id for n in batch] for batch in sink.batches] == [[notification.id]]


def test_idle_cycle_reports_no_work(make_dispatcher, sink):
    dispatcher = make_dispatcher()

    assert dispatcher.process_batch() is False
    assert dispatcher.last_result.did_work is False
    assert sink.batches == []


def test_muted_recipient_is_skipped_while_others_receive(session, session_factory, make_dispatcher, clock):
    NotificationPreferenceRepository(session).set_project_mute("u2", 7, muted=True)
    records = publish_notification(
        session,
        NotificationKind.STAGE_STATUS_CHANGED,
        ["u1", "u2"],
        {},
        project_id=7,
        fingerprint="f1",
        clock=clock,
    )
    dispatcher = make_dispatcher()

    assert dispatcher.process_batch() is True
    assert dispatcher.last_result.outcomes == {
        records[0].id: DispatchOutcome.DELIVERED,
        records[1].id: DispatchOutcome.SKIPPED_PREFERENCE,
    }
    assert len(_notifications(session_factory, "u1")) == 1
    assert _notifications(session_factory, "u2") == []
    assert all(record.dispatched_at is not None for record in _records(session_factory))

    # Terminal rows are never picked up again.
    clock.advance(hours=1)
    assert dispatcher.process_batch() is False
    assert len(_notifications(session_factory, "u1")) == 1


def test_explicit_deny_is_terminal_on_first_attempt(session, session_factory, make_dispatcher, clock):
    NotificationPreferenceRepository(session).set_preference(
        "u1", NotificationKind.DOCUMENT_PUBLISHED, allow=False
    )
    publish_notification(session, NotificationKind.DOCUMENT_PUBLISHED, ["u1"], {}, clock=clock)

    make_dispatcher().process_batch()

    [record] = _records(session_factory)
    assert record.dispatched_at is not None
    assert record.attempt_count == 1
    assert record.last_error is None
    assert _notifications(session_factory, "u1") == []


def test_legacy_opt_out_skips_grandfathered_kind(session, session_factory, make_dispatcher, clock):
    NotificationPreferenceRepository(session).add_legacy_opt_out("u1", NotificationKind.REMARK_CREATED)
    publish_notification(session, NotificationKind.REMARK_CREATED, ["u1"], {}, clock=clock)
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    dispatcher = make_dispatcher()

    dispatcher.process_batch()

    assert dispatcher.last_result.count(DispatchOutcome.SKIPPED_PREFERENCE) == 1
    assert dispatcher.last_result.count(DispatchOutcome.DELIVERED) == 1
    assert len(_notifications(session_factory, "u1")) == 1


def test_same_fingerprint_in_one_batch_creates_one_notification(session, session_factory, make_dispatcher, clock):
    first = publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, fingerprint="plan:9", clock=clock)
    clock.advance(seconds=1)
    second = publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, fingerprint="plan:9", clock=clock)
    dispatcher = make_dispatcher()

    dispatcher.process_batch()

    assert dispatcher.last_result.outcomes == {
        first[0].id: DispatchOutcome.DELIVERED,
        second[0].id: DispatchOutcome.SKIPPED_DUPLICATE,
    }
    assert len(_notifications(session_factory, "u1")) == 1
    assert all(record.dispatched_at is not None for record in _records(session_factory))


def test_same_fingerprint_across_cycles_is_duplicate(session, session_factory, make_dispatcher, clock):
    dispatcher = make_dispatcher()
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1", "u2"], {}, fingerprint="plan:9", clock=clock)
    dispatcher.process_batch()

    clock.advance(minutes=5)
    later = publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, fingerprint="plan:9", clock=clock)
    dispatcher.process_batch()

    assert dispatcher.last_result.outcomes == {later[0].id: DispatchOutcome.SKIPPED_DUPLICATE}
    assert len(_notifications(session_factory, "u1")) == 1
    assert len(_notifications(session_factory, "u2")) == 1


def test_records_without_fingerprint_are_never_collapsed(session, session_factory, make_dispatcher, clock):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)

    make_dispatcher().process_batch()

    assert len(_notifications(session_factory, "u1")) == 2


def test_lost_fingerprint_race_is_marked_duplicate(session, session_factory, make_dispatcher, clock, monkeypatch):
    NotificationRepository(session).create(
        Notification(id=None, recipient_id="u1", title="already there", fingerprint="plan:4", created_at=clock.now)
    )
    [record] = publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, fingerprint="plan:4", clock=clock)
    # The first lookup runs before another dispatcher commits the same fingerprint.
    real_lookup = NotificationRepository.find_by_fingerprint
    lookups = []

    def stale_then_real(self, recipient_id, fingerprint):
        lookups.append(fingerprint)
        if len(lookups) == 1:
            return None
        return real_lookup(self, recipient_id, fingerprint)

    monkeypatch.setattr(NotificationRepository, "find_by_fingerprint", stale_then_real)
    dispatcher = make_dispatcher()

    assert dispatcher.process_batch() is True

    assert dispatcher.last_result.outcomes == {record.id: DispatchOutcome.SKIPPED_DUPLICATE}
    assert len(lookups) == 2
    [notification] = _notifications(session_factory, "u1")
    assert notification.title == "already there"
    [stored] = _records(session_factory)
    assert stored.dispatched_at is not None


def test_other_integrity_errors_are_retried(session, session_factory, make_dispatcher, clock, monkeypatch):
    [record] = publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, fingerprint="plan:5", clock=clock)

    def broken_insert(self, notification):
        raise IntegrityError("INSERT INTO notifications", {}, Exception("FOREIGN KEY constraint failed"))

    monkeypatch.setattr(NotificationRepository, "add", broken_insert)
    dispatcher = make_dispatcher()

    dispatcher.process_batch()

    assert dispatcher.last_result.outcomes == {record.id: DispatchOutcome.RETRY_SCHEDULED}
    [stored] = _records(session_factory)
    assert stored.dispatched_at is None
    assert stored.locked_until == clock.now + timedelta(seconds=5)
    assert "FOREIGN KEY constraint failed" in stored.last_error


class TakeoverResolver:
    """Lets a second dispatcher finish the row while the first one still holds it."""

    name = "takeover"

    def __init__(self, competitor, error=None):
        self.competitor = competitor
        self.error = error
        self.ran = False

    def resolve(self, query):
        if not self.ran:
            self.ran = True
            assert self.competitor.process_batch() is True
        if self.error is not None:
            raise self.error
        return None


@pytest.mark.parametrize(
    ("fingerprint", "error"),
    [
        (None, RuntimeError("transient after stall")),
        (None, None),
        ("plan:7", RuntimeError("transient after stall")),
        ("plan:7", None),
    ],
)
def test_stale_worker_never_touches_a_row_finished_by_another(
    session, session_factory, make_dispatcher, clock, fingerprint, error
):
    [record] = publish_notification(
        session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, fingerprint=fingerprint, clock=clock
    )
    # The competitor runs after the first lease has expired.
    competitor = make_dispatcher(clock=lambda: clock.now + timedelta(minutes=2))
    resolver = TakeoverResolver(competitor, error)
    stale = make_dispatcher(
        preference_filter_factory=lambda s: NotificationPreferenceFilter([resolver])
    )

    assert stale.process_batch() is True

    assert competitor.last_result.outcomes == {record.id: DispatchOutcome.DELIVERED}
    assert stale.last_result.outcomes == {record.id: DispatchOutcome.LEASE_LOST}
    [stored] = _records(session_factory)
    assert stored.dispatched_at == clock.now + timedelta(minutes=2)
    assert stored.locked_until is None
    assert stored.last_error is None
    assert stored.attempt_count == 2
    assert len(_notifications(session_factory, "u1")) == 1

    clock.advance(minutes=10)
    assert make_dispatcher().process_batch() is False
    assert len(_notifications(session_factory, "u1")) == 1
    assert _records(session_factory)[0].dispatched_at == stored.dispatched_at


def test_oldest_rows_are_leased_first(session, make_dispatcher, clock):
    ids = []
    for _ in range(3):
        ids.extend(record.id for record in publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock))
        clock.advance(seconds=1)
    dispatcher = make_dispatcher(options=DispatcherOptions(batch_size=2))

    dispatcher.process_batch()
    assert list(dispatcher.last_result.outcomes) == ids[:2]

    dispatcher.process_batch()
    assert list(dispatcher.last_result.outcomes) == ids[2:]


def test_live_lease_hides_rows_until_expiry(session, session_factory, clock):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    repository = DispatchRecordRepository(session)

    [leased] = repository.lease_ready(now=clock.now, limit=10, lease_until=clock.now + timedelta(seconds=60))
    assert leased.attempt_count == 1
    assert leased.locked_until == clock.now + timedelta(seconds=60)

    assert repository.lease_ready(now=clock.now + timedelta(seconds=30), limit=10, lease_until=clock.now) == []

    later = clock.now + timedelta(seconds=61)
    [again] = repository.lease_ready(now=later, limit=10, lease_until=later + timedelta(seconds=60))
    assert again.id == leased.id
    assert again.attempt_count == 2


def test_writes_require_the_callers_lease(session, session_factory, clock):
    [record] = publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    repository = DispatchRecordRepository(session)
    first_lease = clock.now + timedelta(seconds=60)
    repository.lease_ready(now=clock.now, limit=10, lease_until=first_lease)
    later = clock.now + timedelta(minutes=2)
    [second] = repository.lease_ready(now=later, limit=10, lease_until=later + timedelta(seconds=60))

    assert not repository.schedule_retry(record.id, retry_at=later, error="late", leased_until=first_lease)
    assert not repository.mark_dispatched(record.id, at=later, leased_until=first_lease)
    assert repository.mark_dispatched(record.id, at=later, leased_until=second.locked_until)
    # Finished rows stay finished whatever lease value is presented.
    assert not repository.schedule_retry(record.id, retry_at=later, error="late", leased_until=None)
    session.commit()

    [stored] = _records(session_factory)
    assert stored.dispatched_at == later
    assert stored.last_error is None


def test_failures_follow_backoff_schedule(session, session_factory, make_dispatcher, clock):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    dispatcher = make_dispatcher(preference_filter_factory=failing_filter_factory(RuntimeError("boom")))
    expected = [
        timedelta(seconds=5),
        timedelta(seconds=15),
        timedelta(minutes=1),
        timedelta(minutes=5),
        timedelta(minutes=15),
        timedelta(minutes=15),
    ]

    for attempt, delay in enumerate(expected, start=1):
        assert dispatcher.process_batch() is True
        assert dispatcher.last_result.count(DispatchOutcome.RETRY_SCHEDULED) == 1

        [record] = _records(session_factory)
        assert record.attempt_count == attempt
        assert record.locked_until == clock.now + delay
        assert record.dispatched_at is None
        assert record.last_error == "boom"

        # Not ready again before the backoff elapses.
        clock.advance(delay - timedelta(seconds=1))
        assert dispatcher.process_batch() is False
        clock.advance(seconds=1)


def test_recovers_after_transient_failure(session, session_factory, make_dispatcher, clock):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    make_dispatcher(preference_filter_factory=failing_filter_factory(RuntimeError("flaky"))).process_batch()

    clock.advance(seconds=5)
    make_dispatcher().process_batch()

    [record] = _records(session_factory)
    assert record.dispatched_at == clock.now
    assert record.attempt_count == 2
    assert record.last_error is None
    assert len(_notifications(session_factory, "u1")) == 1


def test_long_errors_are_truncated(session, session_factory, make_dispatcher, clock):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    make_dispatcher(preference_filter_factory=failing_filter_factory(RuntimeError("x" * 5000))).process_batch()

    [record] = _records(session_factory)
    assert len(record.last_error) == ERROR_MAX_LENGTH


def test_failing_row_does_not_block_its_batch(session, session_factory, make_dispatcher, clock):
    class FailForU1:
        name = "fail_for_u1"

        def resolve(self, query):
            if query.recipient_id == "u1":
                raise RuntimeError("bad row")
            return None

    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1", "u2"], {}, clock=clock)
    dispatcher = make_dispatcher(
        preference_filter_factory=lambda s: NotificationPreferenceFilter([FailForU1()])
    )

    dispatcher.process_batch()

    assert dispatcher.last_result.count(DispatchOutcome.RETRY_SCHEDULED) == 1
    assert dispatcher.last_result.count(DispatchOutcome.DELIVERED) == 1
    assert _notifications(session_factory, "u1") == []
    assert len(_notifications(session_factory, "u2")) == 1


def test_database_errors_fail_the_whole_batch(session, session_factory, make_dispatcher, clock):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    error = OperationalError("SELECT 1", {}, Exception("database is locked"))
    dispatcher = make_dispatcher(preference_filter_factory=failing_filter_factory(error))

    with pytest.raises(OperationalError):
        dispatcher.process_batch()

    [record] = _records(session_factory)
    assert record.attempt_count == 1
    assert record.dispatched_at is None
    assert record.locked_until == clock.now + timedelta(minutes=1)

    clock.advance(minutes=1)
    assert make_dispatcher().process_batch() is True
    [record] = _records(session_factory)
    assert record.attempt_count == 2
    assert record.dispatched_at is not None


def test_sink_failure_keeps_dispatch_state(session, session_factory, make_dispatcher, clock, caplog):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    dispatcher = make_dispatcher(delivery_sink=ExplodingSink())

    assert dispatcher.process_batch() is True

    assert "Delivery sink failed" in caplog.text
    assert len(_notifications(session_factory, "u1")) == 1
    assert _records(session_factory)[0].dispatched_at is not None


def test_status_summary_reports_backlog(session, session_factory, make_dispatcher, clock):
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u1"], {}, clock=clock)
    make_dispatcher().process_batch()
    publish_notification(session, NotificationKind.PLAN_SUBMITTED, ["u2", "u3"], {}, clock=clock)
    make_dispatcher(
        options=DispatcherOptions(batch_size=1),
        preference_filter_factory=failing_filter_factory(RuntimeError("down")),
    ).process_batch()

    repository = DispatchRecordRepository(session)
    summary = repository.status_summary(now=clock.now)

    assert summary == {
        "pending": 2,
        "leased": 1,
        "retrying": 1,
        "dispatched": 1,
        "max_attempt_count": 1,
    }
    [failing] = repository.list_failing()
    assert failing.recipient_id == "u2"
    assert failing.last_error == "down"


@pytest.mark.parametrize(
    ("attempt", "expected"),
    [
        (0, timedelta(seconds=5)),
        (1, timedelta(seconds=5)),
        (2, timedelta(seconds=15)),
        (3, timedelta(minutes=1)),
        (4, timedelta(minutes=5)),
        (5, timedelta(minutes=15)),
        (50, timedelta(minutes=15)),
    ],
)
def test_retry_delay(attempt, expected):
    assert retry_delay(attempt) == expected


def test_options_reject_non_positive_values():
    with pytest.raises(ValueError):
        DispatcherOptions(batch_size=0)
    with pytest.raises(ValueError):
        DispatcherOptions(lease_duration=timedelta(0))
