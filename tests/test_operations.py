import threading
from datetime import date

import pytest
from sqlmodel import Session, select

from lanequeue import operations
from lanequeue.allocator import allocate
from lanequeue.errors import Conflict, Forbidden, InvalidState, NotFound
from lanequeue.lanes import get_lane, set_current_number
from lanequeue.models import QueueAction, QueueItem, QueueItemStatus, QueueOperation, StaffRole
from lanequeue.operations import apply_action, run_action
from lanequeue.staff import create_staff

DAY = date(2025, 3, 14)


def _ticket(session, lane_id, number):
    session.expire_all()
    return session.exec(
        select(QueueItem).where(QueueItem.lane_id == lane_id, QueueItem.number == number)
    ).one()


def _operations(session):
    session.expire_all()
    return session.exec(select(QueueOperation).order_by(QueueOperation.id)).all()


def test_legacy_action_names():
    assert QueueAction("NEXT") is QueueAction.advance
    assert QueueAction("call") is QueueAction.recall
    assert QueueAction("BUZZ") is QueueAction.alert
    assert QueueAction("SERVE") is QueueAction.serve
    with pytest.raises(ValueError):
        QueueAction("JUMP")


def test_advance_calls_the_next_ticket(session, lane, cashier):
    allocate(session, lane.id, day=DAY)
    allocate(session, lane.id, day=DAY)

    result = apply_action(session, cashier.id, lane.id, QueueAction.advance, day=DAY)

    assert result.to_dict() == {"currentNumber": 1}
    assert get_lane(session, lane.id).current_number == 1
    ticket = _ticket(session, lane.id, 1)
    assert ticket.status == QueueItemStatus.called
    assert ticket.called_at is not None
    assert _ticket(session, lane.id, 2).status == QueueItemStatus.waiting


def test_advance_without_ticket_still_moves_pointer(session, lane, cashier):
    apply_action(session, cashier.id, lane.id, QueueAction.advance, day=DAY)

    assert get_lane(session, lane.id).current_number == 1
    ops = _operations(session)
    assert [(op.action, op.number) for op in ops] == [(QueueAction.advance, 1)]


def test_advance_ignores_tickets_from_other_days(session, lane, cashier):
    allocate(session, lane.id, day=date(2025, 3, 13))

    apply_action(session, cashier.id, lane.id, QueueAction.advance, day=DAY)

    assert _ticket(session, lane.id, 1).status == QueueItemStatus.waiting


def test_advance_wraps_with_the_ticket_range(session, lane, cashier):
    set_current_number(session, lane.id, 5)
    session.commit()

    result = apply_action(session, cashier.id, lane.id, QueueAction.advance, day=DAY, max_number=5)

    assert result.number == 1


def test_serve_marks_current_ticket(session, lane, cashier):
    allocate(session, lane.id, day=DAY)
    apply_action(session, cashier.id, lane.id, QueueAction.advance, day=DAY)

    result = apply_action(session, cashier.id, lane.id, QueueAction.serve, day=DAY)

    assert result.to_dict() == {"servedNumber": 1}
    fresh = get_lane(session, lane.id)
    assert (fresh.current_number, fresh.last_served_number) == (1, 1)
    ticket = _ticket(session, lane.id, 1)
    assert ticket.status == QueueItemStatus.served
    assert ticket.served_at is not None


@pytest.mark.parametrize("action", [QueueAction.recall, QueueAction.alert, QueueAction.serve])
def test_actions_need_a_called_number(session, lane, cashier, action):
    with pytest.raises(InvalidState):
        apply_action(session, cashier.id, lane.id, action, day=DAY)
    assert _operations(session) == []


@pytest.mark.parametrize("action", [QueueAction.recall, QueueAction.alert])
def test_recall_and_alert_only_log(session, lane, cashier, action):
    allocate(session, lane.id, day=DAY)
    apply_action(session, cashier.id, lane.id, QueueAction.advance, day=DAY)

    result = apply_action(session, cashier.id, lane.id, action, day=DAY)

    assert result.to_dict() == {"currentNumber": 1}
    assert get_lane(session, lane.id).current_number == 1
    assert _ticket(session, lane.id, 1).status == QueueItemStatus.called
    assert [op.action for op in _operations(session)] == [QueueAction.advance, action]


def test_unassigned_staff_is_forbidden(session, lane, outsider):
    allocate(session, lane.id, day=DAY)

    for action in QueueAction:
        with pytest.raises(Forbidden):
            apply_action(session, outsider.id, lane.id, action, day=DAY)

    assert _operations(session) == []
    assert get_lane(session, lane.id).current_number == 0


def test_display_role_is_forbidden_even_when_assigned(session, lane):
    display = create_staff(session, "display", "Display Screen", StaffRole.display)

    with pytest.raises(Forbidden):
        apply_action(session, display.id, lane.id, QueueAction.advance, day=DAY)


def test_inactive_staff_is_forbidden(session, lane, cashier):
    cashier.is_active = False
    session.add(cashier)
    session.commit()

    with pytest.raises(Forbidden):
        apply_action(session, cashier.id, lane.id, QueueAction.advance, day=DAY)


def test_admin_needs_no_assignment(session, lane, admin):
    result = apply_action(session, admin.id, lane.id, QueueAction.advance, day=DAY)

    assert result.number == 1


def test_unknown_lane_and_actor(session, lane, admin):
    with pytest.raises(NotFound):
        apply_action(session, admin.id, 999, QueueAction.advance, day=DAY)
    with pytest.raises(NotFound):
        apply_action(session, 999, lane.id, QueueAction.advance, day=DAY)


def test_run_action_retries_once_after_lost_race(engine, lane, cashier, monkeypatch):
    lane_id, cashier_id = lane.id, cashier.id
    real_cas = operations.compare_and_set_current
    calls = []

    def flaky(session, lane_id, expected, new):
        calls.append(expected)
        if len(calls) == 1:
            return False
        return real_cas(session, lane_id, expected, new)

    monkeypatch.setattr(operations, "compare_and_set_current", flaky)

    result = run_action(engine, cashier_id, lane_id, QueueAction.advance, day=DAY)

    assert result.number == 1
    assert len(calls) == 2
    with Session(engine) as s:
        assert len(s.exec(select(QueueOperation)).all()) == 1


def test_run_action_gives_up_with_conflict(engine, lane, cashier, monkeypatch):
    lane_id, cashier_id = lane.id, cashier.id
    monkeypatch.setattr(operations, "compare_and_set_current", lambda *args: False)

    with pytest.raises(Conflict):
        run_action(engine, cashier_id, lane_id, QueueAction.advance, day=DAY)

    with Session(engine) as s:
        assert s.exec(select(QueueOperation)).all() == []
        assert get_lane(s, lane_id).current_number == 0


def test_serve_detects_pointer_moved_underneath(engine, lane, cashier, monkeypatch):
    lane_id, cashier_id = lane.id, cashier.id
    run_action(engine, cashier_id, lane_id, QueueAction.advance, day=DAY)
    monkeypatch.setattr(operations, "serve_current", lambda *args: False)

    with pytest.raises(Conflict):
        run_action(engine, cashier_id, lane_id, QueueAction.serve, day=DAY)

    with Session(engine) as s:
        assert get_lane(s, lane_id).last_served_number == 0


def test_every_action_has_a_handler():
    assert set(operations._HANDLERS) == set(QueueAction)


def test_concurrent_advances_keep_pointer_and_log_in_step(engine, service, lane, cashier):
    lane_id, cashier_id = lane.id, cashier.id
    service.reset_scheduler.maybe_reset()
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    errors = []
    lock = threading.Lock()

    def advance():
        barrier.wait()
        try:
            outcome = service.operate(QueueAction.advance, lane_id, cashier_id)
            with lock:
                results.append(outcome["currentNumber"])
        except Exception as exc:  # collected and asserted below
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=advance) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(results) + len(errors) == workers
    assert all(isinstance(exc, Conflict) for exc in errors)
    assert sorted(results) == list(range(1, len(results) + 1))
    with Session(engine) as s:
        assert get_lane(s, lane_id).current_number == len(results)
        ops = s.exec(select(QueueOperation)).all()
    assert len(ops) == len(results)
    assert sorted(op.number for op in ops) == sorted(results)
