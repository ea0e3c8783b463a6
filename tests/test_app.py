"""
Tests for the scheduler application
"""
from datetime import timedelta

import pytest

from embedding_queue import settings
from embedding_queue.app import Application, main, parse_args
from embedding_queue.processor import QueueProcessor
from conftest import NOW, FakeDatabase, FakeIndexingClient, make_item


def build_app(items=()):
    db = FakeDatabase(items)
    processor = QueueProcessor(db=db, client=FakeIndexingClient(), clock=lambda: NOW)
    return Application(batch_size=2, interval=1, processor=processor), db


def test_run_once_processes_a_batch():
    """Test a scheduler pass processes up to its batch size"""
    app, db = build_app([make_item("a"), make_item("b"), make_item("c")])

    assert app.run_once() == 2
    assert sum(1 for i in db.items.values() if i.status == "completed") == 2


def test_run_once_survives_store_failure():
    """Test an unreachable queue is logged and retried next tick"""
    app, db = build_app([make_item("a")])
    db.fail_select = True

    assert app.run_once() == 0
    assert db.items["a"].status == "pending"


def test_scheduler_recovers_lost_completion_write():
    """Test a row stranded in processing is recovered by a later scheduled pass"""
    clock = [NOW]
    db = FakeDatabase([make_item("a")])
    processor = QueueProcessor(db=db, client=FakeIndexingClient(), clock=lambda: clock[0])
    app = Application(batch_size=2, interval=1, processor=processor)
    db.fail_complete = True
    app.run_once()
    db.fail_complete = False

    clock[0] = NOW + timedelta(days=30)
    app.run_once()

    assert db.items["a"].status == "completed"
    assert db.items["a"].attempts == 2


def test_stop_closes_database():
    app, db = build_app()
    app.running = True

    app.stop()

    assert db.closed
    assert app.running is False


def test_parse_args():
    args = parse_args(["--once", "--batch-size", "25", "--interval", "120"])

    assert args.once is True
    assert args.batch_size == 25
    assert args.interval == 120


@pytest.mark.parametrize("flag,value", [
    ("--batch-size", "0"),
    ("--batch-size", "-5"),
    ("--batch-size", "ten"),
    ("--interval", "0"),
])
def test_parse_args_rejects_non_positive(flag, value):
    """Test bad numbers are rejected at the command line, not mid-loop"""
    with pytest.raises(SystemExit):
        parse_args([flag, value])


def test_application_rejects_non_positive_batch_size():
    with pytest.raises(ValueError, match="must be positive"):
        Application(batch_size=0, interval=1, processor=QueueProcessor(db=FakeDatabase(), client=FakeIndexingClient()))


def test_main_exits_on_bad_batch_size_setting(monkeypatch):
    """Test a non-positive BATCH_SIZE from the environment exits cleanly"""
    monkeypatch.setattr(settings, "BATCH_SIZE", 0)

    with pytest.raises(SystemExit) as exc:
        main(["--once"])
    assert exc.value.code == 1


def test_parse_args_defaults():
    args = parse_args([])

    assert args.once is False
    assert args.batch_size is None
    assert args.interval is None
