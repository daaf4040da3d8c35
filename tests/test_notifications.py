"""Tests for the notice fan-out."""

from hackbuddy.errors import ConflictError
from hackbuddy.notifications import Notifier


def test_listeners_see_every_notice():
    notifier = Notifier(history=2)
    seen = []
    notifier.subscribe(lambda notice: seen.append(notice.message))

    for i in range(5):
        notifier.info(f"note {i}")

    assert seen == [f"note {i}" for i in range(5)]


def test_history_is_bounded():
    notifier = Notifier(history=3)

    for i in range(10):
        notifier.info(f"note {i}")

    assert [n.message for n in notifier.notices] == ["note 7", "note 8", "note 9"]


def test_last_error_outlives_history():
    notifier = Notifier(history=2)
    notifier.error("Team is full!", ConflictError("Team is full!"))

    for i in range(5):
        notifier.success(f"ok {i}")

    assert notifier.last_error.message == "Team is full!"
    assert notifier.last_error.status_code == 409
    assert all(n.level == "success" for n in notifier.notices)


def test_plain_exceptions_map_to_500():
    notifier = Notifier()
    assert notifier.error("boom", RuntimeError("boom")).status_code == 500
    assert Notifier().last_error is None
