from __future__ import annotations

from typing import TYPE_CHECKING

from ventsync.models.messages import WindowCommand
from ventsync.transient import AngleAction, AnglePublisher, classify_inbound_angle

if TYPE_CHECKING:
    from conftest import ManualScheduler


def _publisher(scheduler: ManualScheduler) -> tuple[AnglePublisher, list[WindowCommand]]:
    sent: list[WindowCommand] = []
    return AnglePublisher(scheduler, sent.append, source="dashboard-a"), sent


def test_drag_is_throttled_with_trailing_flush_and_single_final(scheduler: ManualScheduler) -> None:
    angle, sent = _publisher(scheduler)

    angle.move(10)
    scheduler.advance(0.02)
    angle.move(12)
    scheduler.advance(0.02)
    angle.move(14.4)
    assert [c.angle for c in sent] == [10]

    scheduler.advance(0.1)
    assert [c.angle for c in sent] == [10, 14]
    assert not any(c.final for c in sent)

    final = angle.release()
    assert final is not None and final.final and final.angle == 14
    assert sum(1 for c in sent if c.final) == 1


def test_trailing_flush_skips_already_sent_value(scheduler: ManualScheduler) -> None:
    angle, sent = _publisher(scheduler)
    angle.move(20)
    scheduler.advance(0.5)

    assert len(sent) == 1


def test_release_with_explicit_angle_and_no_drag(scheduler: ManualScheduler) -> None:
    angle, sent = _publisher(scheduler)
    assert angle.release() is None

    command = angle.release(33.6)
    assert command is not None
    assert command.angle == 34
    assert command.source == "dashboard-a"
    assert [c.final for c in sent] == [True]


def test_release_cancels_pending_preview(scheduler: ManualScheduler) -> None:
    angle, sent = _publisher(scheduler)
    angle.move(10)
    scheduler.advance(0.01)
    angle.move(50)
    angle.release()

    scheduler.advance(1.0)
    assert [(c.angle, c.final) for c in sent] == [(10, False), (50, True)]


def test_publish_errors_do_not_escape(scheduler: ManualScheduler) -> None:
    def _broken(command: WindowCommand) -> None:
        raise ConnectionError("bus down")

    angle = AnglePublisher(scheduler, _broken)
    angle.move(5)
    assert angle.release() is not None


def test_foreign_preview_is_animated_and_final_snaps() -> None:
    preview = WindowCommand(angle=40, source="dashboard-b")
    final = WindowCommand(angle=40, final=True, source="dashboard-b")

    assert classify_inbound_angle(preview, local_source="dashboard-a") == AngleAction.ANIMATE
    assert classify_inbound_angle(final, local_source="dashboard-a") == AngleAction.SNAP


def test_own_preview_is_ignored() -> None:
    preview = WindowCommand(angle=40, source="dashboard-a")
    assert classify_inbound_angle(preview, local_source="dashboard-a") == AngleAction.IGNORE


def test_inbound_during_local_drag() -> None:
    foreign = WindowCommand(angle=70, source="dashboard-b")
    own_final = WindowCommand(angle=40.5, final=True, source="dashboard-a")
    far_final = WindowCommand(angle=70, final=True, source="bridge")

    assert classify_inbound_angle(foreign, dragging=True, local_value=40) == AngleAction.IGNORE
    assert classify_inbound_angle(own_final, dragging=True, local_value=40) == AngleAction.SNAP
    assert classify_inbound_angle(far_final, dragging=True, local_value=40) == AngleAction.IGNORE
