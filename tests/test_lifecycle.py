"""Tests for experiment lifecycle transitions and the DRAFT-only edit rule."""
import pytest

from abplatform.errors import InvalidStateError, ValidationError
from abplatform.models import ExperimentStatus
from abplatform.services import experiment_service, lifecycle

S = ExperimentStatus


def test_full_happy_path(db, make_experiment):
    experiment = make_experiment(status=S.DRAFT)

    assert lifecycle.mark_ready(db, experiment.id).status == S.READY

    started = lifecycle.start(db, experiment.id)
    assert started.status == S.RUNNING
    first_start = started.start_date
    assert first_start is not None

    assert lifecycle.pause(db, experiment.id).status == S.PAUSED

    resumed = lifecycle.start(db, experiment.id)
    assert resumed.status == S.RUNNING
    assert resumed.start_date == first_start, "resume must keep the original start date"

    completed = lifecycle.stop(db, experiment.id)
    assert completed.status == S.COMPLETED
    assert completed.end_date is not None

    assert lifecycle.archive(db, experiment.id).status == S.ARCHIVED


def test_stop_from_paused(db, make_experiment):
    experiment = make_experiment(status=S.PAUSED)
    assert lifecycle.stop(db, experiment.id).status == S.COMPLETED


@pytest.mark.parametrize("status", [S.READY, S.RUNNING, S.PAUSED, S.COMPLETED, S.ARCHIVED, S.CANCELLED])
def test_mark_ready_only_from_draft(db, make_experiment, status):
    experiment = make_experiment(status=status)
    with pytest.raises(InvalidStateError):
        lifecycle.mark_ready(db, experiment.id)
    db.refresh(experiment)
    assert experiment.status == status


@pytest.mark.parametrize("status", [S.DRAFT, S.RUNNING, S.COMPLETED, S.ARCHIVED, S.CANCELLED])
def test_start_only_from_ready_or_paused(db, make_experiment, status):
    experiment = make_experiment(status=status)
    with pytest.raises(InvalidStateError):
        lifecycle.start(db, experiment.id)


@pytest.mark.parametrize("status", [S.DRAFT, S.READY, S.PAUSED, S.COMPLETED])
def test_pause_only_from_running(db, make_experiment, status):
    experiment = make_experiment(status=status)
    with pytest.raises(InvalidStateError):
        lifecycle.pause(db, experiment.id)


@pytest.mark.parametrize("status", [S.DRAFT, S.READY, S.COMPLETED, S.CANCELLED])
def test_stop_only_when_active(db, make_experiment, status):
    experiment = make_experiment(status=status)
    with pytest.raises(InvalidStateError):
        lifecycle.stop(db, experiment.id)


@pytest.mark.parametrize("status", [S.DRAFT, S.READY, S.RUNNING, S.PAUSED])
def test_cancel_from_non_terminal(db, make_experiment, status):
    experiment = make_experiment(status=status)
    cancelled = lifecycle.cancel(db, experiment.id)
    assert cancelled.status == S.CANCELLED
    assert cancelled.end_date is not None

    # cancelled experiments can still be archived
    assert lifecycle.archive(db, experiment.id).status == S.ARCHIVED


@pytest.mark.parametrize("status", [S.COMPLETED, S.ARCHIVED, S.CANCELLED])
def test_cancel_rejected_when_finished(db, make_experiment, status):
    experiment = make_experiment(status=status)
    with pytest.raises(InvalidStateError):
        lifecycle.cancel(db, experiment.id)


@pytest.mark.parametrize("status", [S.DRAFT, S.READY, S.RUNNING, S.PAUSED])
def test_archive_only_when_finished(db, make_experiment, status):
    experiment = make_experiment(status=status)
    with pytest.raises(InvalidStateError):
        lifecycle.archive(db, experiment.id)


def test_mark_ready_validates_config(db, make_experiment):
    experiment = make_experiment(status=S.DRAFT, control="same", test="same")
    with pytest.raises(ValidationError):
        lifecycle.mark_ready(db, experiment.id)
    db.refresh(experiment)
    assert experiment.status == S.DRAFT


def test_update_only_in_draft(db, make_experiment):
    experiment = make_experiment(status=S.DRAFT, traffic_percentage=10)
    updated = experiment_service.update_experiment(
        db, experiment.id, {"traffic_percentage": 40, "description": "wider"}
    )
    assert updated.traffic_percentage == 40
    assert updated.description == "wider"

    lifecycle.mark_ready(db, experiment.id)
    with pytest.raises(InvalidStateError):
        experiment_service.update_experiment(db, experiment.id, {"traffic_percentage": 90})
    db.refresh(experiment)
    assert experiment.traffic_percentage == 40


def test_can_transition_table():
    class Fake:
        status = S.PAUSED

    assert lifecycle.can_transition(Fake, "start")
    assert lifecycle.can_transition(Fake, "stop")
    assert lifecycle.can_transition(Fake, "cancel")
    assert not lifecycle.can_transition(Fake, "pause")
    assert not lifecycle.can_transition(Fake, "archive")
