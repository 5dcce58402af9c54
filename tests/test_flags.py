"""Tests for feature flag management."""
import pytest

from abplatform.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from abplatform.models import Event, EventType, FlagStatus
from abplatform.schemas import FlagSnapshot
from abplatform.services import flag_service, rollout_service
from abplatform.utils import cache


def test_create_flag(db):
    flag = flag_service.create_flag(db, {"name": "dark_mode", "environment": "production",
                                         "rollout_percentage": 10})
    assert flag.id is not None
    assert flag.enabled is False
    assert flag.status == FlagStatus.INACTIVE
    assert flag.rollout_percentage == 10


def test_flag_name_unique_per_environment(db):
    flag_service.create_flag(db, {"name": "dark_mode", "environment": "production"})
    flag_service.create_flag(db, {"name": "dark_mode", "environment": "staging"})
    with pytest.raises(ConflictError):
        flag_service.create_flag(db, {"name": "dark_mode", "environment": "production"})


@pytest.mark.parametrize("rollout", [-1, 101])
def test_create_flag_rejects_bad_rollout(db, rollout):
    with pytest.raises(ValidationError):
        flag_service.create_flag(db, {"name": "bad", "rollout_percentage": rollout})


def test_toggle_switches_status(db, make_flag):
    flag = make_flag(enabled=False, status=FlagStatus.INACTIVE)

    on = flag_service.toggle_flag(db, flag.id, changed_by="admin")
    assert on.enabled is True
    assert on.status == FlagStatus.ACTIVE

    off = flag_service.toggle_flag(db, flag.id)
    assert off.enabled is False
    assert off.status == FlagStatus.INACTIVE

    toggles = db.query(Event).filter(Event.event_type == EventType.FLAG_TOGGLED).all()
    assert len(toggles) == 2
    assert toggles[0].user_id == "admin"


def test_toggle_deprecated_keeps_status(db, make_flag):
    flag = make_flag(enabled=False, status=FlagStatus.DEPRECATED)
    toggled = flag_service.toggle_flag(db, flag.id)
    assert toggled.enabled is True
    assert toggled.status == FlagStatus.DEPRECATED
    assert not toggled.is_active()


def test_archived_flag_cannot_be_turned_on(db, make_flag):
    flag = make_flag()
    archived = flag_service.archive_flag(db, flag.id)
    assert archived.enabled is False
    assert archived.status == FlagStatus.ARCHIVED

    with pytest.raises(InvalidStateError):
        flag_service.toggle_flag(db, flag.id)
    with pytest.raises(InvalidStateError):
        flag_service.enable_flag(db, flag.id)
    with pytest.raises(InvalidStateError):
        flag_service.deprecate_flag(db, flag.id)


def test_enable_disable(db, make_flag):
    flag = make_flag(enabled=False, status=FlagStatus.INACTIVE)
    assert flag_service.enable_flag(db, flag.id).is_active()

    disabled = flag_service.disable_flag(db, flag.id)
    assert disabled.enabled is False
    assert disabled.status == FlagStatus.INACTIVE


def test_rollout_updates(db, make_flag):
    flag = make_flag(rollout_percentage=40)

    assert flag_service.update_rollout_percentage(db, flag.id, 60).rollout_percentage == 60
    assert flag_service.increase_rollout(db, flag.id, 25).rollout_percentage == 85
    assert flag_service.increase_rollout(db, flag.id, 50).rollout_percentage == 100

    with pytest.raises(ValidationError):
        flag_service.update_rollout_percentage(db, flag.id, 150)
    with pytest.raises(ValidationError):
        flag_service.increase_rollout(db, flag.id, -5)


def test_unknown_flag(db):
    with pytest.raises(NotFoundError):
        flag_service.toggle_flag(db, 404)


def test_update_flag_renames_and_moves(db, make_flag):
    flag = make_flag(name="old_name", rollout_percentage=100)
    rollout_service.evaluate_flag(db, "old_name", "user_1", "production")
    # a stale snapshot under the target key must not survive the rename
    cache.set_flag(FlagSnapshot(id=999, name="new_name", enabled=False, status=FlagStatus.INACTIVE,
                                environment="staging", rollout_percentage=0))

    updated = flag_service.update_flag(db, flag.id, name="new_name", description="renamed",
                                       environment="staging")
    assert updated.name == "new_name"
    assert updated.environment == "staging"
    assert updated.description == "renamed"
    assert updated.rollout_percentage == 100

    assert cache.get_flag("old_name", "production") is None
    assert cache.get_flag("new_name", "staging") is None
    with pytest.raises(NotFoundError):
        rollout_service.evaluate_flag(db, "old_name", "user_1", "production")
    assert rollout_service.evaluate_flag(db, "new_name", "user_1", "staging") is True


def test_update_flag_name_conflict(db, make_flag):
    make_flag(name="taken")
    flag = make_flag(name="mine")
    with pytest.raises(ConflictError):
        flag_service.update_flag(db, flag.id, name="taken")

    # same name is free in another environment
    moved = flag_service.update_flag(db, flag.id, name="taken", environment="staging")
    assert (moved.name, moved.environment) == ("taken", "staging")

    # description-only update keeps the key
    assert flag_service.update_flag(db, moved.id, description="x").name == "taken"


def test_enable_disable_by_name(db, make_flag):
    make_flag(name="beta", enabled=False, status=FlagStatus.INACTIVE)
    make_flag(name="beta", enabled=False, status=FlagStatus.INACTIVE, environment="staging")

    enabled = flag_service.enable_flag_by_name(db, "beta", "staging")
    assert enabled.environment == "staging"
    assert enabled.is_active()

    disabled = flag_service.disable_flag_by_name(db, "beta", "staging")
    assert disabled.enabled is False

    with pytest.raises(NotFoundError):
        flag_service.enable_flag_by_name(db, "beta", "development")


def test_bulk_enable_and_disable(db, make_flag):
    flags = [make_flag(name=f"bulk_{i}", enabled=False, status=FlagStatus.INACTIVE) for i in range(3)]
    ids = [f.id for f in flags]

    assert all(f.is_active() for f in flag_service.enable_flags(db, ids))
    assert all(not f.enabled for f in flag_service.disable_flags(db, ids))
    assert db.query(Event).filter(Event.event_type == EventType.FLAG_ENABLED).count() == 3


def test_bulk_enable_rejects_before_changing_anything(db, make_flag):
    fresh = make_flag(name="fresh", enabled=False, status=FlagStatus.INACTIVE)
    archived = make_flag(name="gone", enabled=False, status=FlagStatus.ARCHIVED)

    with pytest.raises(InvalidStateError):
        flag_service.enable_flags(db, [fresh.id, archived.id])
    with pytest.raises(NotFoundError):
        flag_service.enable_flags(db, [fresh.id, 404])

    db.refresh(fresh)
    assert fresh.enabled is False


def test_bulk_rollout_validates_once_up_front(db, make_flag):
    first = make_flag(name="r1", rollout_percentage=10)
    second = make_flag(name="r2", rollout_percentage=20)

    with pytest.raises(ValidationError):
        flag_service.update_rollout_for_flags(db, [first.id, second.id], 120)
    db.refresh(first)
    assert first.rollout_percentage == 10

    updated = flag_service.update_rollout_for_flags(db, [first.id, second.id], 75)
    assert [f.rollout_percentage for f in updated] == [75, 75]
