"""
Unit tests for the operation store.

Tests verify:
- Operations are created pending with one member row per container
- Percent never moves backwards within a stage
- Terminal operations reject writes, except the rollback flag
- Cascade partitions stay disjoint across merges
- Interrupted operations are failed on startup, old ones cleaned up
"""

from datetime import datetime, timedelta, timezone

import pytest

from database import UpdateOperation
from errors import ErrorKind, NotFoundError, ValidationError
from updates.operation_store import OperationImmutableError
from updates.types import DependentRestartResult


def _create(store, operation_id="op-1", names=("web",), **kwargs):
    return store.create_operation(
        operation_id,
        kwargs.pop("operation_type", "update"),
        [{"container_name": name} for name in names],
        **kwargs,
    )


class TestCreate:

    @pytest.mark.unit
    def test_single_member(self, operation_store):
        operation = _create(operation_store, stack_name="media", old_version="1.0.0", new_version="1.1.0")

        assert operation["status"] == "pending"
        assert operation["container_name"] == "web"
        assert operation["stack_name"] == "media"
        assert operation["dependents_restarted"] == []
        assert [d["container_name"] for d in operation["batch_details"]] == ["web"]
        assert operation["batch_details"][0]["status"] == "queued"

    @pytest.mark.unit
    def test_multi_member_has_no_container_name(self, operation_store):
        operation = _create(operation_store, names=("web", "db"), batch_group_id="grp-1")

        assert operation["container_name"] is None
        assert operation["batch_group_id"] == "grp-1"
        assert len(operation["batch_details"]) == 2

    @pytest.mark.unit
    def test_member_columns_can_be_seeded(self, operation_store):
        operation = operation_store.create_operation(
            "op-1", "update",
            [{"container_name": "web", "old_version": "1.0.0", "new_version": "1.1.0", "ignored": "x"}],
        )

        detail = operation["batch_details"][0]
        assert detail["old_version"] == "1.0.0"
        assert detail["new_version"] == "1.1.0"

    @pytest.mark.unit
    def test_empty_rejected(self, operation_store):
        with pytest.raises(ValidationError):
            operation_store.create_operation("op-1", "update", [])


class TestMembers:

    @pytest.mark.unit
    def test_start_sets_in_progress(self, operation_store):
        _create(operation_store)

        operation = operation_store.start_operation("op-1")

        assert operation["status"] == "in_progress"
        assert operation["started_at"] is not None

    @pytest.mark.unit
    def test_percent_is_monotonic_within_stage(self, operation_store):
        _create(operation_store)
        operation_store.update_member("op-1", "web", stage="pulling_image", percent=40)

        detail = operation_store.update_member("op-1", "web", stage="pulling_image", percent=25)

        assert detail["percent"] == 40

    @pytest.mark.unit
    def test_new_stage_may_reset_percent(self, operation_store):
        _create(operation_store)
        operation_store.update_member("op-1", "web", stage="pulling_image", percent=40)

        detail = operation_store.update_member("op-1", "web", stage="recreating", percent=10)

        assert detail["percent"] == 10
        assert detail["stage"] == "recreating"

    @pytest.mark.unit
    def test_member_timestamps(self, operation_store):
        _create(operation_store)

        started = operation_store.update_member("op-1", "web", status="in_progress")
        finished = operation_store.update_member("op-1", "web", status="success")

        assert started["started_at"] is not None
        assert finished["completed_at"] is not None

    @pytest.mark.unit
    def test_unknown_field(self, operation_store):
        _create(operation_store)

        with pytest.raises(ValueError):
            operation_store.update_member("op-1", "web", colour="blue")

    @pytest.mark.unit
    def test_unknown_member(self, operation_store):
        _create(operation_store)

        with pytest.raises(NotFoundError):
            operation_store.update_member("op-1", "db", percent=10)

    @pytest.mark.unit
    def test_unknown_operation(self, operation_store):
        with pytest.raises(NotFoundError):
            operation_store.start_operation("missing")


class TestTerminal:

    @pytest.mark.unit
    def test_complete_keeps_summary_message(self, operation_store):
        _create(operation_store)

        operation = operation_store.complete_operation("op-1", "1 of 2 containers failed")

        assert operation["status"] == "complete"
        assert operation["error_message"] == "1 of 2 containers failed"
        assert operation["completed_at"] is not None

    @pytest.mark.unit
    def test_complete_is_immutable(self, operation_store):
        _create(operation_store)
        operation_store.complete_operation("op-1")

        with pytest.raises(OperationImmutableError):
            operation_store.update_member("op-1", "web", percent=50)
        with pytest.raises(OperationImmutableError):
            operation_store.fail_operation("op-1", "late failure", ErrorKind.EXECUTION)

    @pytest.mark.unit
    def test_fail_marks_open_members(self, operation_store):
        _create(operation_store, names=("web", "db"))
        operation_store.update_member("op-1", "web", status="success")

        operation = operation_store.fail_operation("op-1", "pull failed", ErrorKind.TRANSIENT)

        statuses = {d["container_name"]: d["status"] for d in operation["batch_details"]}
        assert operation["status"] == "failed"
        assert operation["error_kind"] == ErrorKind.TRANSIENT
        assert statuses == {"web": "success", "db": "failed"}

    @pytest.mark.unit
    def test_rollback_flag_allowed_on_terminal(self, operation_store):
        _create(operation_store)
        operation_store.complete_operation("op-1")

        operation_store.mark_rollback_occurred("op-1")

        assert operation_store.get_operation("op-1")["rollback_occurred"] is True

    @pytest.mark.unit
    def test_rollback_flag_unknown_operation(self, operation_store):
        with pytest.raises(NotFoundError):
            operation_store.mark_rollback_occurred("missing")


class TestDependents:

    @pytest.mark.unit
    def test_partitions_stay_disjoint(self, operation_store):
        _create(operation_store, names=("web", "api"))

        operation_store.record_dependents(
            "op-1", DependentRestartResult(dependents=["proxy", "worker"], restarted=["proxy", "worker"])
        )
        operation_store.record_dependents(
            "op-1", DependentRestartResult(dependents=["worker"], blocked=["worker"])
        )

        operation = operation_store.get_operation("op-1")
        assert operation["dependents_affected"] == ["proxy", "worker"]
        assert operation["dependents_restarted"] == ["proxy"]
        assert operation["dependents_blocked"] == ["worker"]

    @pytest.mark.unit
    def test_set_dependents_affected(self, operation_store):
        _create(operation_store)

        operation_store.set_dependents_affected("op-1", ["worker", "proxy"])

        assert operation_store.get_operation("op-1")["dependents_affected"] == ["proxy", "worker"]

    @pytest.mark.unit
    def test_set_versions(self, operation_store):
        _create(operation_store)

        operation_store.set_versions("op-1", new_version="1.2.0")

        operation = operation_store.get_operation("op-1")
        assert operation["new_version"] == "1.2.0"
        assert operation["old_version"] is None


class TestQueries:

    @pytest.mark.unit
    def test_get_missing(self, operation_store):
        assert operation_store.get_operation("missing") is None

    @pytest.mark.unit
    def test_get_group(self, operation_store):
        _create(operation_store, "op-1", batch_group_id="grp-1")
        _create(operation_store, "op-2", names=("db",), operation_type="rollback", batch_group_id="grp-1")
        _create(operation_store, "op-3", names=("other",))

        group = operation_store.get_group("grp-1")

        assert sorted(op["operation_id"] for op in group) == ["op-1", "op-2"]

    @pytest.mark.unit
    def test_list_matches_batch_members(self, operation_store):
        _create(operation_store, "op-1", names=("web", "db"))
        _create(operation_store, "op-2", names=("db",), operation_type="restart")
        _create(operation_store, "op-3", names=("web",))

        assert sorted(op["operation_id"] for op in operation_store.list_operations(container_name="db")) == ["op-1", "op-2"]
        assert [op["operation_id"] for op in operation_store.list_operations(operation_type="restart")] == ["op-2"]

    @pytest.mark.unit
    def test_list_by_status(self, operation_store):
        _create(operation_store, "op-1")
        _create(operation_store, "op-2")
        operation_store.complete_operation("op-2")

        assert [op["operation_id"] for op in operation_store.list_operations(status="complete")] == ["op-2"]


class TestLifecycleMaintenance:

    @pytest.mark.unit
    def test_fail_interrupted_operations(self, operation_store):
        _create(operation_store, "op-1")
        _create(operation_store, "op-2")
        operation_store.start_operation("op-2")
        _create(operation_store, "op-3")
        operation_store.complete_operation("op-3")

        assert operation_store.fail_interrupted_operations() == 2

        assert operation_store.get_operation("op-1")["status"] == "failed"
        assert operation_store.get_operation("op-2")["error_message"] == "Interrupted by service restart"
        assert operation_store.get_operation("op-3")["status"] == "complete"
        assert operation_store.find_active_operations() == []

    @pytest.mark.unit
    def test_cleanup_old_operations(self, operation_store, test_db):
        _create(operation_store, "old")
        operation_store.complete_operation("old")
        _create(operation_store, "recent")
        operation_store.complete_operation("recent")
        _create(operation_store, "running")

        with test_db.get_session() as session:
            operation = session.query(UpdateOperation).filter_by(operation_id="old").one()
            operation.completed_at = datetime.now(timezone.utc) - timedelta(days=60)
            session.commit()

        assert operation_store.cleanup_old_operations(30) == 1

        assert operation_store.get_operation("old") is None
        assert operation_store.get_operation("recent") is not None
        assert operation_store.get_operation("running") is not None
