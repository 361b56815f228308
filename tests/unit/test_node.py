"""
Unit tests for WorkerNode.

Covers work notifications, the commit target, and the teardown sequence
with its single termination notification.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fleet_common.errors import EngineError, NodeNotAccepting
from fleet_common.models import NodeState, SnapshotRecord, Template, WorkRun
from fleet_controller.node import COMMIT_AUTHOR, WorkerNode

CONTAINER_ID = "0123456789abcdef" * 4


def make_engine() -> AsyncMock:
    engine = AsyncMock()
    engine.commit_container.return_value = "sha256:feed"
    return engine


def make_node(engine=None, commit: bool = False, **kwargs) -> WorkerNode:
    template = Template(image="ci/agent", label_selector="linux", commit_on_completion=commit)
    node = WorkerNode(
        CONTAINER_ID,
        template,
        engine if engine is not None else make_engine(),
        listener=AsyncMock(),
        **kwargs,
    )
    node.state = NodeState.ACTIVE
    node.agent = MagicMock(close=AsyncMock())
    return node


def engine_steps(engine: AsyncMock) -> list[str]:
    return [name for name, _args, _kwargs in engine.mock_calls]


class TestWorkNotifications:
    """Test suite for work_started / work_completed."""

    @pytest.mark.asyncio
    async def test_work_started_marks_busy(self):
        """work_started marks the node busy."""
        node = make_node()
        run = WorkRun("build", "1")

        node.work_started(run)

        assert node.busy_with == run
        assert not node.is_idle
        assert node.idle_seconds() == 0.0

    @pytest.mark.asyncio
    async def test_work_completed_schedules_termination(self):
        """work_completed schedules the teardown in the background."""
        node = make_node()
        run = WorkRun("build", "1")
        node.work_started(run)

        task = node.work_completed(run)
        await task

        assert node.has_run_work
        assert node.is_idle
        assert node.state == NodeState.TERMINATED
        node.listener.container_terminated.assert_awaited_once_with(node.template, node)

    @pytest.mark.asyncio
    async def test_has_run_work_never_resets(self):
        """has_run_work stays set once work has finished."""
        node = make_node()
        assert not node.has_run_work
        assert node.is_accepting_work

        await node.work_completed(WorkRun("build", "1"))

        assert node.has_run_work
        assert not node.is_accepting_work

    @pytest.mark.asyncio
    async def test_spent_node_refuses_second_run(self):
        """A node that has run work refuses the next run, even mid-teardown."""
        node = make_node()
        node.work_started(WorkRun("build", "1"))
        task = node.work_completed(WorkRun("build", "1"))

        with pytest.raises(NodeNotAccepting):
            node.work_started(WorkRun("build", "2"))
        await task

        with pytest.raises(NodeNotAccepting):
            node.work_started(WorkRun("build", "3"))
        assert node.busy_with is None

    def test_offline_node_refuses_work(self):
        """A node whose agent is not connected yet takes no work."""
        node = make_node()
        node.state = NodeState.CONNECTING

        with pytest.raises(NodeNotAccepting):
            node.work_started(WorkRun("build", "1"))
        assert node.is_idle

    @pytest.mark.asyncio
    async def test_successful_work_sets_commit_target(self):
        """Successful work on a committing template sets the commit target."""
        node = make_node(commit=True)
        run = WorkRun("build", "1")

        await node.work_completed(run)

        assert node.pending_commit_target == run

    @pytest.mark.asyncio
    async def test_problems_skip_commit(self):
        """Work that finished with problems is not snapshotted."""
        engine = make_engine()
        node = make_node(engine, commit=True)

        await node.work_completed(WorkRun("build", "1"), problems=True)

        assert node.pending_commit_target is None
        assert "commit_container" not in engine_steps(engine)

    def test_commit_target_is_set_once(self):
        """Only the first commit target is kept."""
        node = make_node(commit=True)
        first, second = WorkRun("build", "1"), WorkRun("build", "2")

        node.commit_on_terminate(first)
        node.commit_on_terminate(second)

        assert node.pending_commit_target == first


class TestTeardown:
    """Test suite for WorkerNode.terminate."""

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self):
        """Teardown disconnects, stops, commits and removes in that order."""
        engine = make_engine()
        registry = AsyncMock()
        node = make_node(
            engine, commit=True, registry=registry, server_url="tcp://build-host:2375"
        )
        agent = node.agent
        node.commit_on_terminate(WorkRun("My Job", "7"))

        await node.terminate()

        agent.close.assert_awaited_once()
        registry.deregister.assert_awaited_once_with(node.display_name)
        assert engine_steps(engine) == ["stop_container", "commit_container", "remove_container"]
        engine.commit_container.assert_awaited_once_with(
            CONTAINER_ID, author=COMMIT_AUTHOR, repository="my-job", tag="7"
        )
        assert node.committed_image == "sha256:feed"
        snapshot = registry.record_snapshot.await_args.args[0]
        assert isinstance(snapshot, SnapshotRecord)
        assert snapshot.job_name == "My Job"
        assert snapshot.run_id == "7"
        assert snapshot.server_url == "tcp://build-host:2375"
        assert snapshot.container_id == CONTAINER_ID
        assert snapshot.image_id == "sha256:feed"
        assert snapshot.tag == "my-job:7"
        assert node.state == NodeState.TERMINATED
        assert node.agent is None

    @pytest.mark.asyncio
    async def test_no_commit_without_target(self):
        """Without a commit target no image is committed."""
        engine = make_engine()
        node = make_node(engine, commit=True)

        await node.terminate()

        assert engine_steps(engine) == ["stop_container", "remove_container"]

    @pytest.mark.asyncio
    async def test_failed_commit_records_no_snapshot(self):
        """A snapshot is only recorded when the commit produced an image."""
        engine = make_engine()
        engine.commit_container.side_effect = EngineError("commit failed")
        registry = AsyncMock()
        node = make_node(engine, commit=True, registry=registry)
        node.commit_on_terminate(WorkRun("build", "1"))

        await node.terminate()

        registry.record_snapshot.assert_not_awaited()
        assert node.committed_image is None
        assert "remove_container" in engine_steps(engine)

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_teardown(self):
        """A failing stop does not prevent the remaining steps."""
        engine = make_engine()
        engine.stop_container.side_effect = EngineError("stop failed")
        node = make_node(engine, commit=True)
        node.commit_on_terminate(WorkRun("build", "1"))

        await node.terminate()

        assert engine_steps(engine) == ["stop_container", "commit_container", "remove_container"]
        node.listener.container_terminated.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_listener_notified_when_every_step_fails(self):
        """The listener is notified even when every step fails."""
        engine = make_engine()
        engine.stop_container.side_effect = EngineError("stop failed")
        engine.remove_container.side_effect = EngineError("remove failed")
        registry = AsyncMock()
        registry.deregister.side_effect = RuntimeError("db closed")
        node = make_node(engine, registry=registry)
        node.agent.close.side_effect = OSError("broken pipe")

        await node.terminate()

        assert node.state == NodeState.TERMINATED
        registry.deregister.assert_awaited_once()
        node.listener.container_terminated.assert_awaited_once_with(node.template, node)

    @pytest.mark.asyncio
    async def test_terminate_twice_notifies_once(self):
        """A second terminate() is a no-op."""
        engine = make_engine()
        node = make_node(engine)

        await node.terminate()
        await node.terminate()

        engine.stop_container.assert_awaited_once()
        node.listener.container_terminated.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retention_terminate_returns_same_task(self):
        """Repeated background terminations share one task."""
        node = make_node()

        first = node.retention_terminate()
        second = node.retention_terminate()
        await first

        assert first is second
        node.listener.container_terminated.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_log_directory_is_removed(self, tmp_path):
        """The node's log directory is deleted on teardown."""
        node = make_node(log_root=tmp_path)
        node.append_launch_log("Connected on attempt 1")
        assert node.log_dir.exists()

        await node.terminate()

        assert not node.log_dir.exists()


def test_to_record():
    """to_record copies the node's identity into a registry record."""
    node = make_node()
    record = node.to_record()

    assert record.name == "0123456789ab"
    assert record.container_id == CONTAINER_ID
    assert record.labels == "linux"
    assert record.state == "active"
    assert record.registered_at is not None
