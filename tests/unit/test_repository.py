"""
Unit tests for the repository layer.

Tests the SQLite implementation of the template store and the fleet
registry against a temporary database file.
"""

import os
import sqlite3
import tempfile
from datetime import UTC, datetime

import pytest
import pytest_asyncio

from fleet_common.models import UNBOUNDED, ConnectionParams, NodeRecord, SnapshotRecord, Template
from fleet_persistence.sqlite_repository import SQLiteFleetRepository


@pytest_asyncio.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteFleetRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


def make_record(name: str, container_id: str, **overrides) -> NodeRecord:
    values = {
        "name": name,
        "container_id": container_id,
        "image": "ci/agent",
        "labels": "linux",
        "state": "active",
        "registered_at": datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
    }
    values.update(overrides)
    return NodeRecord(**values)


@pytest.mark.asyncio
async def test_add_and_list_templates(temp_db):
    """Templates round-trip with all their settings, in insertion order."""
    repo = temp_db
    first = Template(
        image="ci/linux",
        label_selector="linux docker",
        capacity_cap=4,
        min_idle_floor=1,
        connection=ConnectionParams(ssh_port=2222, jvm_options="-Xmx1g", remote_fs="/work"),
        commit_on_completion=True,
    )
    second = Template(image="ci/windows", label_selector="windows")

    await repo.add_template(first)
    await repo.add_template(second)

    templates = await repo.list_templates()

    assert templates == [first, second]
    assert templates[1].capacity_cap == UNBOUNDED


@pytest.mark.asyncio
async def test_duplicate_image_rejected(temp_db):
    """A second template for the same image violates uniqueness."""
    await temp_db.add_template(Template(image="ci/linux"))

    with pytest.raises(sqlite3.IntegrityError):
        await temp_db.add_template(Template(image="ci/linux", capacity_cap=1))


@pytest.mark.asyncio
async def test_remove_template(temp_db):
    """Removing a template reports whether one existed."""
    repo = temp_db
    await repo.add_template(Template(image="ci/linux"))

    assert await repo.remove_template("ci/linux") is True
    assert await repo.remove_template("ci/linux") is False
    assert await repo.list_templates() == []


@pytest.mark.asyncio
async def test_register_and_get_node(temp_db):
    """A registered node is returned unchanged."""
    repo = temp_db
    record = make_record("0123456789ab", "0123456789abcdef")

    await repo.register(record)
    retrieved = await repo.get_node("0123456789ab")

    assert retrieved == record


@pytest.mark.asyncio
async def test_get_nonexistent_node(temp_db):
    """Unknown node names give None."""
    assert await temp_db.get_node("nope") is None


@pytest.mark.asyncio
async def test_register_without_timestamp(temp_db):
    """Registration without a timestamp stamps the current time."""
    await temp_db.register(make_record("n1", "c1", registered_at=None))

    retrieved = await temp_db.get_node("n1")

    assert retrieved.registered_at is not None


@pytest.mark.asyncio
async def test_register_replaces_existing(temp_db):
    """Registering the same name again replaces the row."""
    repo = temp_db
    await repo.register(make_record("n1", "c1"))
    await repo.register(make_record("n1", "c1", state="terminating"))

    nodes = await repo.list_nodes()

    assert len(nodes) == 1
    assert nodes[0].state == "terminating"


@pytest.mark.asyncio
async def test_list_and_deregister_nodes(temp_db):
    """Nodes list oldest first and deregister by name."""
    repo = temp_db
    await repo.register(make_record("n2", "c2", registered_at=datetime(2024, 5, 2, tzinfo=UTC)))
    await repo.register(make_record("n1", "c1", registered_at=datetime(2024, 5, 1, tzinfo=UTC)))

    assert [n.name for n in await repo.list_nodes()] == ["n1", "n2"]

    await repo.deregister("n1")
    await repo.deregister("unknown")

    assert [n.name for n in await repo.list_nodes()] == ["n2"]


@pytest.mark.asyncio
async def test_purge_nodes_returns_removed_records(temp_db):
    """Purging empties the registry and hands back what was there."""
    repo = temp_db
    await repo.register(make_record("n1", "c1"))
    await repo.register(make_record("n2", "c2", registered_at=datetime(2024, 5, 2, tzinfo=UTC)))

    purged = await repo.purge_nodes()

    assert [n.name for n in purged] == ["n1", "n2"]
    assert await repo.list_nodes() == []
    assert await repo.purge_nodes() == []


@pytest.mark.asyncio
async def test_record_and_get_snapshot(temp_db):
    """A snapshot is found again by job name and run id."""
    repo = temp_db
    snapshot = SnapshotRecord(
        job_name="My Job",
        run_id="7",
        server_url="tcp://build-host:2375",
        container_id="0123456789abcdef",
        image_id="sha256:feed",
        tag="my-job:7",
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
    )

    await repo.record_snapshot(snapshot)

    assert await repo.get_snapshot("My Job", "7") == snapshot
    assert await repo.get_snapshot("My Job", "8") is None


@pytest.mark.asyncio
async def test_snapshot_for_same_run_is_replaced(temp_db):
    """Snapshotting a run again keeps only the newest image."""
    repo = temp_db
    first = SnapshotRecord("build", "1", None, "c1", "sha256:aaa", "build:1")
    second = SnapshotRecord("build", "1", None, "c2", "sha256:bbb", "build:1")

    await repo.record_snapshot(first)
    await repo.record_snapshot(second)

    stored = await repo.get_snapshot("build", "1")
    assert stored.image_id == "sha256:bbb"
    assert stored.server_url is None
    assert stored.created_at is not None

@pytest.mark.asyncio
async def test_data_survives_reopen(temp_db):
    """Data persists across connections."""
    repo = temp_db
    await repo.add_template(Template(image="ci/linux"))
    await repo.close()

    reopened = SQLiteFleetRepository(repo.db_path)
    await reopened.initialize()
    try:
        assert [t.image for t in await reopened.list_templates()] == ["ci/linux"]
    finally:
        await reopened.close()
