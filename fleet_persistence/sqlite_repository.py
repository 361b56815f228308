"""
SQLite implementation of the template store and fleet registry.

Uses aiosqlite for async operations and provides thread-safe access.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

from datetime import UTC, datetime

import aiosqlite

from fleet_common.models import ConnectionParams, NodeRecord, SnapshotRecord, Template
from fleet_common.registry import FleetRegistry, TemplateStore


class SQLiteFleetRepository(TemplateStore, FleetRegistry):
    """
    SQLite-based storage for fleet configuration and membership.

    Uses a single database file with three tables:
    - templates: Worker templates, in insertion order
    - nodes: Currently registered fleet members
    - snapshots: Images committed from nodes, keyed by run
    """

    def __init__(self, db_path: str = "fleet.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
        return self._connection

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - templates table: one row per image, position keeps routing order
        - nodes table: one row per registered node, keyed by display name
        - snapshots table: one row per snapshotted run
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS templates (
                position INTEGER PRIMARY KEY AUTOINCREMENT,
                image TEXT UNIQUE NOT NULL,
                label_selector TEXT NOT NULL DEFAULT '',
                capacity_cap INTEGER NOT NULL,
                min_idle_floor INTEGER NOT NULL DEFAULT 0,
                ssh_port INTEGER,
                credentials_id TEXT,
                jvm_options TEXT,
                java_path TEXT,
                prefix_start_cmd TEXT,
                suffix_start_cmd TEXT,
                remote_fs TEXT NOT NULL,
                commit_on_completion INTEGER NOT NULL DEFAULT 0,
                prefix_name_with_image INTEGER NOT NULL DEFAULT 0
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS nodes (
                name TEXT PRIMARY KEY,
                container_id TEXT UNIQUE NOT NULL,
                image TEXT NOT NULL,
                labels TEXT NOT NULL DEFAULT '',
                state TEXT NOT NULL,
                registered_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                job_name TEXT NOT NULL,
                run_id TEXT NOT NULL,
                server_url TEXT,
                container_id TEXT NOT NULL,
                image_id TEXT NOT NULL,
                tag TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (job_name, run_id)
            )
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def add_template(self, template: Template) -> None:
        conn = await self._get_connection()
        params = template.connection
        await conn.execute(
            """
            INSERT INTO templates (
                image, label_selector, capacity_cap, min_idle_floor,
                ssh_port, credentials_id, jvm_options, java_path,
                prefix_start_cmd, suffix_start_cmd, remote_fs,
                commit_on_completion, prefix_name_with_image
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                template.image,
                template.label_selector,
                template.capacity_cap,
                template.min_idle_floor,
                params.ssh_port,
                params.credentials_id,
                params.jvm_options,
                params.java_path,
                params.prefix_start_cmd,
                params.suffix_start_cmd,
                params.remote_fs,
                1 if template.commit_on_completion else 0,
                1 if template.prefix_name_with_image else 0,
            ),
        )
        await conn.commit()

    async def list_templates(self) -> list[Template]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT image, label_selector, capacity_cap, min_idle_floor,
                   ssh_port, credentials_id, jvm_options, java_path,
                   prefix_start_cmd, suffix_start_cmd, remote_fs,
                   commit_on_completion, prefix_name_with_image
            FROM templates
            ORDER BY position ASC
            """
        )
        rows = await cursor.fetchall()

        return [
            Template(
                image=row[0],
                label_selector=row[1],
                capacity_cap=row[2],
                min_idle_floor=row[3],
                connection=ConnectionParams(
                    ssh_port=row[4],
                    credentials_id=row[5],
                    jvm_options=row[6],
                    java_path=row[7],
                    prefix_start_cmd=row[8],
                    suffix_start_cmd=row[9],
                    remote_fs=row[10],
                ),
                commit_on_completion=bool(row[11]),
                prefix_name_with_image=bool(row[12]),
            )
            for row in rows
        ]

    async def remove_template(self, image: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("DELETE FROM templates WHERE image = ?", (image,))
        await conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Fleet registry
    # ------------------------------------------------------------------

    async def register(self, record: NodeRecord) -> None:
        conn = await self._get_connection()
        registered_at = record.registered_at or datetime.now(UTC)
        await conn.execute(
            """
            INSERT OR REPLACE INTO nodes (name, container_id, image, labels, state, registered_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.name,
                record.container_id,
                record.image,
                record.labels,
                record.state,
                registered_at.isoformat(),
            ),
        )
        await conn.commit()

    async def deregister(self, name: str) -> None:
        conn = await self._get_connection()
        await conn.execute("DELETE FROM nodes WHERE name = ?", (name,))
        await conn.commit()

    async def get_node(self, name: str) -> NodeRecord | None:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT name, container_id, image, labels, state, registered_at
            FROM nodes WHERE name = ?
            """,
            (name,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_node(row)

    async def list_nodes(self) -> list[NodeRecord]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT name, container_id, image, labels, state, registered_at
            FROM nodes ORDER BY registered_at ASC
            """
        )
        rows = await cursor.fetchall()
        return [self._row_to_node(row) for row in rows]

    async def purge_nodes(self) -> list[NodeRecord]:
        stale = await self.list_nodes()
        if stale:
            conn = await self._get_connection()
            await conn.execute("DELETE FROM nodes")
            await conn.commit()
        return stale

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def record_snapshot(self, snapshot: SnapshotRecord) -> None:
        conn = await self._get_connection()
        created_at = snapshot.created_at or datetime.now(UTC)
        await conn.execute(
            """
            INSERT OR REPLACE INTO snapshots
                (job_name, run_id, server_url, container_id, image_id, tag, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.job_name,
                snapshot.run_id,
                snapshot.server_url,
                snapshot.container_id,
                snapshot.image_id,
                snapshot.tag,
                created_at.isoformat(),
            ),
        )
        await conn.commit()

    async def get_snapshot(self, job_name: str, run_id: str) -> SnapshotRecord | None:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT job_name, run_id, server_url, container_id, image_id, tag, created_at
            FROM snapshots WHERE job_name = ? AND run_id = ?
            """,
            (job_name, run_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return SnapshotRecord(
            job_name=row[0],
            run_id=row[1],
            server_url=row[2],
            container_id=row[3],
            image_id=row[4],
            tag=row[5],
            created_at=datetime.fromisoformat(row[6]) if row[6] else None,
        )

    def _row_to_node(self, row) -> NodeRecord:
        return NodeRecord(
            name=row[0],
            container_id=row[1],
            image=row[2],
            labels=row[3],
            state=row[4],
            registered_at=datetime.fromisoformat(row[5]) if row[5] else None,
        )
