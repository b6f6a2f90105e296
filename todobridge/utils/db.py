"""Database utilities for credentials and task sync state."""

import logging
import sqlite3
from datetime import date, datetime
from pathlib import Path

import aiosqlite

from todobridge.core.models import (
    Credential,
    CredentialStatus,
    LocalTask,
    TaskPriority,
    TaskStatus,
)
from todobridge.utils.datetime_utils import safe_fromtimestamp, to_timestamp, utc_now

logger = logging.getLogger(__name__)


class CredentialsDB:
    """
    Manages SQLite storage of Microsoft credentials.

    One row per local user: the OAuth2 token pair, the resolved To Do list id
    and the webhook lease currently held for that list.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create the microsoft_credential table if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS microsoft_credential (
                    user_id TEXT PRIMARY KEY,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT NOT NULL,
                    expires_at REAL NOT NULL,
                    scope TEXT NOT NULL DEFAULT '',
                    email TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    remote_list_id TEXT,
                    webhook_subscription_id TEXT UNIQUE,
                    webhook_expires_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            await db.commit()
            logger.debug(f"Credentials database initialized at {self.db_path}")

    @staticmethod
    def _to_credential(row: aiosqlite.Row) -> Credential:
        return Credential(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=safe_fromtimestamp(row["expires_at"]),
            scope=row["scope"],
            email=row["email"],
            status=CredentialStatus(row["status"]),
            remote_list_id=row["remote_list_id"],
            webhook_subscription_id=row["webhook_subscription_id"],
            webhook_expires_at=safe_fromtimestamp(row["webhook_expires_at"]),
        )

    async def _fetch(self, query: str, params: tuple = ()) -> list[Credential]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [self._to_credential(row) for row in rows]

    async def _execute(self, query: str, params: tuple) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def get(self, user_id: str) -> Credential | None:
        rows = await self._fetch(
            "SELECT * FROM microsoft_credential WHERE user_id = ?", (user_id,)
        )
        return rows[0] if rows else None

    async def get_many(self, user_ids: list[str]) -> dict[str, Credential]:
        """Credentials for the given users, keyed by user id (missing users omitted)."""
        if not user_ids:
            return {}
        placeholders = ", ".join("?" for _ in user_ids)
        rows = await self._fetch(
            f"SELECT * FROM microsoft_credential WHERE user_id IN ({placeholders})",
            tuple(user_ids),
        )
        return {cred.user_id: cred for cred in rows}

    async def get_all(self) -> list[Credential]:
        return await self._fetch("SELECT * FROM microsoft_credential ORDER BY user_id")

    async def get_with_webhooks(self) -> list[Credential]:
        return await self._fetch(
            """
            SELECT * FROM microsoft_credential
            WHERE webhook_subscription_id IS NOT NULL
            ORDER BY user_id
            """
        )

    async def get_by_subscription(self, subscription_id: str) -> Credential | None:
        rows = await self._fetch(
            "SELECT * FROM microsoft_credential WHERE webhook_subscription_id = ?",
            (subscription_id,),
        )
        return rows[0] if rows else None

    async def upsert(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        scope: str,
        email: str | None = None,
    ) -> None:
        """
        Store the token pair obtained from an authorization-code exchange.

        Re-authorizing keeps the cached list id and webhook lease and resets
        the credential to active.
        """
        now = to_timestamp(utc_now())
        await self._execute(
            """
            INSERT INTO microsoft_credential
            (user_id, access_token, refresh_token, expires_at, scope, email, status,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                expires_at = excluded.expires_at,
                scope = excluded.scope,
                email = COALESCE(excluded.email, microsoft_credential.email),
                status = 'active',
                updated_at = excluded.updated_at
            """,
            (user_id, access_token, refresh_token, to_timestamp(expires_at), scope, email, now, now),
        )
        logger.debug(f"Upserted Microsoft credential for user {user_id}")

    async def update_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        scope: str,
    ) -> None:
        await self._execute(
            """
            UPDATE microsoft_credential
            SET access_token = ?, refresh_token = ?, expires_at = ?, scope = ?, updated_at = ?
            WHERE user_id = ?
            """,
            (access_token, refresh_token, to_timestamp(expires_at), scope, to_timestamp(utc_now()), user_id),
        )

    async def expire_access_token(self, user_id: str) -> None:
        """Force the next token lookup to refresh."""
        await self._execute(
            "UPDATE microsoft_credential SET expires_at = 0 WHERE user_id = ?", (user_id,)
        )

    async def mark_invalid(self, user_id: str) -> None:
        await self._execute(
            "UPDATE microsoft_credential SET status = ?, updated_at = ? WHERE user_id = ?",
            (CredentialStatus.INVALID.value, to_timestamp(utc_now()), user_id),
        )
        logger.debug(f"Marked Microsoft credential invalid for user {user_id}")

    async def set_remote_list(self, user_id: str, list_id: str) -> None:
        await self._execute(
            "UPDATE microsoft_credential SET remote_list_id = ?, updated_at = ? WHERE user_id = ?",
            (list_id, to_timestamp(utc_now()), user_id),
        )

    async def set_webhook(self, user_id: str, subscription_id: str, expires_at: datetime) -> None:
        await self._execute(
            """
            UPDATE microsoft_credential
            SET webhook_subscription_id = ?, webhook_expires_at = ?, updated_at = ?
            WHERE user_id = ?
            """,
            (subscription_id, to_timestamp(expires_at), to_timestamp(utc_now()), user_id),
        )

    async def clear_webhook(self, user_id: str) -> None:
        await self._execute(
            """
            UPDATE microsoft_credential
            SET webhook_subscription_id = NULL, webhook_expires_at = NULL, updated_at = ?
            WHERE user_id = ?
            """,
            (to_timestamp(utc_now()), user_id),
        )

    async def delete(self, user_id: str) -> bool:
        deleted = await self._execute(
            "DELETE FROM microsoft_credential WHERE user_id = ?", (user_id,)
        )
        if deleted:
            logger.info(f"Deleted Microsoft credential for user {user_id}")
        return bool(deleted)


class TasksDB:
    """
    SQLite adapter over the dashboard's task tables.

    The engine only touches the columns it needs: the mapped fields, the
    completion/board bookkeeping and the sync link (remote id, owner and
    watermark). Engine writes never bump updated_at.
    """

    # Columns a pull may overwrite
    SYNCABLE_COLUMNS = {"title", "status", "priority", "due_date", "completed_at", "board_column"}

    def __init__(self, db_path: Path):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create the task and task_assignment tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS task (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'TODO',
                    priority TEXT NOT NULL DEFAULT 'MEDIUM',
                    due_date TEXT,
                    creator_id TEXT NOT NULL,
                    assignee_id TEXT,
                    board_column TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    completed_at REAL,
                    remote_task_id TEXT UNIQUE,
                    remote_owner_id TEXT,
                    last_synced_at REAL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS task_assignment (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL REFERENCES task(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    UNIQUE(task_id, user_id)
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_task_assignment_user
                ON task_assignment(user_id)
                """
            )
            await db.commit()
            logger.debug(f"Tasks database initialized at {self.db_path}")

    @staticmethod
    def _to_task(row: aiosqlite.Row, co_assignee_ids: list[str]) -> LocalTask:
        return LocalTask(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            status=TaskStatus(row["status"]),
            priority=TaskPriority(row["priority"]),
            due_date=date.fromisoformat(row["due_date"]) if row["due_date"] else None,
            creator_id=row["creator_id"],
            assignee_id=row["assignee_id"],
            co_assignee_ids=co_assignee_ids,
            board_column=row["board_column"],
            created_at=safe_fromtimestamp(row["created_at"]),
            updated_at=safe_fromtimestamp(row["updated_at"]),
            completed_at=safe_fromtimestamp(row["completed_at"]),
            remote_task_id=row["remote_task_id"],
            remote_owner_id=row["remote_owner_id"],
            last_synced_at=safe_fromtimestamp(row["last_synced_at"]),
        )

    async def _load(self, db: aiosqlite.Connection, rows: list[aiosqlite.Row]) -> list[LocalTask]:
        tasks = []
        for row in rows:
            async with db.execute(
                "SELECT user_id FROM task_assignment WHERE task_id = ? ORDER BY id",
                (row["id"],),
            ) as cursor:
                assignments = [r["user_id"] for r in await cursor.fetchall()]
            tasks.append(self._to_task(row, assignments))
        return tasks

    async def _fetch(self, query: str, params: tuple = ()) -> list[LocalTask]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return await self._load(db, rows)

    async def save_task(self, task: LocalTask) -> None:
        """
        Insert or replace a task as the dashboard would.

        This is the local-edit path: updated_at defaults to now.
        """
        now = utc_now()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO task
                (id, title, description, status, priority, due_date, creator_id, assignee_id,
                 board_column, created_at, updated_at, completed_at,
                 remote_task_id, remote_owner_id, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    status = excluded.status,
                    priority = excluded.priority,
                    due_date = excluded.due_date,
                    creator_id = excluded.creator_id,
                    assignee_id = excluded.assignee_id,
                    board_column = excluded.board_column,
                    updated_at = excluded.updated_at,
                    completed_at = excluded.completed_at,
                    remote_task_id = excluded.remote_task_id,
                    remote_owner_id = excluded.remote_owner_id,
                    last_synced_at = excluded.last_synced_at
                """,
                (
                    task.id,
                    task.title,
                    task.description,
                    TaskStatus(task.status).value,
                    TaskPriority(task.priority).value,
                    task.due_date.isoformat() if task.due_date else None,
                    task.creator_id,
                    task.assignee_id,
                    task.board_column,
                    to_timestamp(task.created_at or now),
                    to_timestamp(task.updated_at or now),
                    to_timestamp(task.completed_at),
                    task.remote_task_id,
                    task.remote_owner_id,
                    to_timestamp(task.last_synced_at),
                ),
            )
            await db.execute("DELETE FROM task_assignment WHERE task_id = ?", (task.id,))
            await db.executemany(
                "INSERT OR IGNORE INTO task_assignment (task_id, user_id) VALUES (?, ?)",
                [(task.id, user_id) for user_id in task.co_assignee_ids],
            )
            await db.commit()

    async def get_task(self, task_id: str) -> LocalTask | None:
        tasks = await self._fetch("SELECT * FROM task WHERE id = ?", (task_id,))
        return tasks[0] if tasks else None

    async def get_task_by_remote_id(self, remote_task_id: str) -> LocalTask | None:
        tasks = await self._fetch("SELECT * FROM task WHERE remote_task_id = ?", (remote_task_id,))
        return tasks[0] if tasks else None

    async def get_unsynced_tasks_for_user(self, user_id: str, limit: int) -> list[LocalTask]:
        """Tasks the user created or is assigned to that have no remote copy yet, newest first."""
        return await self._fetch(
            """
            SELECT * FROM task
            WHERE remote_task_id IS NULL
              AND status != 'CANCELLED'
              AND (
                  creator_id = ?
                  OR assignee_id = ?
                  OR id IN (SELECT task_id FROM task_assignment WHERE user_id = ?)
              )
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, user_id, user_id, limit),
        )

    async def claim_remote_link(
        self,
        task_id: str,
        remote_task_id: str,
        owner_id: str,
        synced_at: datetime,
    ) -> bool:
        """
        Attach a freshly created remote task to an unlinked local task.

        Compare-and-set: returns False when the task already has a remote id
        (another push claimed it first) or the remote id is already in use.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE task
                    SET remote_task_id = ?, remote_owner_id = ?, last_synced_at = ?
                    WHERE id = ? AND remote_task_id IS NULL
                    """,
                    (remote_task_id, owner_id, to_timestamp(synced_at), task_id),
                )
                await db.commit()
                claimed = cursor.rowcount == 1
        except sqlite3.IntegrityError:
            logger.warning(f"Remote task {remote_task_id} is already linked to another task")
            return False

        if claimed:
            logger.debug(f"Linked task {task_id} -> remote {remote_task_id}")
        return claimed

    async def mark_synced(self, task_id: str, synced_at: datetime, owner_id: str | None = None) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE task
                SET last_synced_at = ?, remote_owner_id = COALESCE(?, remote_owner_id)
                WHERE id = ?
                """,
                (to_timestamp(synced_at), owner_id, task_id),
            )
            await db.commit()

    async def apply_remote_changes(self, task_id: str, changes: dict, synced_at: datetime) -> None:
        """
        Write a pulled diff and advance the watermark in one statement.

        Args:
            task_id: Local task id
            changes: Column -> new value; keys limited to SYNCABLE_COLUMNS
            synced_at: New watermark
        """
        unknown = set(changes) - self.SYNCABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot sync columns: {', '.join(sorted(unknown))}")

        assignments = []
        params: list = []
        for column, value in changes.items():
            assignments.append(f"{column} = ?")
            params.append(self._serialize(value))
        assignments.append("last_synced_at = ?")
        params.append(to_timestamp(synced_at))
        params.append(task_id)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE task SET {', '.join(assignments)} WHERE id = ?",
                tuple(params),
            )
            await db.commit()

    async def mark_cancelled(self, task_id: str, synced_at: datetime) -> bool:
        """Cancel a task whose remote copy was deleted. False if it was already cancelled."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE task
                SET status = 'CANCELLED', board_column = 'cancelled', last_synced_at = ?
                WHERE id = ? AND status != 'CANCELLED'
                """,
                (to_timestamp(synced_at), task_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def release_remote_links(self, owner_id: str) -> int:
        """
        Unlink every task whose remote copy lives in ``owner_id``'s list.

        The next push of such a task creates a fresh copy for whichever
        linked user still has an account.

        Returns:
            Number of tasks unlinked
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE task
                SET remote_task_id = NULL, remote_owner_id = NULL, last_synced_at = NULL
                WHERE remote_owner_id = ?
                """,
                (owner_id,),
            )
            await db.commit()
            released = cursor.rowcount

        if released:
            logger.debug(f"Released {released} remote links owned by user {owner_id}")
        return released

    @staticmethod
    def _serialize(value):
        if isinstance(value, datetime):
            return to_timestamp(value)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, (TaskStatus, TaskPriority)):
            return value.value
        return value
