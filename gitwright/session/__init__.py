"""Session management with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from gitwright.config import get_config
from gitwright.logging import get_logger
from gitwright.messages import Message, dump_messages, load_messages

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class Session:
    """A conversation session; the sole owner of its message log."""

    id: str
    name: str
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def append(self, message: Message) -> None:
        """Append a message to the log."""
        self.messages.append(message)
        self.updated_at = _utcnow_iso()

    def replace_messages(self, messages: list[Message]) -> None:
        """Swap in a reconciled log produced from this session's own messages."""
        self.messages = list(messages)
        self.updated_at = _utcnow_iso()

    @property
    def repository(self) -> dict[str, str]:
        return dict(self.metadata.get("repository") or {})

    def set_repository(self, owner: str, repo_name: str, clone_url: str = "") -> None:
        self.metadata["repository"] = {
            "owner": owner,
            "repo_name": repo_name,
            "clone_url": clone_url,
        }

    @property
    def access_token(self) -> str:
        return str(self.metadata.get("access_token") or "")

    def set_access_token(self, token: str | None) -> None:
        self.metadata["access_token"] = token or ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "messages": dump_messages(self.messages),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            messages=load_messages(data.get("messages", [])),
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
            metadata=data.get("metadata", {}),
        )


@dataclass
class ScheduledTask:
    """A task scheduled to re-enter a session later."""

    id: str
    session_id: str
    description: str
    schedule: dict[str, Any]
    next_run_at: str
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "description": self.description,
            "schedule": self.schedule,
            "next_run_at": self.next_run_at,
            "created_at": self.created_at,
        }


_SESSION_COLUMNS = "id, name, messages, created_at, updated_at, metadata"
_TASK_COLUMNS = "id, session_id, description, schedule, next_run_at, created_at"


def _session_from_row(row: Any) -> Session:
    return Session.from_dict({
        "id": row[0],
        "name": row[1],
        "messages": json.loads(row[2]),
        "created_at": row[3],
        "updated_at": row[4],
        "metadata": json.loads(row[5]),
    })


def _task_from_row(row: Any) -> ScheduledTask:
    return ScheduledTask(
        id=row[0],
        session_id=row[1],
        description=row[2],
        schedule=json.loads(row[3]),
        next_run_at=row[4],
        created_at=row[5],
    )


class SessionManager:
    """Manages conversation sessions with SQLite storage."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session manager.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_name_updated_at ON sessions(name, updated_at DESC)"
            )
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_tasks (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    schedule TEXT NOT NULL,
                    next_run_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_next_run ON scheduled_tasks(next_run_at)"
            )
            await self._db.commit()
        return self._db

    async def get_or_create_session(self, name: str = "default") -> Session:
        """Get the latest session with ``name`` or create it."""
        session = await self.load_session_by_name(name)
        if session:
            return session
        return await self.create_session(name=name)

    async def create_session(self, name: str = "default", metadata: dict[str, Any] | None = None) -> Session:
        """Create and persist a new session."""
        session = Session(
            id=str(uuid.uuid4()),
            name=name,
            metadata=metadata or {},
        )
        await self.save_session(session)
        log.info("Created new session", session_id=session.id, name=name)
        return session

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        db = await self._ensure_db()

        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()

        return _session_from_row(row) if row else None

    async def load_session_by_name(self, name: str) -> Session | None:
        """Load the most recently updated session by name."""
        db = await self._ensure_db()

        async with db.execute(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM sessions
            WHERE name = ?
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            (name,),
        ) as cursor:
            row = await cursor.fetchone()

        return _session_from_row(row) if row else None

    async def save_session(self, session: Session) -> None:
        """Persist a session and its full message log."""
        db = await self._ensure_db()

        session.updated_at = _utcnow_iso()

        await db.execute(f"""
            INSERT OR REPLACE INTO sessions ({_SESSION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            session.id,
            session.name,
            json.dumps(dump_messages(session.messages), default=str),
            session.created_at,
            session.updated_at,
            json.dumps(session.metadata, default=str),
        ))
        await db.commit()

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        """List recent sessions, most recently updated first."""
        db = await self._ensure_db()

        async with db.execute(f"""
            SELECT {_SESSION_COLUMNS}
            FROM sessions
            ORDER BY updated_at DESC
            LIMIT ?
        """, (limit,)) as cursor:
            rows = await cursor.fetchall()

        return [_session_from_row(row) for row in rows]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its scheduled tasks.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()

        cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.execute("DELETE FROM scheduled_tasks WHERE session_id = ?", (session_id,))
        await db.commit()

        return cursor.rowcount > 0

    async def create_scheduled_task(
        self,
        session_id: str,
        description: str,
        schedule: dict[str, Any],
        next_run_at: str,
    ) -> ScheduledTask:
        """Persist a new scheduled task."""
        db = await self._ensure_db()
        task = ScheduledTask(
            id=uuid.uuid4().hex[:12],
            session_id=session_id,
            description=description,
            schedule=schedule,
            next_run_at=next_run_at,
        )
        await db.execute(
            f"INSERT INTO scheduled_tasks ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (
                task.id,
                task.session_id,
                task.description,
                json.dumps(task.schedule),
                task.next_run_at,
                task.created_at,
            ),
        )
        await db.commit()
        log.info("Scheduled task created", task_id=task.id, session_id=session_id, next_run_at=next_run_at)
        return task

    async def list_scheduled_tasks(self, session_id: str) -> list[ScheduledTask]:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_TASK_COLUMNS} FROM scheduled_tasks WHERE session_id = ? ORDER BY next_run_at ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_task_from_row(row) for row in rows]

    async def get_due_scheduled_tasks(self, now_iso: str, limit: int = 10) -> list[ScheduledTask]:
        db = await self._ensure_db()
        async with db.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM scheduled_tasks
            WHERE next_run_at <= ?
            ORDER BY next_run_at ASC
            LIMIT ?
            """,
            (now_iso, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_task_from_row(row) for row in rows]

    async def update_scheduled_task_next_run(self, task_id: str, next_run_at: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute(
            "UPDATE scheduled_tasks SET next_run_at = ? WHERE id = ?",
            (next_run_at, task_id),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def delete_scheduled_task(self, task_id: str, session_id: str | None = None) -> bool:
        db = await self._ensure_db()
        if session_id is None:
            cursor = await db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        else:
            cursor = await db.execute(
                "DELETE FROM scheduled_tasks WHERE id = ? AND session_id = ?",
                (task_id, session_id),
            )
        await db.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global session manager
_manager: SessionManager | None = None


def get_session_manager() -> SessionManager:
    """Get the global session manager."""
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager


def set_session_manager(manager: SessionManager) -> None:
    """Set the global session manager."""
    global _manager
    _manager = manager
