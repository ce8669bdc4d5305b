"""PostgreSQL database service using asyncpg."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

from wykra.config import settings
from wykra.services import logger as log_service


# Connection pool
_pool: asyncpg.Pool | None = None

TASK_COLUMNS = "task_id, status, result, error, started_at, completed_at, created_at, updated_at"
SESSION_COLUMNS = "id, user_id, title, created_at, updated_at"
MESSAGE_COLUMNS = "id, user_id, session_id, role, content, detected_endpoint, client_created_at, created_at"
CHAT_TASK_COLUMNS = "id, user_id, session_id, chat_message_id, task_id, endpoint, status, created_at, updated_at"
TASK_WRITABLE_FIELDS = ("result", "error", "started_at", "completed_at")


def _db_available() -> bool:
    """Check if database is configured and available."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


# --- Tasks ---

async def insert_task(task_id: str, status: str) -> dict[str, Any]:
    """Insert a new task row."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"""
            INSERT INTO tasks (task_id, status)
            VALUES ($1, $2)
            RETURNING {TASK_COLUMNS}
            """,
            task_id,
            status,
        )
        return dict(result)


async def get_task(task_id: str) -> dict[str, Any] | None:
    """Get a task by its id."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"SELECT {TASK_COLUMNS} FROM tasks WHERE task_id = $1",
            task_id,
        )
        return dict(result) if result else None


async def update_task(
    task_id: str,
    status: str,
    allowed_previous: list[str],
    fields: dict[str, Any],
) -> dict[str, Any] | None:
    """Write a new status only if the row is currently in ``allowed_previous``.

    Returns the updated row, or None when no row matched.
    """
    pool = await _get_pool()
    updates = {k: v for k, v in fields.items() if k in TASK_WRITABLE_FIELDS}
    set_parts = ["status = $1"]
    values: list[Any] = [status]
    for key, value in updates.items():
        values.append(value)
        set_parts.append(f"{key} = ${len(values)}")
    values.append(task_id)
    values.append(allowed_previous)

    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"""
            UPDATE tasks
            SET {", ".join(set_parts)}, updated_at = now()
            WHERE task_id = ${len(values) - 1} AND status = ANY(${len(values)}::text[])
            RETURNING {TASK_COLUMNS}
            """,
            *values,
        )
        return dict(result) if result else None


# --- Chat sessions ---

async def create_chat_session(user_id: str, title: str | None = None) -> dict[str, Any]:
    """Create a chat session."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"""
            INSERT INTO chat_sessions (user_id, title)
            VALUES ($1, $2)
            RETURNING {SESSION_COLUMNS}
            """,
            user_id,
            title,
        )
        return dict(result)


async def get_chat_session(session_id: int, user_id: str) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"SELECT {SESSION_COLUMNS} FROM chat_sessions WHERE id = $1 AND user_id = $2",
            session_id,
            user_id,
        )
        return dict(result) if result else None


async def list_chat_sessions(user_id: str) -> list[dict[str, Any]]:
    """Get a user's sessions, most recently updated first."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        results = await conn.fetch(
            f"""
            SELECT {SESSION_COLUMNS}
            FROM chat_sessions
            WHERE user_id = $1
            ORDER BY updated_at DESC, id DESC
            """,
            user_id,
        )
        return [dict(r) for r in results]


async def rename_chat_session(session_id: int, user_id: str, title: str | None) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"""
            UPDATE chat_sessions
            SET title = $1, updated_at = now()
            WHERE id = $2 AND user_id = $3
            RETURNING {SESSION_COLUMNS}
            """,
            title,
            session_id,
            user_id,
        )
        return dict(result) if result else None


async def touch_chat_session(session_id: int) -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute("UPDATE chat_sessions SET updated_at = now() WHERE id = $1", session_id)


async def delete_chat_session(session_id: int, user_id: str) -> bool:
    """Delete a session with its messages.

    Task links keep their row (tasks are retained for history) but lose the
    reference to the deleted messages.
    """
    pool = await _get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            owned = await conn.fetchval(
                "SELECT 1 FROM chat_sessions WHERE id = $1 AND user_id = $2",
                session_id,
                user_id,
            )
            if not owned:
                return False
            await conn.execute(
                """
                UPDATE chat_tasks
                SET chat_message_id = NULL, updated_at = now()
                WHERE chat_message_id IN (
                    SELECT id FROM chat_messages WHERE session_id = $1 AND user_id = $2
                )
                """,
                session_id,
                user_id,
            )
            await conn.execute(
                "DELETE FROM chat_messages WHERE session_id = $1 AND user_id = $2",
                session_id,
                user_id,
            )
            await conn.execute(
                "DELETE FROM chat_sessions WHERE id = $1 AND user_id = $2",
                session_id,
                user_id,
            )
    log_service.log_db_operation("delete", "chat_sessions", "success", details=f"session_id={session_id}")
    return True


# --- Chat messages ---

async def create_chat_message(
    user_id: str,
    session_id: int,
    role: str,
    content: str,
    detected_endpoint: str | None = None,
    client_created_at: datetime | None = None,
) -> dict[str, Any]:
    """Create a chat message."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"""
            INSERT INTO chat_messages (user_id, session_id, role, content, detected_endpoint, client_created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {MESSAGE_COLUMNS}
            """,
            user_id,
            session_id,
            role,
            content,
            detected_endpoint,
            client_created_at,
        )
        return dict(result)


async def get_chat_messages(
    user_id: str,
    session_id: int,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Get a session's messages in chronological order.

    With ``limit`` only the most recent messages are returned.
    """
    pool = await _get_pool()
    async with pool.acquire() as conn:
        if limit:
            results = await conn.fetch(
                f"""
                SELECT * FROM (
                    SELECT {MESSAGE_COLUMNS}
                    FROM chat_messages
                    WHERE user_id = $1 AND session_id = $2
                    ORDER BY created_at DESC, id DESC
                    LIMIT $3
                ) recent
                ORDER BY created_at, id
                """,
                user_id,
                session_id,
                limit,
            )
        else:
            results = await conn.fetch(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM chat_messages
                WHERE user_id = $1 AND session_id = $2
                ORDER BY created_at, id
                """,
                user_id,
                session_id,
            )
        return [dict(r) for r in results]


# --- Chat task links ---

async def create_chat_task(
    user_id: str,
    session_id: int,
    chat_message_id: int | None,
    task_id: str,
    endpoint: str,
    status: str = "pending",
) -> dict[str, Any]:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"""
            INSERT INTO chat_tasks (user_id, session_id, chat_message_id, task_id, endpoint, status)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {CHAT_TASK_COLUMNS}
            """,
            user_id,
            session_id,
            chat_message_id,
            task_id,
            endpoint,
            status,
        )
        return dict(result)


async def get_chat_task(task_id: str) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            f"SELECT {CHAT_TASK_COLUMNS} FROM chat_tasks WHERE task_id = $1",
            task_id,
        )
        return dict(result) if result else None


async def update_chat_task_status(task_id: str, status: str) -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            "UPDATE chat_tasks SET status = $1, updated_at = now() WHERE task_id = $2",
            status,
            task_id,
        )


# --- Search profiles ---

async def insert_search_profile(
    *,
    platform: str,
    task_id: str,
    account: str,
    profile_url: str,
    followers: int | None,
    is_private: bool,
    analysis_summary: str,
    analysis_score: int,
    relevance: int | None,
    raw: dict[str, Any],
) -> dict[str, Any]:
    """Persist one scored profile."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            """
            INSERT INTO search_profiles (
                platform, task_id, account, profile_url, followers, is_private,
                analysis_summary, analysis_score, relevance, raw
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING id, platform, task_id, account, profile_url, created_at
            """,
            platform,
            task_id,
            account,
            profile_url,
            followers,
            is_private,
            analysis_summary,
            analysis_score,
            relevance,
            json.dumps(raw, default=str),
        )
        return dict(result)
