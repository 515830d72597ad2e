"""
Queue transport for the pipeline stages.

One logical queue per stage (``pipeline:<stage>``), partitioned by firm. The
queue only moves job payloads; the pipeline run row is the source of truth
for progress. Each backend also keeps a bounded history of finished jobs per
queue (the most recent completed and failed entries).

Backends (DOCPIPE_QUEUE_BACKEND):
  memory  in-process, default
  sqlite  DOCPIPE_QUEUE_SQLITE_PATH
  redis   REDIS_DSN, DOCPIPE_QUEUE_KEY_PREFIX
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from docpipe.stages import KEEP_COMPLETED_JOBS, KEEP_FAILED_JOBS

FINISHED_OUTCOMES = ("completed", "failed")
DEFAULT_NAMESPACE = "docpipe"


@dataclass
class QueueMessage:
    message_id: str
    tenant_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _due_iso(available_at: datetime | None) -> str:
    if isinstance(available_at, datetime):
        if available_at.tzinfo is None:
            available_at = available_at.replace(tzinfo=UTC)
        return available_at.astimezone(UTC).isoformat()
    return _utcnow_iso()


def _delay_iso(delay_ms: int) -> str:
    return (datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()


def _is_due(available_at: str | None) -> bool:
    if not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= datetime.now(UTC)


def _history_limit(outcome: str) -> int:
    if outcome == "completed":
        return KEEP_COMPLETED_JOBS
    if outcome == "failed":
        return KEEP_FAILED_JOBS
    raise ValueError(f"unknown finished-job outcome: {outcome}")


def _history_entry(message: QueueMessage, *, outcome: str, error: str | None) -> dict[str, Any]:
    return {
        "message_id": message.message_id,
        "tenant_id": message.tenant_id,
        "queue_name": message.queue_name,
        "payload": message.payload,
        "attempt": message.attempt,
        "outcome": outcome,
        "error": error,
        "finished_at": _utcnow_iso(),
    }


class InMemoryQueueBackend:
    """In-process queue; delayed messages stay in line until they are due."""

    def __init__(self, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._namespace = namespace
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}
        self._history: dict[tuple[str, str], deque[dict[str, Any]]] = {}

    def queue_key(self, *, tenant_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{tenant_id}:queue:{queue_name}"

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        msg = QueueMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            tenant_id=tenant_id,
            queue_name=queue_name,
            payload=dict(payload),
            attempt=int(payload.get("attempt", 0)),
            available_at=_due_iso(available_at),
        )
        with self._lock:
            key = self.queue_key(tenant_id=tenant_id, queue_name=queue_name)
            self._queues.setdefault(key, deque()).append(msg)
        return msg

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.get(self.queue_key(tenant_id=tenant_id, queue_name=queue_name))
            if not queue:
                return None
            for _ in range(len(queue)):
                msg = queue.popleft()
                if _is_due(msg.available_at):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
            return None

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return
            if msg.tenant_id != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            self._inflight.pop(message_id, None)

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            if msg.tenant_id != tenant_id:
                self._inflight[message_id] = msg
                raise RuntimeError("tenant mismatch for queue message")
            msg.attempt += 1
            if requeue:
                msg.available_at = _delay_iso(delay_ms)
                key = self.queue_key(tenant_id=msg.tenant_id, queue_name=msg.queue_name)
                self._queues.setdefault(key, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(self.queue_key(tenant_id=tenant_id, queue_name=queue_name), ()))

    def inflight_count(self, *, queue_name: str) -> int:
        with self._lock:
            return sum(1 for msg in self._inflight.values() if msg.queue_name == queue_name)

    def list_tenants(self, *, queue_name: str) -> list[str]:
        prefix = f"{self._namespace}:"
        suffix = f":queue:{queue_name}"
        with self._lock:
            tenants = {
                key[len(prefix) : -len(suffix)]
                for key, queue in self._queues.items()
                if queue and key.startswith(prefix) and key.endswith(suffix)
            }
        return sorted(t for t in tenants if t)

    def record_finished(
        self,
        *,
        message: QueueMessage,
        outcome: str,
        error: str | None = None,
    ) -> None:
        limit = _history_limit(outcome)
        with self._lock:
            history = self._history.setdefault((message.queue_name, outcome), deque(maxlen=limit))
            history.append(_history_entry(message, outcome=outcome, error=error))

    def list_finished(self, *, queue_name: str, outcome: str, limit: int | None = None) -> list[dict[str, Any]]:
        _history_limit(outcome)
        with self._lock:
            rows = list(reversed(self._history.get((queue_name, outcome), ())))
        return rows if limit is None else rows[:limit]

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()
            self._history.clear()


class SqliteQueueBackend:
    """SQLite-backed queue for single-host persistence across restarts."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_messages (
                    message_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_messages_lookup
                ON queue_messages(tenant_id, queue_name, status, available_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_name TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    entry TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_history_lookup
                ON queue_history(queue_name, outcome, seq)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> QueueMessage:
        return QueueMessage(
            message_id=row["message_id"],
            tenant_id=row["tenant_id"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            attempt=int(row["attempt"]),
            available_at=row["available_at"],
        )

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        now = _utcnow_iso()
        msg = QueueMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            tenant_id=tenant_id,
            queue_name=queue_name,
            payload=dict(payload),
            attempt=int(payload.get("attempt", 0)),
            available_at=_due_iso(available_at),
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO queue_messages(
                        message_id, tenant_id, queue_name, payload, attempt, status, available_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                    """,
                    (
                        msg.message_id,
                        msg.tenant_id,
                        msg.queue_name,
                        json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                        msg.attempt,
                        msg.available_at,
                        now,
                        now,
                    ),
                )
                conn.commit()
        return msg

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT message_id, tenant_id, queue_name, payload, attempt, available_at
                    FROM queue_messages
                    WHERE tenant_id = ? AND queue_name = ? AND status = 'pending' AND available_at <= ?
                    ORDER BY available_at ASC, created_at ASC
                    LIMIT 1
                    """,
                    (tenant_id, queue_name, _utcnow_iso()),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                conn.execute(
                    "UPDATE queue_messages SET status = 'inflight', updated_at = ? WHERE message_id = ?",
                    (_utcnow_iso(), row["message_id"]),
                )
                conn.commit()
                return self._row_to_message(row)

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT tenant_id FROM queue_messages WHERE message_id = ? AND status = 'inflight' LIMIT 1",
                    (message_id,),
                ).fetchone()
                if row is None:
                    return
                if row["tenant_id"] != tenant_id:
                    raise RuntimeError("tenant mismatch for queue message")
                conn.execute("DELETE FROM queue_messages WHERE message_id = ?", (message_id,))
                conn.commit()

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT message_id, tenant_id, queue_name, payload, attempt, available_at
                    FROM queue_messages
                    WHERE message_id = ? AND status = 'inflight'
                    LIMIT 1
                    """,
                    (message_id,),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                if row["tenant_id"] != tenant_id:
                    conn.commit()
                    raise RuntimeError("tenant mismatch for queue message")
                msg = self._row_to_message(row)
                msg.attempt += 1
                if requeue:
                    msg.available_at = _delay_iso(delay_ms)
                    conn.execute(
                        """
                        UPDATE queue_messages
                        SET attempt = ?, status = 'pending', available_at = ?, updated_at = ?
                        WHERE message_id = ?
                        """,
                        (msg.attempt, msg.available_at, _utcnow_iso(), message_id),
                    )
                else:
                    conn.execute("DELETE FROM queue_messages WHERE message_id = ?", (message_id,))
                conn.commit()
                return msg

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT COUNT(1) AS cnt
                    FROM queue_messages
                    WHERE tenant_id = ? AND queue_name = ? AND status = 'pending'
                    """,
                    (tenant_id, queue_name),
                ).fetchone()
        return int(row["cnt"]) if row is not None else 0

    def inflight_count(self, *, queue_name: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(1) AS cnt FROM queue_messages WHERE queue_name = ? AND status = 'inflight'",
                    (queue_name,),
                ).fetchone()
        return int(row["cnt"]) if row is not None else 0

    def list_tenants(self, *, queue_name: str) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT tenant_id
                    FROM queue_messages
                    WHERE queue_name = ? AND status = 'pending'
                    ORDER BY tenant_id ASC
                    """,
                    (queue_name,),
                ).fetchall()
        return [str(row["tenant_id"]) for row in rows if row["tenant_id"]]

    def record_finished(
        self,
        *,
        message: QueueMessage,
        outcome: str,
        error: str | None = None,
    ) -> None:
        limit = _history_limit(outcome)
        entry = json.dumps(_history_entry(message, outcome=outcome, error=error), ensure_ascii=True, sort_keys=True)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO queue_history(queue_name, outcome, entry) VALUES (?, ?, ?)",
                    (message.queue_name, outcome, entry),
                )
                conn.execute(
                    """
                    DELETE FROM queue_history
                    WHERE queue_name = ? AND outcome = ? AND seq NOT IN (
                        SELECT seq FROM queue_history
                        WHERE queue_name = ? AND outcome = ?
                        ORDER BY seq DESC
                        LIMIT ?
                    )
                    """,
                    (message.queue_name, outcome, message.queue_name, outcome, limit),
                )
                conn.commit()

    def list_finished(self, *, queue_name: str, outcome: str, limit: int | None = None) -> list[dict[str, Any]]:
        cap = _history_limit(outcome) if limit is None else limit
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT entry FROM queue_history
                    WHERE queue_name = ? AND outcome = ?
                    ORDER BY seq DESC
                    LIMIT ?
                    """,
                    (queue_name, outcome, cap),
                ).fetchall()
        return [json.loads(row["entry"]) for row in rows]

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM queue_messages")
                conn.execute("DELETE FROM queue_history")
                conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for DOCPIPE_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue: pending list, inflight set and one JSON blob per message."""

    def __init__(self, *, dsn: str, namespace: str = DEFAULT_NAMESPACE, client: Any = None) -> None:
        if client is None and not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or DEFAULT_NAMESPACE
        self._lock = threading.RLock()
        if client is None:
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, *, tenant_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{tenant_id}:queue:{queue_name}:pending"

    def _inflight_key(self, *, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _history_key(self, *, queue_name: str, outcome: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:{outcome}"

    def _msg_key(self, *, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _track_keys(self, *keys: str) -> None:
        for key in keys:
            self._client.sadd(self._registry_key(), key)

    def _load_msg(self, *, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id=message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, *, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id=message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            tenant_id=str(data.get("tenant_id", "")),
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        data = {
            "tenant_id": tenant_id,
            "queue_name": queue_name,
            "payload": dict(payload),
            "attempt": int(payload.get("attempt", 0)),
            "status": "pending",
            "available_at": _due_iso(available_at),
        }
        with self._lock:
            pending_key = self._pending_key(tenant_id=tenant_id, queue_name=queue_name)
            self._save_msg(message_id=message_id, data=data)
            self._client.rpush(pending_key, message_id)
            self._track_keys(pending_key, self._msg_key(message_id=message_id))
        return self._to_message(message_id, data)

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(tenant_id=tenant_id, queue_name=queue_name)
            for _ in range(int(self._client.llen(pending_key))):
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load_msg(message_id=message_id)
                if data is None:
                    continue
                if not _is_due(data.get("available_at")):
                    self._client.rpush(pending_key, message_id)
                    continue
                data["status"] = "inflight"
                self._save_msg(message_id=message_id, data=data)
                self._client.sadd(self._inflight_key(queue_name=queue_name), message_id)
                self._track_keys(self._inflight_key(queue_name=queue_name))
                return self._to_message(message_id, data)
            return None

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            data = self._load_msg(message_id=message_id)
            if data is None or data.get("status") != "inflight":
                return
            if data.get("tenant_id") != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            self._client.srem(self._inflight_key(queue_name=str(data["queue_name"])), message_id)
            self._client.delete(self._msg_key(message_id=message_id))

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            data = self._load_msg(message_id=message_id)
            if data is None or data.get("status") != "inflight":
                return None
            if data.get("tenant_id") != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            queue_name = str(data["queue_name"])
            data["attempt"] = int(data.get("attempt", 0)) + 1
            self._client.srem(self._inflight_key(queue_name=queue_name), message_id)
            if requeue:
                data["status"] = "pending"
                data["available_at"] = _delay_iso(delay_ms)
                self._save_msg(message_id=message_id, data=data)
                self._client.lpush(self._pending_key(tenant_id=tenant_id, queue_name=queue_name), message_id)
            else:
                self._client.delete(self._msg_key(message_id=message_id))
            return self._to_message(message_id, data)

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(tenant_id=tenant_id, queue_name=queue_name)))

    def inflight_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.scard(self._inflight_key(queue_name=queue_name)))

    def list_tenants(self, *, queue_name: str) -> list[str]:
        prefix = f"{self._namespace}:"
        suffix = f":queue:{queue_name}:pending"
        with self._lock:
            tenants: set[str] = set()
            for key in self._client.smembers(self._registry_key()):
                if not isinstance(key, str) or not key.startswith(prefix) or not key.endswith(suffix):
                    continue
                if int(self._client.llen(key)) <= 0:
                    continue
                tenant_id = key[len(prefix) : -len(suffix)]
                if tenant_id:
                    tenants.add(tenant_id)
        return sorted(tenants)

    def record_finished(
        self,
        *,
        message: QueueMessage,
        outcome: str,
        error: str | None = None,
    ) -> None:
        limit = _history_limit(outcome)
        key = self._history_key(queue_name=message.queue_name, outcome=outcome)
        entry = json.dumps(_history_entry(message, outcome=outcome, error=error), sort_keys=True, ensure_ascii=True)
        with self._lock:
            self._client.lpush(key, entry)
            self._client.ltrim(key, 0, limit - 1)
            self._track_keys(key)

    def list_finished(self, *, queue_name: str, outcome: str, limit: int | None = None) -> list[dict[str, Any]]:
        cap = _history_limit(outcome) if limit is None else limit
        with self._lock:
            raw = self._client.lrange(self._history_key(queue_name=queue_name, outcome=outcome), 0, cap - 1)
        return [json.loads(item) for item in raw or []]

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry)


QueueBackend = InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend


def create_queue_from_env(environ: Mapping[str, str] | None = None) -> QueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("DOCPIPE_QUEUE_BACKEND", "memory").strip().lower() or "memory"
    namespace = env.get("DOCPIPE_QUEUE_KEY_PREFIX", DEFAULT_NAMESPACE).strip() or DEFAULT_NAMESPACE
    if backend == "memory":
        return InMemoryQueueBackend(namespace=namespace)
    if backend == "sqlite":
        db_path = env.get("DOCPIPE_QUEUE_SQLITE_PATH", ".runtime/docpipe_queue.sqlite3")
        return SqliteQueueBackend(db_path)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when DOCPIPE_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported queue backend: {backend}")
