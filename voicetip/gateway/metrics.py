"""Event log in SQLite for pipeline observability.

Every job lifecycle step, completed synthesis and HTTP request becomes one
row in `metrics_event`. Writes are buffered and flushed in batches by a
background task, so `log_event` never touches the disk.

Usage:
    from voicetip.gateway.metrics import log_event

    await log_event("synthesis_complete", request_id=42, worker_latency_ms=1500, attempt=1)

Query examples:
    # Average synthesis latency, last 7 days
    SELECT AVG(worker_latency_ms) FROM metrics_event
    WHERE event_type = 'synthesis_complete'
      AND timestamp > datetime('now', '-7 days');

    # Requests that needed more than one attempt
    SELECT request_id, MAX(attempt) AS attempts FROM metrics_event
    WHERE event_type IN ('job_started', 'job_dead')
    GROUP BY request_id HAVING attempts > 1;
"""

import asyncio
import datetime as dt
import json
import sqlite3
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

_db_path: Path | None = None
_write_queue: asyncio.Queue[dict[str, Any]] | None = None
_writer_task: asyncio.Task[None] | None = None

FLUSH_INTERVAL_S = 5.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS metrics_event (
    id INTEGER PRIMARY KEY,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    event_type TEXT NOT NULL,

    -- Job fields
    job_id TEXT,
    request_id INTEGER,
    creator_id INTEGER,
    requester_id INTEGER,
    worker_id TEXT,
    attempt INTEGER,
    queue_wait_ms INTEGER,
    worker_latency_ms INTEGER,
    audio_bytes INTEGER,

    -- HTTP fields
    endpoint TEXT,
    method TEXT,
    status_code INTEGER,

    data JSON
);

CREATE INDEX IF NOT EXISTS idx_metrics_timestamp ON metrics_event(timestamp);
CREATE INDEX IF NOT EXISTS idx_metrics_event_type ON metrics_event(event_type);
CREATE INDEX IF NOT EXISTS idx_metrics_request ON metrics_event(request_id) WHERE request_id IS NOT NULL;
"""

COLUMNS = (
    "timestamp",
    "event_type",
    "job_id",
    "request_id",
    "creator_id",
    "requester_id",
    "worker_id",
    "attempt",
    "queue_wait_ms",
    "worker_latency_ms",
    "audio_bytes",
    "endpoint",
    "method",
    "status_code",
    "data",
)
_INSERT = f"INSERT INTO metrics_event ({', '.join(COLUMNS)}) VALUES ({', '.join('?' * len(COLUMNS))})"


def init_metrics_db(db_path: Path | str) -> None:
    """Create the event table. Call once on startup, before `start_metrics_writer`."""
    global _db_path
    _db_path = Path(db_path)
    _db_path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(_db_path) as conn:
        conn.executescript(SCHEMA)
        conn.execute("PRAGMA journal_mode=WAL")


async def start_metrics_writer() -> None:
    global _write_queue, _writer_task
    _write_queue = asyncio.Queue()
    _writer_task = asyncio.create_task(_writer_loop(_write_queue))


async def stop_metrics_writer() -> None:
    """Stop the writer and flush whatever is still buffered."""
    global _writer_task, _write_queue
    if _writer_task is not None:
        _writer_task.cancel()
        try:
            await _writer_task
        except asyncio.CancelledError:
            pass
        _writer_task = None

    if _write_queue is not None:
        _write_batch(_drain(_write_queue))
    _write_queue = None


def _drain(queue: asyncio.Queue[dict[str, Any]]) -> list[dict[str, Any]]:
    events = []
    while True:
        try:
            events.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            return events


async def _writer_loop(queue: asyncio.Queue[dict[str, Any]]) -> None:
    batch: list[dict[str, Any]] = []
    while True:
        try:
            try:
                batch.append(await asyncio.wait_for(queue.get(), timeout=FLUSH_INTERVAL_S))
                batch.extend(_drain(queue))
            except asyncio.TimeoutError:
                pass
            _write_batch(batch)
            batch = []
        except asyncio.CancelledError:
            _write_batch(batch)
            raise
        except Exception as e:
            logger.warning(f"Dropping {len(batch)} metrics events: {e}")
            batch = []


def _write_batch(events: list[dict[str, Any]]) -> None:
    if not events or _db_path is None:
        return

    rows = []
    for event in events:
        row = [event.get(column) for column in COLUMNS]
        row[-1] = json.dumps(event["data"], default=str) if event.get("data") else None
        rows.append(row)

    with sqlite3.connect(_db_path) as conn:
        conn.executemany(_INSERT, rows)


async def log_event(event_type: str, **fields: Any) -> None:
    """Buffer one event. No-op until the writer is started.

    Args:
        event_type: e.g. 'job_started', 'synthesis_complete', 'http_request'
        **fields: values for the schema columns; anything else is folded into `data`
    """
    if _write_queue is None:
        return

    data = dict(fields.pop("data", None) or {})
    event: dict[str, Any] = {"timestamp": datetime.now(tz=dt.UTC).isoformat(), "event_type": event_type}
    for key, value in fields.items():
        if value is None:
            continue
        if key in COLUMNS:
            event[key] = value
        else:
            data[key] = value
    if data:
        event["data"] = data
    await _write_queue.put(event)


async def log_error(message: str, **context: Any) -> None:
    """Record an error event, with the traceback when called from an `except` block."""
    tb = traceback.format_exc()
    await log_event(
        "error",
        data={"message": message, "traceback": tb if tb != "NoneType: None\n" else None, **context},
    )
