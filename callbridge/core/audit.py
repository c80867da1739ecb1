"""
Audit persistence layer.

Stores call attempts, control actions and recording lookups in SQLite as a
write-behind audit trail, and holds the device -> station map used by the
orchestrator. Writes are fire-and-forget: callers submit to AuditQueue and
never wait for, or fail because of, the database.
"""

import asyncio
import functools
import os
import sqlite3
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from callbridge.core.models import ActionLogEntry, CallLogEntry, RecordingRecord
from callbridge.logging_config import get_logger
from callbridge.utils.masking import mask_ucid

logger = get_logger(__name__)

BY_IP_PLACEHOLDER = "(by-ip)"


class AuditStore:
    """SQLite-based audit storage."""

    def __init__(
        self,
        db_path: str,
        call_table: str,
        action_table: str,
        recording_table: str,
        device_map_table: str,
        log=None,
    ):
        self._db_path = db_path
        self._call_table = call_table
        self._action_table = action_table
        self._recording_table = recording_table
        self._device_map_table = device_map_table
        self._log = log or logger
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Create the audit tables if they do not exist yet."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            Path(db_dir).mkdir(parents=True, exist_ok=True)

        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {self._call_table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ucid TEXT NOT NULL,
                ticket_number TEXT,
                client_phone TEXT,
                device_ip TEXT,
                client_id TEXT NOT NULL,
                interaction_id TEXT NOT NULL,
                agent_user TEXT,
                log_date TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{self._call_table}_ticket ON {self._call_table}(ticket_number)",
            f"""
            CREATE TABLE IF NOT EXISTS {self._action_table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                device_ip TEXT,
                interaction_id TEXT NOT NULL,
                success INTEGER NOT NULL,
                agent_user TEXT,
                log_date TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._recording_table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ucid TEXT,
                inum TEXT NOT NULL,
                started_at TEXT,
                duration_sec INTEGER,
                agents TEXT,
                other_parties TEXT,
                services TEXT,
                skills TEXT,
                playback_url TEXT,
                log_date TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._device_map_table} (
                device_ip TEXT PRIMARY KEY,
                station TEXT NOT NULL
            )
            """,
        ]
        with self._lock:
            conn = sqlite3.connect(self._db_path)
            try:
                cursor = conn.cursor()
                for sql in statements:
                    cursor.execute(sql)
                conn.commit()
            finally:
                conn.close()
        self._log.info("Audit database initialized", db_path=self._db_path)

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    def _execute_sync(self, sql: str, params: tuple) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(sql, params)
                conn.commit()
            finally:
                conn.close()

    async def insert_call(self, entry: CallLogEntry) -> bool:
        """
        Insert a completed call attempt.

        The table requires ucid, interaction id and client id; an incomplete
        attempt is skipped with a warning rather than written with blanks.

        Returns:
            True if a row was written, False if skipped
        """
        if not entry.is_complete():
            self._log.warning(
                "Skipping call log insert: missing required ids",
                ucid=bool(entry.ucid),
                interaction_id=bool(entry.interaction_id),
                client_id=bool(entry.client_id),
            )
            return False
        sql = f"""
            INSERT INTO {self._call_table}
                (ucid, ticket_number, client_phone, device_ip, client_id, interaction_id, agent_user, log_date)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            entry.ucid,
            entry.ticket_number or '',
            entry.client_phone or '',
            entry.device_ip or '',
            entry.client_id,
            entry.interaction_id,
            entry.agent_user or None,
            entry.created_at.isoformat(sep=' ', timespec='seconds'),
        )
        await self._run(functools.partial(self._execute_sync, sql, params))
        self._log.info("Call log insert OK", ucid=mask_ucid(entry.ucid))
        return True

    async def insert_action(self, entry: ActionLogEntry) -> bool:
        """Insert a control action row; a missing interaction id is stored as a placeholder."""
        sql = f"""
            INSERT INTO {self._action_table}
                (action, device_ip, interaction_id, success, agent_user, log_date)
            VALUES (?, ?, ?, ?, ?, ?)
        """
        params = (
            entry.action or '',
            entry.device_ip or '',
            entry.interaction_id or BY_IP_PLACEHOLDER,
            1 if entry.success else 0,
            entry.agent_user or None,
            entry.created_at.isoformat(sep=' ', timespec='seconds'),
        )
        await self._run(functools.partial(self._execute_sync, sql, params))
        self._log.info("Action log insert OK", action=entry.action, success=entry.success)
        return True

    async def insert_recording(self, record: RecordingRecord, ucid: Optional[str] = None) -> bool:
        """Insert one archive lookup row. Records without an inum are never written."""
        if not record.inum:
            self._log.warning("Skipping recording log insert: missing inum")
            return False
        sql = f"""
            INSERT INTO {self._recording_table}
                (ucid, inum, started_at, duration_sec, agents, other_parties, services, skills, playback_url)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            ucid or record.ucid,
            record.inum,
            record.started_at,
            record.duration_sec,
            record.agents,
            record.other_parties,
            record.services,
            record.skills,
            record.playback_url,
        )
        await self._run(functools.partial(self._execute_sync, sql, params))
        self._log.info("Recording log insert OK", inum=record.inum, ucid=mask_ucid(ucid or record.ucid))
        return True

    async def station_for_device(self, device_ip: str) -> Optional[str]:
        def _get_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    row = conn.execute(
                        f"SELECT station FROM {self._device_map_table} WHERE device_ip = ?",
                        (device_ip,),
                    ).fetchone()
                    return row["station"] if row else None
                finally:
                    conn.close()

        return await self._run(_get_sync)

    async def set_station(self, device_ip: str, station: str) -> None:
        sql = f"INSERT OR REPLACE INTO {self._device_map_table} (device_ip, station) VALUES (?, ?)"
        await self._run(functools.partial(self._execute_sync, sql, (device_ip, station)))

    async def calls_by_ticket(self, ticket_number: str) -> List[Dict[str, Any]]:
        """Call attempts for a CRM ticket, newest first."""
        def _list_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    rows = conn.execute(
                        f"""
                        SELECT ticket_number, ucid, agent_user, log_date
                        FROM {self._call_table}
                        WHERE ticket_number = ?
                        ORDER BY id DESC
                        """,
                        (ticket_number,),
                    ).fetchall()
                    return [dict(row) for row in rows]
                finally:
                    conn.close()

        return await self._run(_list_sync)


class StationDirectory:
    """Resolves the AES station for a device. Lookup failures resolve to None."""

    def __init__(self, store: AuditStore, log=None):
        self._store = store
        self._log = log or logger

    async def lookup(self, device_ip: str) -> Optional[str]:
        try:
            return await self._store.station_for_device(device_ip)
        except sqlite3.Error as e:
            self._log.error("Station lookup failed", device_ip=device_ip, error=str(e))
            return None


class AuditQueue:
    """
    Fire-and-forget audit writer.

    submit_*() enqueue without awaiting any I/O; a single worker task drains the
    queue. Failures are logged and counted here and never reach the caller.
    """

    def __init__(self, store: AuditStore, maxsize: int = 1000, log=None):
        self._store = store
        self._log = log or logger
        self._queue: "asyncio.Queue[tuple]" = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self.attempted = 0
        self.failed = 0
        self.dropped = 0

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Flush pending writes and stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def drain(self) -> None:
        """Wait until every submitted write has been attempted."""
        await self._queue.join()

    def _submit(self, name: str, job: Callable[[], Awaitable[Any]]) -> None:
        self.start()
        try:
            self._queue.put_nowait((name, job))
        except asyncio.QueueFull:
            self.dropped += 1
            self._log.error("Audit queue full; dropping write", kind=name)

    def submit_call(self, entry: CallLogEntry) -> None:
        self._submit("call", functools.partial(self._store.insert_call, entry))

    def submit_action(self, entry: ActionLogEntry) -> None:
        self._submit("action", functools.partial(self._store.insert_action, entry))

    def submit_recording(self, record: RecordingRecord, ucid: Optional[str] = None) -> None:
        self._submit("recording", functools.partial(self._store.insert_recording, record, ucid))

    async def _run(self) -> None:
        while True:
            name, job = await self._queue.get()
            try:
                self.attempted += 1
                await job()
            except Exception as e:
                self.failed += 1
                self._log.error("Audit write failed", kind=name, error=str(e))
            finally:
                self._queue.task_done()
