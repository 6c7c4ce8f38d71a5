"""
Repository pattern for data access.

Handles database operations and data persistence logic. The module-level
functions are synchronous; ``SQLiteStore`` exposes the same operations as
coroutines for the battle loop, running each call in a worker thread.
"""

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import BattleRecord, EntryType, LedgerEntry, Persona


def _to_utc_iso(ts: datetime) -> str:
    """Normalize a timestamp to a UTC ISO string so text ordering is time ordering."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the tables if they don't exist.

    ``ledger_entry`` is an append-only ledger of priced calls. No UPDATE or
    DELETE operations should ever be performed on it. ``battle`` rows are
    written once, at finalization.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                tier TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cost TEXT NOT NULL,
                entry_type TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '{}'
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_ledger_entry_timestamp "
            "ON ledger_entry (timestamp)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS persona (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                instruction TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS battle (
                id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                status TEXT NOT NULL,
                abort_reason TEXT,
                transcript TEXT NOT NULL,
                turn_count INTEGER NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cost TEXT NOT NULL,
                scores TEXT,
                aggregate_score INTEGER,
                rationale TEXT,
                document_status TEXT,
                verbal_yes_to_price INTEGER,
                winning_rebuttal TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS control_flag (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_ledger_entry(entry: LedgerEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single entry to the ledger.

    Inserting an ``entry_id`` that already exists is a no-op, so a write
    retried after an ambiguous failure can never record the same spend twice.

    Args:
        entry: The ledger entry to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT OR IGNORE INTO ledger_entry
            (entry_id, timestamp, provider, model, tier, input_tokens,
             output_tokens, cost, entry_type, tags)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.entry_id,
            _to_utc_iso(entry.timestamp),
            entry.provider,
            entry.model,
            entry.tier,
            entry.input_tokens,
            entry.output_tokens,
            str(entry.cost),
            entry.entry_type.value,
            json.dumps(entry.tags, sort_keys=True, default=str),
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_ledger_entries_since(
    since: datetime,
    db_path: str = DEFAULT_DB_PATH
) -> List[LedgerEntry]:
    """Fetch ledger entries at or after ``since``, oldest first.

    Args:
        since: Inclusive lower bound on entry timestamp
        db_path: Path to SQLite database file

    Returns:
        List of ledger entries ordered by timestamp
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("""
            SELECT entry_id, timestamp, provider, model, tier, input_tokens,
                   output_tokens, cost, entry_type, tags
            FROM ledger_entry
            WHERE timestamp >= ?
            ORDER BY timestamp ASC, id ASC
        """, (_to_utc_iso(since),))
        entries = []
        for row in cursor.fetchall():
            entries.append(LedgerEntry(
                entry_id=row[0],
                timestamp=datetime.fromisoformat(row[1]),
                provider=row[2],
                model=row[3],
                tier=row[4],
                input_tokens=row[5],
                output_tokens=row[6],
                cost=Decimal(row[7]),
                entry_type=EntryType(row[8]),
                tags=json.loads(row[9]),
            ))
        return entries
    finally:
        conn.close()


def insert_persona(
    persona: Persona,
    db_path: str = DEFAULT_DB_PATH,
    created_at: Optional[datetime] = None
) -> None:
    """Insert or replace a persona row."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT OR REPLACE INTO persona (id, name, instruction, is_active, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            persona.id,
            persona.name,
            persona.instruction,
            1 if persona.is_active else 0,
            _to_utc_iso(created_at or datetime.now(timezone.utc)),
        ))
        conn.commit()
    finally:
        conn.close()


def _row_to_persona(row: Tuple) -> Persona:
    return Persona(id=row[0], name=row[1], instruction=row[2], is_active=bool(row[3]))


def fetch_persona(persona_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[Persona]:
    """Fetch a single persona by id, active or not."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "SELECT id, name, instruction, is_active FROM persona WHERE id = ?",
            (persona_id,)
        )
        row = cursor.fetchone()
        return _row_to_persona(row) if row else None
    finally:
        conn.close()


def fetch_active_personas(
    persona_ids: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
    db_path: str = DEFAULT_DB_PATH
) -> List[Persona]:
    """Fetch active personas, optionally restricted to the given ids.

    Args:
        persona_ids: Optional explicit ids; inactive ones are skipped
        limit: Optional maximum number of personas to return
        db_path: Path to SQLite database file

    Returns:
        Active personas in creation order
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT id, name, instruction, is_active FROM persona WHERE is_active = 1"
        params: List[Any] = []

        if persona_ids:
            placeholders = ", ".join("?" for _ in persona_ids)
            query += f" AND id IN ({placeholders})"
            params.extend(persona_ids)

        query += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = conn.execute(query, params)
        return [_row_to_persona(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def insert_battle(record: BattleRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Write one finalized battle. A second write for the same id fails."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO battle
            (id, persona_id, persona_name, status, abort_reason, transcript,
             turn_count, input_tokens, output_tokens, cost, scores,
             aggregate_score, rationale, document_status, verbal_yes_to_price,
             winning_rebuttal, error,
             started_at, ended_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.id,
            record.persona_id,
            record.persona_name,
            record.status,
            record.abort_reason,
            record.transcript,
            record.turn_count,
            record.input_tokens,
            record.output_tokens,
            str(record.cost),
            json.dumps(record.scores) if record.scores is not None else None,
            record.aggregate_score,
            record.rationale,
            record.document_status,
            int(record.verbal_yes_to_price) if record.verbal_yes_to_price is not None else None,
            record.winning_rebuttal,
            record.error,
            _to_utc_iso(record.started_at),
            _to_utc_iso(record.ended_at),
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_battles(limit: int = 100, db_path: str = DEFAULT_DB_PATH) -> List[Dict[str, Any]]:
    """Fetch recent battle rows as dictionaries (newest first)."""
    conn = get_connection(db_path)
    try:
        conn.row_factory = lambda cursor, row: {
            col[0]: row[i] for i, col in enumerate(cursor.description)
        }
        cursor = conn.execute(
            "SELECT * FROM battle ORDER BY ended_at DESC LIMIT ?", (limit,)
        )
        return cursor.fetchall()
    finally:
        conn.close()


def fetch_flag(name: str, db_path: str = DEFAULT_DB_PATH) -> Optional[str]:
    """Read a control flag value, or None when unset."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("SELECT value FROM control_flag WHERE name = ?", (name,))
        row = cursor.fetchone()
        return row[0] if row else None
    finally:
        conn.close()


def upsert_flag(name: str, value: str, db_path: str = DEFAULT_DB_PATH) -> None:
    """Set a control flag value."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO control_flag (name, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET value = excluded.value,
                                            updated_at = excluded.updated_at
        """, (name, value, _to_utc_iso(datetime.now(timezone.utc))))
        conn.commit()
    finally:
        conn.close()


class SQLiteStore:
    """Async facade over the repository functions.

    Every store call is a suspension point for the calling task; the
    blocking SQLite work runs in a worker thread.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    async def list_active_personas(
        self,
        persona_ids: Optional[Sequence[str]] = None,
        limit: Optional[int] = None
    ) -> List[Persona]:
        return await asyncio.to_thread(
            fetch_active_personas, persona_ids, limit, self.db_path
        )

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        return await asyncio.to_thread(fetch_persona, persona_id, self.db_path)

    async def fetch_ledger_entries_since(self, since: datetime) -> List[LedgerEntry]:
        return await asyncio.to_thread(fetch_ledger_entries_since, since, self.db_path)

    async def append_ledger_entry(self, entry: LedgerEntry) -> None:
        await asyncio.to_thread(insert_ledger_entry, entry, self.db_path)

    async def save_battle(self, record: BattleRecord) -> None:
        await asyncio.to_thread(insert_battle, record, self.db_path)

    async def get_flag(self, name: str) -> Optional[str]:
        return await asyncio.to_thread(fetch_flag, name, self.db_path)

    async def set_flag(self, name: str, value: str) -> None:
        await asyncio.to_thread(upsert_flag, name, value, self.db_path)
