"""
Database operations for SynapScript.

Handles automation definitions, execution history and API tokens.
"""

import os
import sqlite3
import json
import time
import uuid
import logging
from pathlib import Path
from datetime import datetime
from typing import Dict, List, Any, Optional
from contextlib import contextmanager

from synapscript.models import Automation


logger = logging.getLogger("synapscript.db")

# Default database path
DEFAULT_DB_PATH = Path(os.getenv('SYNAPSCRIPT_DB_PATH', 'data/synapscript.db'))

JSON_FIELDS = ('trigger', 'actions', 'generated_code')


@contextmanager
def get_db_connection(db_path: Path = None):
    """
    Context manager for database connections.

    Args:
        db_path: Path to the database file

    Yields:
        sqlite3 connection with row factory set to dict
    """
    path = Path(db_path or DEFAULT_DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_database(db_path: Path = None) -> None:
    """
    Initialize the database with required tables.

    Args:
        db_path: Path to the database file
    """
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS automations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                trigger TEXT,
                actions TEXT,
                generated_code TEXT,
                created_at INTEGER,
                updated_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS execution_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                automation_id TEXT,
                run_id TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                output TEXT,
                error TEXT,
                trigger_type TEXT DEFAULT 'manual',
                triggered_by TEXT,
                duration_seconds REAL,
                timestamp TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS api_tokens (
                token TEXT PRIMARY KEY,
                description TEXT,
                created_at INTEGER
            )
        """)

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_execution_logs_automation_id "
            "ON execution_logs(automation_id)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_execution_logs_timestamp "
            "ON execution_logs(timestamp)"
        )

        conn.commit()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _decode_automation(row: sqlite3.Row) -> Dict[str, Any]:
    automation = dict(row)
    for key in JSON_FIELDS:
        value = automation.get(key)
        automation[key] = json.loads(value) if value else None
    if automation['actions'] is None:
        automation['actions'] = []
    return automation


# --- Automation CRUD Operations ---

def get_all_automations(db_path: Path = None) -> List[Dict[str, Any]]:
    """Get all automations, oldest first."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM automations ORDER BY created_at, name")
        return [_decode_automation(row) for row in cursor.fetchall()]


def get_automation(automation_id: str, db_path: Path = None) -> Optional[Dict[str, Any]]:
    """Get a single automation by ID."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM automations WHERE id = ?", (automation_id,))
        row = cursor.fetchone()
        return _decode_automation(row) if row else None


def _insert_automation(cursor: sqlite3.Cursor, automation: Dict[str, Any], now: int) -> str:
    automation_id = automation.get('id') or str(uuid.uuid4())
    cursor.execute("""
        INSERT INTO automations (
            id, name, trigger, actions, generated_code, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        automation_id,
        automation['name'],
        json.dumps(automation.get('trigger')),
        json.dumps(automation.get('actions') or []),
        json.dumps(automation.get('generated_code')),
        now, now
    ))
    return automation_id


def create_automation(automation: Dict[str, Any], db_path: Path = None) -> Dict[str, Any]:
    """Create a new automation. Generates an id if none is given."""
    with get_db_connection(db_path) as conn:
        automation_id = _insert_automation(conn.cursor(), automation, _now_ms())
        conn.commit()

    return get_automation(automation_id, db_path)


def update_automation(automation_id: str, updates: Dict[str, Any], db_path: Path = None) -> Optional[Dict[str, Any]]:
    """Update an automation's fields."""
    allowed_fields = {'name', 'trigger', 'actions', 'generated_code'}

    # Filter to allowed fields
    fields = {k: v for k, v in updates.items() if k in allowed_fields}
    for key in JSON_FIELDS:
        if key in fields:
            fields[key] = json.dumps(fields[key])
    fields['updated_at'] = _now_ms()

    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = list(fields.values())

    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"UPDATE automations SET {set_clause} WHERE id = ?",
            values + [automation_id]
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None

    return get_automation(automation_id, db_path)


def delete_automation(automation_id: str, db_path: Path = None) -> bool:
    """Delete an automation. Its execution history is kept."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
        conn.commit()
        return cursor.rowcount > 0


def count_automations(db_path: Path = None) -> int:
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) as count FROM automations")
        return cursor.fetchone()['count']


def migrate_from_json(json_path: Path, db_path: Path = None) -> int:
    """
    Import automations from a legacy JSON export.

    Only runs when the automations table is empty. Every record is validated
    before anything is written and the import is a single transaction, so a
    bad file leaves the table empty and the file in place. The file is
    removed after a successful import.

    Returns:
        Number of automations imported

    Raises:
        ValueError: if the file is not a list of valid automations
    """
    json_path = Path(json_path)
    if not json_path.exists() or count_automations(db_path) > 0:
        return 0

    automations = json.loads(json_path.read_text(encoding='utf-8'))
    if not isinstance(automations, list):
        raise ValueError(f"{json_path} does not contain a list of automations")
    for index, automation in enumerate(automations):
        if not isinstance(automation, dict):
            raise ValueError(f"Record {index} in {json_path} is not an object")
        try:
            Automation.from_dict(automation)
        except ValueError as e:
            raise ValueError(f"Record {index} in {json_path} is invalid: {e}") from e

    now = _now_ms()
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        for automation in automations:
            _insert_automation(cursor, automation, now)
        conn.commit()

    json_path.unlink()
    logger.info(f"Migrated {len(automations)} automations from {json_path}")
    return len(automations)


# --- Execution History Operations ---

def log_execution(
    automation_id: Optional[str],
    run_id: str,
    status: str,
    output: str = None,
    error: str = None,
    trigger_type: str = 'manual',
    triggered_by: str = None,
    duration_seconds: float = 0,
    timestamp: str = None,
    db_path: Path = None
) -> Dict[str, Any]:
    """Append one execution log entry."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO execution_logs (
                automation_id, run_id, status, output, error,
                trigger_type, triggered_by, duration_seconds, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            automation_id, run_id, status, output, error,
            trigger_type, triggered_by, duration_seconds,
            timestamp or datetime.now().isoformat()
        ))
        conn.commit()

        cursor.execute("SELECT * FROM execution_logs WHERE run_id = ?", (run_id,))
        return dict(cursor.fetchone())


def get_execution_logs(automation_id: str, limit: int = 20, db_path: Path = None) -> List[Dict[str, Any]]:
    """Get recent execution logs for an automation, newest first."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM execution_logs
            WHERE automation_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """, (automation_id, limit))
        return [dict(row) for row in cursor.fetchall()]


def get_execution_log(run_id: str, db_path: Path = None) -> Optional[Dict[str, Any]]:
    """Get a single execution log by run ID."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM execution_logs WHERE run_id = ?", (run_id,))
        row = cursor.fetchone()
        return dict(row) if row else None


# --- API Token Operations ---

def create_api_token(token: str, description: str = None, db_path: Path = None) -> Dict[str, Any]:
    now = _now_ms()
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "INSERT INTO api_tokens (token, description, created_at) VALUES (?, ?, ?)",
            (token, description, now)
        )
        conn.commit()
    return {'token': token, 'description': description, 'created_at': now}


def get_api_token(token: str, db_path: Path = None) -> Optional[Dict[str, Any]]:
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM api_tokens WHERE token = ?", (token,))
        row = cursor.fetchone()
        return dict(row) if row else None


def delete_api_token(token: str, db_path: Path = None) -> bool:
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("DELETE FROM api_tokens WHERE token = ?", (token,))
        conn.commit()
        return cursor.rowcount > 0
