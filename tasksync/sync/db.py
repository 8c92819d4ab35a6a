import sqlite3
from pathlib import Path


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
          key TEXT PRIMARY KEY,
          value TEXT,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    # seq is the FIFO position; a reissued operation keeps the seq of the one it replaces.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_operations (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          id TEXT UNIQUE NOT NULL,
          kind TEXT NOT NULL,
          table_name TEXT NOT NULL,
          record_id TEXT,
          payload_json TEXT,
          base_json TEXT,
          enqueued_at TEXT NOT NULL,
          attempts INTEGER DEFAULT 0,
          last_error TEXT,
          next_retry_at TEXT,
          status TEXT DEFAULT 'pending'
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS conflicts (
          id TEXT PRIMARY KEY,
          table_name TEXT NOT NULL,
          record_id TEXT NOT NULL,
          op_id TEXT,
          local_json TEXT,
          remote_json TEXT,
          fields_json TEXT,
          detected_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          UNIQUE(table_name, record_id)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_type TEXT,
          status TEXT,
          started_at TEXT,
          finished_at TEXT,
          summary_json TEXT
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_pending_table_status ON pending_operations(table_name, status, seq)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_pending_record ON pending_operations(table_name, record_id)")

    conn.commit()
    conn.close()
