import os
import sqlite3
import threading

# Configuration
DB_FILE = os.getenv("KEEPER_DB_FILE", "keeper_data.db")

# Thread-safe lock for database access
db_lock = threading.Lock()


def get_connection():
    """Returns a connection to the SQLite database with WAL mode for high-frequency writes."""
    conn = sqlite3.connect(DB_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # WAL mode: readers don't block the keeper's writes
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_db():
    """Creates the keeper tables. Uses IF NOT EXISTS, safe to call multiple times."""
    with db_lock:
        conn = get_connection()
        cursor = conn.cursor()

        # Table: Logs (System Events)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT,
                message TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Table: Actions (kick / take / arb_take / settle / withdraw_bonds / swap)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT,
                pool TEXT,
                borrower TEXT,
                tx_hash TEXT,
                status TEXT,
                detail TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        conn.commit()
        conn.close()


# =====================================================================
# CORE FUNCTIONS — Logging & Actions
# =====================================================================

def log_event(level, message):
    """Logs a system event to the database."""
    try:
        with db_lock:
            conn = get_connection()
            cursor = conn.cursor()
            cursor.execute("INSERT INTO logs (level, message) VALUES (?, ?)", (level, message))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        print(f"❌ DB Log Error: {e}")


def record_action(kind, pool, borrower, tx_hash=None, status="confirmed", detail=""):
    """Records one keeper transaction (or a failed attempt)."""
    if isinstance(tx_hash, (bytes, bytearray)):
        tx_hash = "0x" + bytes(tx_hash).hex()
    try:
        with db_lock:
            conn = get_connection()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO actions (kind, pool, borrower, tx_hash, status, detail)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (kind, pool, borrower, tx_hash, status, detail))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        log_event("ERROR", f"Failed to record action: {e}")


def get_action_counts():
    """Confirmed / failed totals per action kind."""
    try:
        with db_lock:
            conn = get_connection()
            cursor = conn.cursor()
            cursor.execute('''
                SELECT kind,
                       COUNT(CASE WHEN status = 'confirmed' THEN 1 END) as confirmed,
                       COUNT(CASE WHEN status = 'failed' THEN 1 END) as failed
                FROM actions
                GROUP BY kind
            ''')
            rows = cursor.fetchall()
            conn.close()
            return {row["kind"]: {"confirmed": row["confirmed"], "failed": row["failed"]} for row in rows}
    except sqlite3.Error:
        return {}
