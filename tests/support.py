# --- path/bootstrap (import this before any application module) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

for p in (SRC, ROOT):
    if p.is_dir() and str(p) not in sys.path:
        sys.path.insert(0, str(p))
# --- end path/bootstrap ---

import os
import tempfile

import dao
import metrics


def fresh_db():
    """
    Create a fresh temporary DB file, point POS_DB_PATH at it, and drop this
    thread's cached connection so the next DAO call opens the new file.
    Metrics are reset too, so counters start from zero in every test.
    """
    tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    tmp.close()
    os.environ["POS_DB_PATH"] = tmp.name
    dao.close_request_connection()
    metrics.reset_all()
    return tmp.name


def drop_db(path):
    """Close this thread's connection and delete the DB file and its WAL files."""
    dao.close_request_connection()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except FileNotFoundError:
            pass
