"""Goal and custodial wallet storage for the pledge service.

SQLite-backed CRUD. Status and tier rules live in the state machine; the
store only does compare-and-set writes so concurrent requests cannot both
win the same transition.
"""

import json
import sqlite3
import threading
import time
import uuid

from protocol import GoalStatus, GoalTier, LEDGER_TIERS, TaskStatus


class GoalStore:
    """SQLite-backed storage for goals, wallets, tasks and the refund log."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA foreign_keys=ON")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS goals (
                id TEXT PRIMARY KEY,
                owner_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'PENDING',
                tier TEXT NOT NULL DEFAULT 'UNSET',
                deadline REAL NOT NULL,
                last_completion_attempt_at REAL,
                achievability_score INTEGER,
                ai_summary TEXT,
                completed_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS wallets (
                id TEXT PRIMARY KEY,
                goal_id TEXT NOT NULL REFERENCES goals(id) ON DELETE CASCADE,
                network TEXT NOT NULL,
                address TEXT NOT NULL,
                key_ref TEXT NOT NULL,
                last_balance TEXT,
                last_balance_update REAL,
                refund_address TEXT,
                created_at REAL NOT NULL,
                UNIQUE (goal_id, network)
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                goal_id TEXT NOT NULL REFERENCES goals(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'TODO',
                created_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS refund_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                goal_id TEXT NOT NULL,
                total_refunds INTEGER NOT NULL,
                successful_refunds INTEGER NOT NULL,
                failed_refunds INTEGER NOT NULL,
                results TEXT NOT NULL,
                completed_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_goal_owner ON goals(owner_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_wallet_goal ON wallets(goal_id)")
        self.db.commit()

    # --- Goals ---

    def create_goal(self, owner_id: int, title: str, description: str, deadline: float) -> str:
        """Store a new goal (PENDING, tier UNSET). Returns goal ID."""
        goal_id = uuid.uuid4().hex[:16]
        now = time.time()
        self.db.execute(
            "INSERT INTO goals (id, owner_id, title, description, status, tier, deadline, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (goal_id, owner_id, title, description, GoalStatus.PENDING.value,
             GoalTier.UNSET.value, deadline, now, now),
        )
        self.db.commit()
        return goal_id

    def get_goal(self, goal_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()
        if not row:
            return None
        return dict(row)

    def list_goals(self, owner_id: int) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM goals WHERE owner_id = ? ORDER BY created_at DESC",
            (owner_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def set_status(self, goal_id: str, status: str, expected: str, now: float | None = None) -> bool:
        """Compare-and-set the status. False if it changed underneath us."""
        with self._lock:
            now = time.time() if now is None else now
            completed_at = now if status == GoalStatus.COMPLETED.value else None
            cursor = self.db.execute(
                "UPDATE goals SET status = ?, completed_at = COALESCE(?, completed_at), updated_at = ? "
                "WHERE id = ? AND status = ?",
                (status, completed_at, now, goal_id, expected),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def set_tier(self, goal_id: str, tier: str, status: str, expected_tier: str, expected_status: str) -> bool:
        """Write tier and status together (EASY publishes in the same step)."""
        with self._lock:
            cursor = self.db.execute(
                "UPDATE goals SET tier = ?, status = ?, updated_at = ? WHERE id = ? AND tier = ? AND status = ?",
                (tier, status, time.time(), goal_id, expected_tier, expected_status),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def set_completion_attempt(self, goal_id: str, ts: float) -> bool:
        """Record timestamp of the last completion request (rate limiting)."""
        cursor = self.db.execute(
            "UPDATE goals SET last_completion_attempt_at = ? WHERE id = ?",
            (ts, goal_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def set_evaluation(self, goal_id: str, score: int, summary: str) -> bool:
        cursor = self.db.execute(
            "UPDATE goals SET achievability_score = ?, ai_summary = ?, updated_at = ? WHERE id = ?",
            (score, summary, time.time(), goal_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def delete_goal(self, goal_id: str) -> bool:
        """Hard-delete a goal with its wallets and tasks. Escrow-tier goals are kept."""
        ledger = tuple(t.value for t in LEDGER_TIERS)
        with self._lock:
            cursor = self.db.execute(
                f"DELETE FROM goals WHERE id = ? AND tier IN ({','.join('?' * len(ledger))})",
                (goal_id, *ledger),
            )
            self.db.commit()
            return cursor.rowcount > 0

    # --- Wallets ---

    def add_wallet(self, goal_id: str, network: str, address: str, key_ref: str) -> str:
        """Attach a custodial wallet to a goal. Raises ValueError on a duplicate network."""
        wallet_id = uuid.uuid4().hex[:16]
        try:
            self.db.execute(
                "INSERT INTO wallets (id, goal_id, network, address, key_ref, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (wallet_id, goal_id, network, address, key_ref, time.time()),
            )
        except sqlite3.IntegrityError as e:
            self.db.rollback()
            raise ValueError(f"Goal {goal_id} already has a {network} wallet") from e
        self.db.commit()
        return wallet_id

    def get_wallet(self, wallet_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM wallets WHERE id = ?", (wallet_id,)).fetchone()
        if not row:
            return None
        return dict(row)

    def wallets_for(self, goal_id: str) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM wallets WHERE goal_id = ? ORDER BY created_at, id",
            (goal_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def has_wallet(self, goal_id: str, network: str) -> bool:
        row = self.db.execute(
            "SELECT 1 FROM wallets WHERE goal_id = ? AND network = ?",
            (goal_id, network),
        ).fetchone()
        return row is not None

    def set_refund_address(self, wallet_id: str, address: str | None) -> bool:
        cursor = self.db.execute(
            "UPDATE wallets SET refund_address = ? WHERE id = ?",
            (address, wallet_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def update_balance(self, wallet_id: str, balance: str, ts: float) -> bool:
        """Overwrite the cached balance. Last write wins."""
        cursor = self.db.execute(
            "UPDATE wallets SET last_balance = ?, last_balance_update = ? WHERE id = ?",
            (balance, ts, wallet_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    # --- Tasks ---

    def add_task(self, goal_id: str, title: str, status: str = TaskStatus.TODO.value) -> str:
        task_id = uuid.uuid4().hex[:16]
        self.db.execute(
            "INSERT INTO tasks (id, goal_id, title, status, created_at) VALUES (?, ?, ?, ?, ?)",
            (task_id, goal_id, title, status, time.time()),
        )
        self.db.commit()
        return task_id

    def set_task_status(self, task_id: str, status: str) -> bool:
        cursor = self.db.execute("UPDATE tasks SET status = ? WHERE id = ?", (status, task_id))
        self.db.commit()
        return cursor.rowcount > 0

    def tasks_for(self, goal_id: str) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM tasks WHERE goal_id = ? ORDER BY created_at, id",
            (goal_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    # --- Refund audit log ---

    def log_refund(self, goal_id: str, summary: dict) -> int:
        cursor = self.db.execute(
            "INSERT INTO refund_log (goal_id, total_refunds, successful_refunds, failed_refunds, results, completed_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (goal_id, summary["totalRefunds"], summary["successfulRefunds"],
             summary["failedRefunds"], json.dumps(summary["results"]), time.time()),
        )
        self.db.commit()
        return cursor.lastrowid

    def refund_history(self, goal_id: str) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM refund_log WHERE goal_id = ? ORDER BY id",
            (goal_id,),
        ).fetchall()
        history = []
        for r in rows:
            entry = dict(r)
            entry["results"] = json.loads(entry["results"])
            history.append(entry)
        return history

    def close(self):
        self.db.close()
