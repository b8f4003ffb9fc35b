"""SQLite schema management (code-first approach)."""

import logging

from choreledger.core import db_client


logger = logging.getLogger(__name__)


# Central list of all collections in the schema, in dependency order
COLLECTIONS = [
    "users",
    "families",
    "family_memberships",
    "invite_codes",
    "tasks",
    "task_submissions",
    "task_approvals",
    "transactions",
    "notifications",
]


_TABLES: dict[str, str] = {
    "users": """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            line_user_id TEXT NOT NULL UNIQUE,
            display_name TEXT NOT NULL,
            picture_url TEXT,
            role TEXT NOT NULL CHECK (role IN ('PARENT', 'CHILD')),
            family_id INTEGER REFERENCES families(id),
            wallet_address TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            last_login_at TEXT,
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
    "families": """
        CREATE TABLE IF NOT EXISTS families (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            invite_code TEXT NOT NULL UNIQUE,
            created_by_id INTEGER NOT NULL REFERENCES users(id),
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
    "family_memberships": """
        CREATE TABLE IF NOT EXISTS family_memberships (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            family_id INTEGER NOT NULL REFERENCES families(id),
            user_id INTEGER NOT NULL REFERENCES users(id),
            role TEXT NOT NULL CHECK (role IN ('PARENT', 'CHILD')),
            status TEXT NOT NULL CHECK (status IN ('PENDING', 'ACTIVE', 'REMOVED')),
            is_admin INTEGER NOT NULL DEFAULT 0,
            invited_by_id INTEGER REFERENCES users(id),
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
    "invite_codes": """
        CREATE TABLE IF NOT EXISTS invite_codes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            family_id INTEGER NOT NULL REFERENCES families(id),
            code TEXT NOT NULL UNIQUE,
            created_by_id INTEGER NOT NULL REFERENCES users(id),
            expires_at TEXT,
            max_uses INTEGER NOT NULL CHECK (max_uses >= 1),
            used_count INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created TEXT NOT NULL,
            updated TEXT NOT NULL,
            CHECK (used_count <= max_uses)
        )
    """,
    "tasks": """
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            family_id INTEGER NOT NULL REFERENCES families(id),
            created_by_id INTEGER NOT NULL REFERENCES users(id),
            assigned_to_id INTEGER REFERENCES users(id),
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            instructions TEXT,
            category TEXT NOT NULL,
            difficulty TEXT NOT NULL,
            reward_amount INTEGER NOT NULL CHECK (reward_amount > 0),
            estimated_time INTEGER CHECK (estimated_time BETWEEN 1 AND 480),
            status TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 1 AND 5),
            due_date TEXT,
            completed_at TEXT,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            recurring_config TEXT,
            recurrence_of_id INTEGER REFERENCES tasks(id),
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
    "task_submissions": """
        CREATE TABLE IF NOT EXISTS task_submissions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id INTEGER NOT NULL REFERENCES tasks(id),
            submitted_by_id INTEGER NOT NULL REFERENCES users(id),
            photo_urls TEXT NOT NULL,
            notes TEXT,
            submitted_at TEXT NOT NULL,
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
    "task_approvals": """
        CREATE TABLE IF NOT EXISTS task_approvals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            submission_id INTEGER NOT NULL REFERENCES task_submissions(id),
            task_id INTEGER NOT NULL REFERENCES tasks(id),
            approved_by_id INTEGER NOT NULL REFERENCES users(id),
            status TEXT NOT NULL CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED', 'NEEDS_REVISION')),
            rating INTEGER CHECK (rating BETWEEN 1 AND 5),
            comments TEXT,
            approved_at TEXT NOT NULL,
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
    "transactions": """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id INTEGER REFERENCES tasks(id) ON DELETE SET NULL,
            submission_id INTEGER REFERENCES task_submissions(id),
            user_id INTEGER NOT NULL REFERENCES users(id),
            family_id INTEGER REFERENCES families(id),
            type TEXT NOT NULL CHECK (type IN ('TASK_REWARD', 'BONUS_PAYMENT', 'ALLOWANCE', 'FAMILY_CONTRIBUTION')),
            amount TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('PENDING', 'CONFIRMED', 'FAILED', 'CANCELLED')),
            tx_hash TEXT,
            block_number INTEGER,
            gas_used TEXT,
            gas_fee TEXT,
            from_address TEXT,
            to_address TEXT,
            failure_reason TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            confirmed_at TEXT,
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
    "notifications": """
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users(id),
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            data TEXT,
            is_read INTEGER NOT NULL DEFAULT 0,
            created TEXT NOT NULL,
            updated TEXT NOT NULL
        )
    """,
}


INDEXES = [
    # A user holds at most one live (pending or active) membership
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_membership_live_user "
    "ON family_memberships (user_id) WHERE status IN ('PENDING', 'ACTIVE')",
    "CREATE INDEX IF NOT EXISTS idx_membership_family ON family_memberships (family_id, status)",
    # At most one active invite per family
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_invite_active_family ON invite_codes (family_id) WHERE is_active = 1",
    "CREATE INDEX IF NOT EXISTS idx_tasks_family ON tasks (family_id, created)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks (assigned_to_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks (status, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_submissions_task ON task_submissions (task_id, submitted_at)",
    "CREATE INDEX IF NOT EXISTS idx_approvals_submission ON task_approvals (submission_id, approved_at)",
    # Anti-double-payment: one reward row per (task, submission)
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_reward_once "
    "ON transactions (task_id, submission_id, type) WHERE type = 'TASK_REWARD'",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions (user_id, created)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_family ON transactions (family_id, created)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, is_read)",
]


def _build_schema_script() -> str:
    statements = [_TABLES[name].strip() for name in COLLECTIONS]
    statements.extend(INDEXES)
    return ";\n".join(statements) + ";"


async def init_db(*, db_path: str | None = None) -> None:
    """Create all tables and indexes if they do not exist.

    Args:
        db_path: Optional override of the configured database path.
    """
    conn = await db_client.get_connection(db_path=db_path)
    await conn.executescript(_build_schema_script())
    logger.info("Database schema initialized", extra={"collections": len(COLLECTIONS)})
