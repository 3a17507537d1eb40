"""Repository for User persistence."""

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from edu_billing.domain.models.user import Role, User
from edu_billing.infrastructure.persistence.sqlite import connect


class UserRepository:
    """Repository for managing User entities in SQLite."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialize_table()

    def _initialize_table(self) -> None:
        """Create users table if it doesn't exist and migrate schema if needed."""
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'STUDENT',
                    stripe_customer_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Older databases predate billing columns
            cursor = conn.execute("PRAGMA table_info(users)")
            existing_columns = {row[1] for row in cursor.fetchall()}

            if "role" not in existing_columns:
                conn.execute("ALTER TABLE users ADD COLUMN role TEXT NOT NULL DEFAULT 'STUDENT'")

            if "stripe_customer_id" not in existing_columns:
                conn.execute("ALTER TABLE users ADD COLUMN stripe_customer_id TEXT")

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_stripe_customer_id ON users(stripe_customer_id)"
            )
            conn.commit()

    def create(
        self,
        email: str,
        password_hash: str,
        role: Role = Role.STUDENT,
        stripe_customer_id: Optional[str] = None,
    ) -> User:
        """Create a new user."""
        now = datetime.now(timezone.utc).isoformat()
        email_clean = email.strip().lower()
        role = Role(role)

        with connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO users (
                    email, password_hash, role, stripe_customer_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (email_clean, password_hash, role.value, stripe_customer_id, now, now),
            )
            conn.commit()
            user_id = cursor.lastrowid

        return User(
            id=user_id,
            email=email_clean,
            role=role,
            password_hash=password_hash,
            stripe_customer_id=stripe_customer_id,
            created_at=datetime.fromisoformat(now),
            updated_at=datetime.fromisoformat(now),
        )

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_by_email(self, email: str) -> Optional[User]:
        """Get user by email."""
        return self._fetch_one(
            "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
        )

    def get_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        """Get user by Stripe customer ID."""
        return self._fetch_one(
            "SELECT * FROM users WHERE stripe_customer_id = ?", (customer_id,)
        )

    def backfill_stripe_customer_id(self, user_id: int, customer_id: str) -> bool:
        """
        Store the Stripe customer ID if the user doesn't have one yet.

        Returns:
            True if the column was written, False if a value was already set
        """
        now = datetime.now(timezone.utc).isoformat()
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE users
                SET stripe_customer_id = ?, updated_at = ?
                WHERE id = ? AND stripe_customer_id IS NULL
                """,
                (customer_id, now, user_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def _fetch_one(self, query: str, params: tuple) -> Optional[User]:
        with connect(self.db_path) as conn:
            cursor = conn.execute(query, params)
            row = cursor.fetchone()

        if not row:
            return None

        return self._row_to_user(row)

    def _row_to_user(self, row: sqlite3.Row) -> User:
        """Convert database row to User entity."""
        return User(
            id=row["id"],
            email=row["email"],
            role=Role(row["role"]),
            password_hash=row["password_hash"],
            stripe_customer_id=row["stripe_customer_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
