"""Create event queue and access log tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        sa.text(
            """
            CREATE TABLE IF NOT EXISTS events (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              type        TEXT NOT NULL,
              trace_id    TEXT NOT NULL,
              timestamp   DATETIME NOT NULL,
              environment TEXT,
              feature     TEXT,
              route       TEXT,
              status      INTEGER,
              data        TEXT NOT NULL,
              consumed    INTEGER NOT NULL DEFAULT 0,
              consumed_at DATETIME
            )
            """,
        ),
    )
    op.execute(sa.text("CREATE INDEX IF NOT EXISTS idx_events_poll ON events (consumed, id)"))
    op.execute(
        sa.text("CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events (timestamp)"),
    )
    op.execute(
        sa.text(
            """
            CREATE TABLE IF NOT EXISTS access_logs (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              timestamp   DATETIME NOT NULL,
              method      TEXT NOT NULL,
              path        TEXT NOT NULL,
              status      INTEGER NOT NULL,
              duration_ms REAL NOT NULL,
              ip          TEXT,
              feature     TEXT,
              request_id  TEXT,
              input       TEXT,
              error       TEXT,
              user_agent  TEXT
            )
            """,
        ),
    )
    op.execute(
        sa.text(
            "CREATE INDEX IF NOT EXISTS idx_access_logs_timestamp ON access_logs (timestamp)",
        ),
    )
    op.execute(
        sa.text("CREATE INDEX IF NOT EXISTS idx_access_logs_feature ON access_logs (feature)"),
    )


def downgrade() -> None:
    op.drop_table("access_logs")
    op.drop_table("events")
