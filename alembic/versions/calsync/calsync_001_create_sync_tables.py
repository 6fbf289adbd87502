"""create_sync_tables

Revision ID: calsync_001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calsync_001"
down_revision = None
branch_labels = ("calsync",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id TEXT NOT NULL,
            title TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'MEETING',
            start_at TIMESTAMPTZ NOT NULL,
            end_at TIMESTAMPTZ NOT NULL,
            source TEXT NOT NULL DEFAULT 'LOCAL',
            external_id TEXT,
            project_id TEXT,
            location TEXT,
            attendee_ids TEXT[],
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_events_type_check CHECK (
                type IN (
                    'MEETING', 'TASK', 'DEADLINE', 'DELIVERY',
                    'TODO', 'PT', 'DELIVERABLE', 'R_TRAINING'
                )
            ),
            CONSTRAINT calendar_events_source_check CHECK (source IN ('LOCAL', 'REMOTE')),
            CONSTRAINT calendar_events_remote_external_id_check CHECK (
                source <> 'REMOTE' OR external_id IS NOT NULL
            )
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ix_calendar_events_owner_external_id
        ON calendar_events (owner_id, external_id)
        WHERE external_id IS NOT NULL
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_events_push_candidates
        ON calendar_events (owner_id, start_at)
        WHERE source = 'LOCAL' AND external_id IS NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_tokens (
            owner_id TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            token_type TEXT NOT NULL DEFAULT 'Bearer',
            expires_at TIMESTAMPTZ NOT NULL,
            scope TEXT,
            calendar_id TEXT NOT NULL DEFAULT 'primary',
            connected_email TEXT,
            sync_status TEXT NOT NULL DEFAULT 'CONNECTED',
            sync_error TEXT,
            last_sync_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_tokens_sync_status_check CHECK (
                sync_status IN ('CONNECTED', 'SYNCING', 'ERROR')
            )
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_cursors (
            owner_id TEXT PRIMARY KEY,
            sync_token TEXT,
            page_token TEXT,
            full_sync_completed BOOLEAN NOT NULL DEFAULT false,
            last_sync_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_cursors")
    op.execute("DROP TABLE IF EXISTS calendar_tokens")
    op.execute("DROP INDEX IF EXISTS ix_calendar_events_push_candidates")
    op.execute("DROP INDEX IF EXISTS ix_calendar_events_owner_external_id")
    op.execute("DROP TABLE IF EXISTS calendar_events")
