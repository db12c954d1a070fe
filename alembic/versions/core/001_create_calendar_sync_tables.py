"""create_calendar_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_accounts (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL DEFAULT 'google',
            provider_email TEXT,
            is_primary BOOLEAN NOT NULL DEFAULT false,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_accounts_user
        ON calendar_accounts (user_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS oauth_tokens (
            account_id TEXT PRIMARY KEY
                REFERENCES calendar_accounts (id) ON DELETE CASCADE,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            token_refresh_count INTEGER NOT NULL DEFAULT 0,
            last_token_refresh TIMESTAMPTZ,
            error_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            last_error_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_oauth_tokens_expires_at
        ON oauth_tokens (expires_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_mappings (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL
                REFERENCES calendar_accounts (id) ON DELETE CASCADE,
            provider_calendar_id TEXT NOT NULL,
            calendar_name TEXT,
            is_primary BOOLEAN NOT NULL DEFAULT false,
            sync_enabled BOOLEAN NOT NULL DEFAULT true,
            last_sync_token TEXT,
            last_sync_at TIMESTAMPTZ,
            conflict_resolution TEXT NOT NULL DEFAULT 'manual'
                CHECK (conflict_resolution IN ('local_wins', 'remote_wins', 'manual')),
            study_block_detection BOOLEAN NOT NULL DEFAULT true,
            auto_create_tasks BOOLEAN NOT NULL DEFAULT false,
            default_subject_id TEXT,
            default_duration_minutes INTEGER NOT NULL DEFAULT 60
                CHECK (default_duration_minutes > 0),
            title_rules JSONB NOT NULL DEFAULT '[]',
            color_rules JSONB NOT NULL DEFAULT '[]',
            last_error TEXT,
            error_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (account_id, provider_calendar_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_mappings_user
        ON calendar_mappings (user_id)
        WHERE sync_enabled
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            mapping_id TEXT NOT NULL
                REFERENCES calendar_mappings (id) ON DELETE CASCADE,
            provider_event_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            description TEXT,
            location TEXT,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            is_all_day BOOLEAN NOT NULL DEFAULT false,
            timezone TEXT,
            status TEXT NOT NULL DEFAULT 'confirmed'
                CHECK (status IN ('tentative', 'confirmed', 'cancelled')),
            color_id TEXT,
            html_link TEXT,
            ical_uid TEXT,
            etag TEXT,
            sequence INTEGER NOT NULL DEFAULT 0,
            is_recurring BOOLEAN NOT NULL DEFAULT false,
            recurrence_rule TEXT,
            organizer_email TEXT,
            attendees JSONB NOT NULL DEFAULT '[]',
            use_default_reminders BOOLEAN NOT NULL DEFAULT true,
            reminders JSONB NOT NULL DEFAULT '[]',
            provider_updated_at TIMESTAMPTZ,
            subject_id TEXT,
            is_study_block BOOLEAN NOT NULL DEFAULT false,
            study_duration_minutes INTEGER,
            sync_hash TEXT,
            locally_modified BOOLEAN NOT NULL DEFAULT false,
            conflict_detected BOOLEAN NOT NULL DEFAULT false,
            conflict_data JSONB,
            last_synced_at TIMESTAMPTZ,
            deleted_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_events_mapping_provider_event
        ON calendar_events (mapping_id, provider_event_id)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_user_active
        ON calendar_events (user_id, start_time)
        WHERE deleted_at IS NULL
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_conflicts
        ON calendar_events (user_id)
        WHERE conflict_detected AND deleted_at IS NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_logs (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            mapping_id TEXT NOT NULL
                REFERENCES calendar_mappings (id) ON DELETE CASCADE,
            sync_type TEXT NOT NULL
                CHECK (sync_type IN ('full', 'incremental', 'single_event', 'webhook')),
            status TEXT NOT NULL
                CHECK (status IN ('success', 'partial', 'failed', 'skipped')),
            trigger TEXT,
            events_processed INTEGER NOT NULL DEFAULT 0,
            events_created INTEGER NOT NULL DEFAULT 0,
            events_updated INTEGER NOT NULL DEFAULT 0,
            events_deleted INTEGER NOT NULL DEFAULT 0,
            conflicts_detected INTEGER NOT NULL DEFAULT 0,
            errors_encountered INTEGER NOT NULL DEFAULT 0,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            sync_token TEXT,
            next_sync_token TEXT,
            error_message TEXT,
            started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_sync_logs_user_started
        ON calendar_sync_logs (user_id, started_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_logs")
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS calendar_mappings")
    op.execute("DROP TABLE IF EXISTS oauth_tokens")
    op.execute("DROP TABLE IF EXISTS calendar_accounts")
