#!/usr/bin/env python3
"""Create the webhook ingestion tables for Engagement Webhooks."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. webhook_events
CREATE TABLE IF NOT EXISTS webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    gateway VARCHAR(50) NOT NULL,
    event_type VARCHAR(100) NOT NULL,
    event_key VARCHAR(255),
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'dead')),
    retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    max_retries INTEGER NOT NULL DEFAULT 3 CHECK (max_retries >= 0),
    organization_id UUID,
    error_message TEXT,
    result JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    processed_at TIMESTAMPTZ,
    CONSTRAINT webhook_events_retry_budget CHECK (retry_count <= max_retries)
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_webhook_events_gateway_event_key
    ON webhook_events(gateway, event_key) WHERE event_key IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_webhook_events_status ON webhook_events(status);
CREATE INDEX IF NOT EXISTS idx_webhook_events_org_id ON webhook_events(organization_id);
CREATE INDEX IF NOT EXISTS idx_webhook_events_created_at ON webhook_events(created_at);
CREATE INDEX IF NOT EXISTS idx_webhook_events_retry_ready
    ON webhook_events(created_at) WHERE status = 'failed';

-- 2. channel_configs
CREATE TABLE IF NOT EXISTS channel_configs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id UUID NOT NULL,
    channel VARCHAR(30) NOT NULL DEFAULT 'whatsapp',
    channel_identifier VARCHAR(255) NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(channel, channel_identifier)
);
CREATE INDEX IF NOT EXISTS idx_channel_configs_org_id ON channel_configs(organization_id);
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    cur.execute(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND table_name IN ('webhook_events', 'channel_configs') "
        "ORDER BY table_name;"
    )
    tables = cur.fetchall()
    print(f"\nTables present: {[t[0] for t in tables]}")

    cur.execute("SELECT status, COUNT(*) FROM webhook_events GROUP BY status ORDER BY status;")
    print(f"Webhook events by status: {cur.fetchall()}")

    cur.close()
    conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()
