#!/usr/bin/env python3
"""Create the ESP integration tables and the stats write functions."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. accounts (owned by the platform; created here for local setups)
CREATE TABLE IF NOT EXISTS accounts (
    key VARCHAR(100) PRIMARY KEY,
    dealer VARCHAR(255) NOT NULL,
    esp_provider VARCHAR(50),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. esp_oauth_connections
CREATE TABLE IF NOT EXISTS esp_oauth_connections (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    account_key VARCHAR(100) NOT NULL,
    provider VARCHAR(50) NOT NULL,
    location_id VARCHAR(255) NOT NULL,
    location_name VARCHAR(255),
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    token_expires_at TIMESTAMPTZ,
    scopes TEXT NOT NULL DEFAULT '[]',
    installed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(account_key, provider)
);
CREATE INDEX IF NOT EXISTS idx_esp_oauth_connections_location ON esp_oauth_connections(provider, location_id);

-- 3. esp_api_key_connections
CREATE TABLE IF NOT EXISTS esp_api_key_connections (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    account_key VARCHAR(100) NOT NULL,
    provider VARCHAR(50) NOT NULL,
    api_key TEXT NOT NULL,
    account_id VARCHAR(255) NOT NULL,
    account_name VARCHAR(255),
    metadata TEXT,
    installed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(account_key, provider)
);
CREATE INDEX IF NOT EXISTS idx_esp_api_key_connections_account ON esp_api_key_connections(provider, account_id);

-- 4. campaign_email_stats
CREATE TABLE IF NOT EXISTS campaign_email_stats (
    provider VARCHAR(50) NOT NULL,
    account_id VARCHAR(255) NOT NULL,
    campaign_id VARCHAR(255) NOT NULL,
    delivered_count INTEGER NOT NULL DEFAULT 0,
    opened_count INTEGER NOT NULL DEFAULT 0,
    clicked_count INTEGER NOT NULL DEFAULT 0,
    bounced_count INTEGER NOT NULL DEFAULT 0,
    complained_count INTEGER NOT NULL DEFAULT 0,
    unsubscribed_count INTEGER NOT NULL DEFAULT 0,
    first_delivered_at TIMESTAMPTZ,
    last_event_at TIMESTAMPTZ,
    PRIMARY KEY (provider, account_id, campaign_id)
);

-- 5. esp_webhook_event_ledger
CREATE TABLE IF NOT EXISTS esp_webhook_event_ledger (
    provider VARCHAR(50) NOT NULL,
    event_key VARCHAR(512) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (provider, event_key)
);
CREATE INDEX IF NOT EXISTS idx_esp_webhook_event_ledger_expires ON esp_webhook_event_ledger(expires_at);

-- 6. esp_provider_oauth_credentials (one agency-level credential per provider)
CREATE TABLE IF NOT EXISTS esp_provider_oauth_credentials (
    provider VARCHAR(50) PRIMARY KEY,
    subject_type VARCHAR(50) NOT NULL DEFAULT 'agency',
    subject_id VARCHAR(255),
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    token_expires_at TIMESTAMPTZ,
    scopes TEXT NOT NULL DEFAULT '[]',
    installed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 7. esp_account_provider_links
CREATE TABLE IF NOT EXISTS esp_account_provider_links (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    account_key VARCHAR(100) NOT NULL,
    provider VARCHAR(50) NOT NULL,
    location_id VARCHAR(255) NOT NULL,
    location_name VARCHAR(255),
    metadata TEXT,
    linked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(account_key, provider)
);
CREATE INDEX IF NOT EXISTS idx_esp_account_provider_links_location ON esp_account_provider_links(provider, location_id);
"""

INCREMENT_FUNCTION = """
CREATE OR REPLACE FUNCTION increment_campaign_email_stats(
    p_provider TEXT,
    p_account_id TEXT,
    p_campaign_id TEXT,
    p_column TEXT,
    p_occurred_at TIMESTAMPTZ
) RETURNS VOID
LANGUAGE plpgsql
AS $$
BEGIN
    IF p_column NOT IN (
        'delivered_count', 'opened_count', 'clicked_count',
        'bounced_count', 'complained_count', 'unsubscribed_count'
    ) THEN
        RAISE EXCEPTION 'unknown stats column %', p_column;
    END IF;

    EXECUTE format(
        'INSERT INTO campaign_email_stats AS s
            (provider, account_id, campaign_id, %1$I, first_delivered_at, last_event_at)
         VALUES ($1, $2, $3, 1, CASE WHEN $4 = ''delivered_count'' THEN $5 END, $5)
         ON CONFLICT (provider, account_id, campaign_id) DO UPDATE SET
            %1$I = s.%1$I + 1,
            first_delivered_at = CASE
                WHEN $4 = ''delivered_count''
                    THEN LEAST(COALESCE(s.first_delivered_at, $5), $5)
                ELSE s.first_delivered_at
            END,
            last_event_at = GREATEST(COALESCE(s.last_event_at, $5), $5)',
        p_column
    ) USING p_provider, p_account_id, p_campaign_id, p_column, p_occurred_at;
END;
$$;
"""

BACKFILL_FUNCTION = """
CREATE OR REPLACE FUNCTION backfill_campaign_email_stats(
    p_provider TEXT,
    p_account_id TEXT,
    p_campaign_id TEXT,
    p_delivered_count INTEGER,
    p_opened_count INTEGER,
    p_clicked_count INTEGER,
    p_bounced_count INTEGER,
    p_complained_count INTEGER,
    p_unsubscribed_count INTEGER,
    p_first_delivered_at TIMESTAMPTZ,
    p_last_event_at TIMESTAMPTZ
) RETURNS VOID
LANGUAGE sql
AS $$
    INSERT INTO campaign_email_stats AS s (
        provider, account_id, campaign_id,
        delivered_count, opened_count, clicked_count,
        bounced_count, complained_count, unsubscribed_count,
        first_delivered_at, last_event_at
    )
    VALUES (
        p_provider, p_account_id, p_campaign_id,
        COALESCE(p_delivered_count, 0), COALESCE(p_opened_count, 0), COALESCE(p_clicked_count, 0),
        COALESCE(p_bounced_count, 0), COALESCE(p_complained_count, 0), COALESCE(p_unsubscribed_count, 0),
        p_first_delivered_at, p_last_event_at
    )
    ON CONFLICT (provider, account_id, campaign_id) DO UPDATE SET
        delivered_count = COALESCE(p_delivered_count, s.delivered_count),
        opened_count = COALESCE(p_opened_count, s.opened_count),
        clicked_count = COALESCE(p_clicked_count, s.clicked_count),
        bounced_count = COALESCE(p_bounced_count, s.bounced_count),
        complained_count = COALESCE(p_complained_count, s.complained_count),
        unsubscribed_count = COALESCE(p_unsubscribed_count, s.unsubscribed_count),
        -- LEAST/GREATEST ignore NULL arguments
        first_delivered_at = LEAST(s.first_delivered_at, p_first_delivered_at),
        last_event_at = GREATEST(s.last_event_at, p_last_event_at);
$$;
"""

def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating increment_campaign_email_stats...")
    cur.execute(INCREMENT_FUNCTION)

    print("Creating backfill_campaign_email_stats...")
    cur.execute(BACKFILL_FUNCTION)

    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
