"""SQLite schema for the conversation archive.

Timestamps are stored as REAL epoch seconds (UTC); message parts and
sibling lists as JSON text.
"""

from __future__ import annotations

SCHEMA_VERSION = 1

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    native_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    created_at REAL,
    updated_at REAL,
    synced_at REAL,
    message_count INTEGER NOT NULL DEFAULT 0,
    current_node_id TEXT,
    sync_error TEXT,
    sync_retry_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_conversations_provider_updated
    ON conversations(provider, updated_at);

CREATE INDEX IF NOT EXISTS idx_conversations_sync_error
    ON conversations(provider, sync_retry_count) WHERE sync_error IS NOT NULL;

CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    parts TEXT NOT NULL,
    created_at REAL,
    order_index INTEGER NOT NULL DEFAULT 0,
    parent_id TEXT,
    sibling_ids TEXT NOT NULL DEFAULT '[]',
    sibling_index INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (conversation_id, id)
);

CREATE TABLE IF NOT EXISTS attachments (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'file',
    file_id TEXT,
    original_url TEXT NOT NULL DEFAULT '',
    local_path TEXT NOT NULL DEFAULT '',
    filename TEXT NOT NULL DEFAULT '',
    mime_type TEXT NOT NULL DEFAULT 'application/octet-stream',
    size INTEGER NOT NULL DEFAULT 0,
    width INTEGER,
    height INTEGER
);

CREATE INDEX IF NOT EXISTS idx_attachments_conversation
    ON attachments(conversation_id);

CREATE TABLE IF NOT EXISTS provider_sync_metadata (
    provider TEXT PRIMARY KEY,
    last_completed_offset INTEGER NOT NULL DEFAULT 0,
    is_full_sync_complete INTEGER NOT NULL DEFAULT 0,
    last_sync_page_size INTEGER
);

CREATE TABLE IF NOT EXISTS provider_state (
    provider TEXT PRIMARY KEY,
    is_online INTEGER NOT NULL DEFAULT 0,
    last_sync_at REAL,
    status TEXT NOT NULL DEFAULT 'disconnected',
    error_message TEXT
);
"""

__all__ = ["SCHEMA_VERSION", "SCHEMA_DDL"]
