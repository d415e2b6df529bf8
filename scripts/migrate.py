#!/usr/bin/env python3
"""Install or remove the credential store schema in Postgres.

Usage:
    python scripts/migrate.py up
    python scripts/migrate.py down --yes

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (overridden by --database-url)
"""
from __future__ import annotations

import argparse
import os
import sys

import psycopg

UP_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        nickname TEXT NOT NULL,
        email TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_nickname_key UNIQUE (nickname),
        CONSTRAINT app_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_id UUID NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT user_role_pkey PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS registration_session (
        id UUID PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        nickname TEXT NOT NULL,
        email TEXT NOT NULL,
        accepted_privacy_policy BOOLEAN NOT NULL,
        code TEXT NOT NULL,
        code_expires TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS registration_session_expires_idx ON registration_session (code_expires)",
    """
    CREATE TABLE IF NOT EXISTS login_session (
        id UUID NOT NULL,
        email TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        code_expires TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_session_expires_idx ON login_session (code_expires)",
    """
    CREATE TABLE IF NOT EXISTS token_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        user_agent TEXT,
        ip_addr INET,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT token_session_refresh_token_hash_key UNIQUE (refresh_token_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_session_user_idx ON token_session (user_id)",
    "CREATE INDEX IF NOT EXISTS token_session_expires_idx ON token_session (expires_at)",
    "INSERT INTO role (name) VALUES ('user'), ('admin') ON CONFLICT (name) DO NOTHING",
)

DOWN_STATEMENTS = (
    "DROP TABLE IF EXISTS token_session",
    "DROP TABLE IF EXISTS login_session",
    "DROP TABLE IF EXISTS registration_session",
    "DROP TABLE IF EXISTS user_role",
    "DROP TABLE IF EXISTS role",
    "DROP TABLE IF EXISTS app_user",
)


def run(dsn: str, direction: str) -> int:
    """Apply every statement for ``direction`` in one transaction."""
    statements = UP_STATEMENTS if direction == "up" else DOWN_STATEMENTS
    with psycopg.connect(dsn) as conn:
        with conn.transaction():
            for statement in statements:
                conn.execute(statement)
    return len(statements)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Manage the passless credential store schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("direction", choices=("up", "down"))
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres DSN (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm dropping all credential tables when migrating down",
    )
    args = parser.parse_args(argv)

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        return 1
    if args.direction == "down" and not args.yes:
        print("Refusing to drop tables without --yes")
        return 1

    try:
        count = run(args.database_url, args.direction)
    except psycopg.Error as exc:
        print(f"Migration {args.direction} failed: {exc}")
        return 1
    print(f"Migration {args.direction} applied ({count} statements)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
