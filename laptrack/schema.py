#!/usr/bin/env python3
"""
Create the lap-time tables in the PostgreSQL database named by DATABASE_URL.

    python -m laptrack.schema
"""
import os
import sys

import psycopg2


TABLES = [
    """
    CREATE TABLE IF NOT EXISTS leagues (
        id SERIAL PRIMARY KEY,
        name VARCHAR(100) NOT NULL,
        join_code VARCHAR(6) UNIQUE NOT NULL,
        created_by VARCHAR(64),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_profiles (
        id VARCHAR(64) PRIMARY KEY,
        display_name VARCHAR(100),
        email VARCHAR(255),
        league_id INTEGER REFERENCES leagues(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tracks (
        id SERIAL PRIMARY KEY,
        track_name VARCHAR(100) UNIQUE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS track_configs (
        id SERIAL PRIMARY KEY,
        track_id INTEGER NOT NULL REFERENCES tracks(id) ON DELETE CASCADE,
        config_name VARCHAR(100) NOT NULL,
        UNIQUE(track_id, config_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cars (
        id SERIAL PRIMARY KEY,
        car_name VARCHAR(100) UNIQUE NOT NULL,
        created_by VARCHAR(64)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS track_times (
        id SERIAL PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        lap_record NUMERIC(10, 3) CHECK (lap_record >= 0 AND lap_record <> 'NaN'),
        user_id VARCHAR(64),
        car_id INTEGER REFERENCES cars(id) ON DELETE SET NULL,
        config_id INTEGER REFERENCES track_configs(id) ON DELETE CASCADE
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_track_times_config ON track_times(config_id, lap_record)",
    "CREATE INDEX IF NOT EXISTS idx_track_times_user ON track_times(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_user_profiles_league ON user_profiles(league_id)",
]


def create_tables(conn):
    """Create the database schema"""
    with conn.cursor() as cur:
        for statement in TABLES + INDEXES:
            cur.execute(statement)
    conn.commit()


def main():
    url = os.environ.get('DATABASE_URL')
    if not url:
        print("DATABASE_URL environment variable is required", file=sys.stderr)
        return 1
    with psycopg2.connect(url) as conn:
        create_tables(conn)
    print("Database schema created successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
