import os
import secrets
import string
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor, execute_values
from psycopg2 import errors as pg_errors
from contextlib import contextmanager

from .laptimes import LapTimeRecord


_POOL: Optional[pg_pool.AbstractConnectionPool] = None

_JOIN_CODE_LEN = 6
_JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Integer environment setting; unset or unparsable values give ``default``."""
    try:
        return int(os.environ[name])
    except (KeyError, ValueError):
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """psycopg2.connect() options shared by the pool and direct connections.

    DB_CONNECT_TIMEOUT (default 10s) and DB_KEEPALIVES (on unless "0"/"false")
    are always sent; DB_KEEPALIVES_IDLE/_INTERVAL/_COUNT only when set.
    """
    keepalives = os.environ.get("DB_KEEPALIVES", "1").lower() not in ("0", "false")
    kwargs: Dict[str, Any] = {
        "connect_timeout": _env_int("DB_CONNECT_TIMEOUT", 10),
        "keepalives": int(keepalives),
    }
    for key in ("keepalives_idle", "keepalives_interval", "keepalives_count"):
        value = _env_int("DB_" + key.upper())
        if value is not None:
            kwargs[key] = value
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Create the process-wide pool from DATABASE_URL; later calls are no-ops.

    Without DATABASE_URL no pool is made and every query connects directly.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if url:
        _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _rollback_quietly(conn) -> None:
    # Cleanup only; must not mask the exception already propagating
    try:
        conn.rollback()
    except psycopg2.Error:
        pass


def _is_alive(conn) -> bool:
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
    except psycopg2.Error:
        return False
    if not getattr(conn, "autocommit", False):
        _rollback_quietly(conn)
    return True


def _checkout():
    """Take a live connection from the pool, replacing one stale connection."""
    for _ in range(2):
        conn = _POOL.getconn()
        if _is_alive(conn):
            return conn
        try:
            _POOL.putconn(conn, close=True)
        except pg_pool.PoolError:
            pass
    raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")


@contextmanager
def _get_conn():
    """Yield a pooled connection when the pool exists, else a direct one.

    Work left uncommitted (or failed) is rolled back before the connection
    goes back to the pool or is closed.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    pooled = _POOL is not None
    conn = _checkout() if pooled else psycopg2.connect(url, **_connect_kwargs())
    try:
        yield conn
    except Exception:
        _rollback_quietly(conn)
        raise
    finally:
        if pooled:
            # status 1 = active, 2 = in transaction, 3 = in error
            if not getattr(conn, "closed", 0) and getattr(conn, "status", 0) in (1, 2, 3):
                _rollback_quietly(conn)
            _POOL.putconn(conn)
        else:
            try:
                conn.close()
            except psycopg2.Error:
                pass


def _is_undefined_table(exc: Exception) -> bool:
    return isinstance(exc, getattr(pg_errors, "UndefinedTable", tuple()))


def record_from_row(row: Dict[str, Any]) -> LapTimeRecord:
    """Flatten one joined ``track_times`` row into a :class:`LapTimeRecord`."""
    lap = row.get("lap_record")
    return LapTimeRecord(
        record_id=int(row["id"]),
        track_name=row.get("track_name"),
        config_name=row.get("config_name"),
        car_name=row.get("car_name"),
        user_id=row.get("user_id"),
        # NUMERIC columns come back as Decimal
        duration_seconds=float(lap) if lap is not None else None,
        created_at=row.get("created_at"),
    )


_LAP_TIME_SELECT = """
    SELECT tt.id, tt.created_at, tt.lap_record, tt.user_id,
           tt.car_id, tt.config_id, tc.track_id,
           c.car_name, tc.config_name, t.track_name
    FROM track_times tt
    LEFT JOIN cars c ON c.id = tt.car_id
    LEFT JOIN track_configs tc ON tc.id = tt.config_id
    LEFT JOIN tracks t ON t.id = tc.track_id
"""


# --- tracks -----------------------------------------------------------------

def list_tracks() -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        try:
            cur.execute("SELECT id, track_name FROM tracks ORDER BY track_name, id")
        except Exception as e:
            if _is_undefined_table(e):
                return []
            raise
        for r in cur.fetchall():
            out.append({"track_id": r["id"], "track_name": r["track_name"]})
    return out


def get_track(track_id: int) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("SELECT id, track_name FROM tracks WHERE id = %s", (track_id,))
        row = cur.fetchone()
        if not row:
            return None
        return {"track_id": row["id"], "track_name": row["track_name"]}


def list_track_configs(track_id: int) -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id, config_name FROM track_configs WHERE track_id = %s ORDER BY id",
            (track_id,),
        )
        return [{"config_id": r["id"], "config_name": r["config_name"]} for r in cur.fetchall()]


def add_track(track_name: str, config_names: Iterable[str]) -> Dict[str, Any]:
    """Insert a track and its configurations in one transaction."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("INSERT INTO tracks (track_name) VALUES (%s) RETURNING id", (track_name,))
        track_id = cur.fetchone()["id"]
        rows = [(track_id, name) for name in config_names]
        if rows:
            execute_values(
                cur,
                "INSERT INTO track_configs (track_id, config_name) VALUES %s",
                rows,
            )
        conn.commit()
    return {"track_id": track_id, "track_name": track_name}


def update_track(track_id: int, track_name: Optional[str] = None,
                 config_names: Optional[Iterable[str]] = None) -> bool:
    """Rename a track and/or replace its set of configurations.

    Configurations whose names survive keep their id and lap times; dropped
    ones are deleted with their lap times. Returns False for an unknown track.
    """
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT 1 FROM tracks WHERE id = %s", (track_id,))
        if cur.fetchone() is None:
            return False
        if track_name is not None:
            cur.execute("UPDATE tracks SET track_name = %s WHERE id = %s", (track_name, track_id))
        if config_names is not None:
            names = list(config_names)
            cur.execute(
                "DELETE FROM track_configs WHERE track_id = %s AND NOT (config_name = ANY(%s::text[]))",
                (track_id, names),
            )
            if names:
                execute_values(
                    cur,
                    "INSERT INTO track_configs (track_id, config_name) VALUES %s "
                    "ON CONFLICT (track_id, config_name) DO NOTHING",
                    [(track_id, name) for name in names],
                )
        conn.commit()
    return True


def delete_track(track_id: int) -> bool:
    """Delete a track; its configurations and lap times cascade."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM tracks WHERE id = %s", (track_id,))
        matched = cur.rowcount > 0
        conn.commit()
    return matched


# --- lap times --------------------------------------------------------------

def list_lap_times(
    user_id: Optional[str] = None,
    league_id: Optional[int] = None,
    track_id: Optional[int] = None,
) -> List[LapTimeRecord]:
    """Return lap times newest first, optionally filtered."""
    sql = _LAP_TIME_SELECT
    where: List[str] = []
    params: List[Any] = []
    if league_id is not None:
        sql += " JOIN user_profiles up ON up.id = tt.user_id"
        where.append("up.league_id = %s")
        params.append(league_id)
    if user_id is not None:
        where.append("tt.user_id = %s")
        params.append(user_id)
    if track_id is not None:
        where.append("tc.track_id = %s")
        params.append(track_id)
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY tt.created_at DESC, tt.id DESC"
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        try:
            cur.execute(sql, params)
        except Exception as e:
            if _is_undefined_table(e):
                return []
            raise
        return [record_from_row(r) for r in cur.fetchall()]


def get_lap_time(record_id: int) -> Optional[Dict[str, Any]]:
    """Return ``{"record", "track_id", "config_id", "car_id"}`` or ``None``."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(_LAP_TIME_SELECT + " WHERE tt.id = %s", (record_id,))
        row = cur.fetchone()
        if not row:
            return None
        return {
            "record": record_from_row(row),
            "track_id": row.get("track_id"),
            "config_id": row.get("config_id"),
            "car_id": row.get("car_id"),
        }


def count_lap_times(user_id: str) -> int:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM track_times WHERE user_id = %s", (user_id,))
        (count,) = cur.fetchone()
        return int(count or 0)


def insert_lap_time(user_id: str, car_id: int, config_id: int, lap_record: float) -> int:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO track_times (user_id, car_id, config_id, lap_record)
            VALUES (%s, %s, %s, %s)
            RETURNING id
            """,
            (user_id, car_id, config_id, lap_record),
        )
        (new_id,) = cur.fetchone()
        conn.commit()
    return int(new_id)


def update_lap_time(record_id: int, user_id: str, fields: Dict[str, Any]) -> bool:
    """Update selected columns of a lap time owned by ``user_id``.

    Accepted keys: car_id, config_id, lap_record. Returns False when no row
    belongs to the user.
    """
    allowed = ("car_id", "config_id", "lap_record")
    sets: List[str] = []
    params: List[Any] = []
    for col in allowed:
        if col in fields:
            sets.append(f"{col} = %s")
            params.append(fields[col])
    if not sets:
        return False
    sql = f"UPDATE track_times SET {', '.join(sets)} WHERE id = %s AND user_id = %s"
    params.extend([record_id, user_id])
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(sql, params)
        matched = cur.rowcount > 0
        conn.commit()
    return matched


def delete_lap_time(record_id: int, user_id: str) -> bool:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM track_times WHERE id = %s AND user_id = %s", (record_id, user_id))
        matched = cur.rowcount > 0
        conn.commit()
    return matched


# --- cars -------------------------------------------------------------------

def _car_filter(search: str) -> tuple:
    if search:
        return " WHERE car_name ILIKE %s", [f"%{search}%"]
    return "", []


def list_cars(search: str = "", page: Optional[int] = None, page_size: Optional[int] = None) -> List[Dict[str, Any]]:
    where, params = _car_filter(search)
    sql = "SELECT id, car_name FROM cars" + where + " ORDER BY car_name, id"
    if page is not None and page_size:
        sql += " LIMIT %s OFFSET %s"
        params = params + [page_size, (max(page, 1) - 1) * page_size]
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        try:
            cur.execute(sql, params)
        except Exception as e:
            if _is_undefined_table(e):
                return []
            raise
        return [{"car_id": r["id"], "car_name": r["car_name"]} for r in cur.fetchall()]


def count_cars(search: str = "") -> int:
    where, params = _car_filter(search)
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM cars" + where, params)
        (count,) = cur.fetchone()
        return int(count or 0)


def add_car(car_name: str, user_id: Optional[str] = None) -> int:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "INSERT INTO cars (car_name, created_by) VALUES (%s, %s) RETURNING id",
            (car_name, user_id),
        )
        (new_id,) = cur.fetchone()
        conn.commit()
    return int(new_id)


def update_car(car_id: int, car_name: str) -> bool:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("UPDATE cars SET car_name = %s WHERE id = %s", (car_name, car_id))
        matched = cur.rowcount > 0
        conn.commit()
    return matched


def delete_car(car_id: int) -> bool:
    # Lap times keep their row with car_id set to NULL
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM cars WHERE id = %s", (car_id,))
        matched = cur.rowcount > 0
        conn.commit()
    return matched


# --- profiles and leagues ---------------------------------------------------

def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT up.id, up.display_name, up.email, up.league_id, l.name AS league_name
            FROM user_profiles up
            LEFT JOIN leagues l ON l.id = up.league_id
            WHERE up.id = %s
            """,
            (user_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        return {
            "user_id": row["id"],
            "display_name": row.get("display_name"),
            "email": row.get("email"),
            "league_id": row.get("league_id"),
            "league_name": row.get("league_name"),
        }


def get_display_names(user_ids: Iterable[str]) -> Dict[str, Dict[str, Optional[str]]]:
    """Return ``user_id -> {"display_name", "email"}`` in a single query."""
    ids = sorted({u for u in user_ids if u})
    if not ids:
        return {}
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id, display_name, email FROM user_profiles WHERE id = ANY(%s)",
            (ids,),
        )
        return {
            r["id"]: {"display_name": r.get("display_name"), "email": r.get("email")}
            for r in cur.fetchall()
        }


def list_league_members(league_id: int) -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id, display_name, email
            FROM user_profiles
            WHERE league_id = %s
            ORDER BY display_name NULLS LAST, id
            """,
            (league_id,),
        )
        return [
            {"user_id": r["id"], "display_name": r.get("display_name"), "email": r.get("email")}
            for r in cur.fetchall()
        ]


def _generate_join_code() -> str:
    return "".join(secrets.choice(_JOIN_CODE_ALPHABET) for _ in range(_JOIN_CODE_LEN))


def create_league(name: str, user_id: str) -> Dict[str, Any]:
    """Create a league with a fresh unused join code."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        while True:
            code = _generate_join_code()
            cur.execute("SELECT 1 FROM leagues WHERE join_code = %s", (code,))
            if cur.fetchone() is None:
                break
        cur.execute(
            "INSERT INTO leagues (name, join_code, created_by) VALUES (%s, %s, %s) RETURNING id",
            (name, code, user_id),
        )
        league_id = cur.fetchone()["id"]
        conn.commit()
    return {"league_id": league_id, "name": name, "join_code": code}


def find_league_by_code(join_code: str) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id, name, join_code FROM leagues WHERE join_code = %s",
            ((join_code or "").strip().upper(),),
        )
        row = cur.fetchone()
        if not row:
            return None
        return {"league_id": row["id"], "name": row["name"], "join_code": row["join_code"]}


def set_profile_league(user_id: str, league_id: Optional[int], display_name: Optional[str] = None) -> None:
    """Upsert the caller's profile row with a league association."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO user_profiles (id, display_name, league_id)
            VALUES (%s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                league_id = EXCLUDED.league_id,
                display_name = COALESCE(EXCLUDED.display_name, user_profiles.display_name)
            """,
            (user_id, display_name, league_id),
        )
        conn.commit()


def set_display_name(user_id: str, display_name: Optional[str]) -> None:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO user_profiles (id, display_name)
            VALUES (%s, %s)
            ON CONFLICT (id) DO UPDATE SET display_name = EXCLUDED.display_name
            """,
            (user_id, display_name),
        )
        conn.commit()
