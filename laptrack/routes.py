from flask import Blueprint, redirect, url_for, abort, request, current_app
from datetime import datetime
import time

import psycopg2
from psycopg2 import errors as pg_errors

from .durations import (
    CLOCK_FORMAT,
    HOUR_CLOCK_FORMAT,
    compose_duration,
    decode_duration,
    display_duration,
    encode_duration,
)
from .errors import FormatError
from .laptimes import (
    MODE_FASTEST,
    MODE_FIRST_SEEN,
    TrackConfigKey,
    best_times,
    compute_deltas,
    favorite_car,
    fastest_per_config,
    group_by_config,
    rank_times,
)
from .datastore import (
    list_tracks as ds_list_tracks,
    get_track as ds_get_track,
    list_track_configs as ds_list_track_configs,
    add_track as ds_add_track,
    update_track as ds_update_track,
    delete_track as ds_delete_track,
    list_lap_times as ds_list_lap_times,
    get_lap_time as ds_get_lap_time,
    count_lap_times as ds_count_lap_times,
    insert_lap_time as ds_insert_lap_time,
    update_lap_time as ds_update_lap_time,
    delete_lap_time as ds_delete_lap_time,
    list_cars as ds_list_cars,
    count_cars as ds_count_cars,
    add_car as ds_add_car,
    update_car as ds_update_car,
    delete_car as ds_delete_car,
    get_profile as ds_get_profile,
    get_display_names as ds_get_display_names,
    list_league_members as ds_list_league_members,
    create_league as ds_create_league,
    find_league_by_code as ds_find_league_by_code,
    set_profile_league as ds_set_profile_league,
    set_display_name as ds_set_display_name,
)


bp = Blueprint('main', __name__)

DEFAULT_PAGE_SIZE = 10

# In-process cache for leaderboards keyed by (league_id, mode)
_LEADERBOARD_CACHE: dict[tuple, tuple[float, list[dict]]] = {}


def _cache_get_leaderboard(league_id, mode: str) -> list[dict] | None:
    key = (league_id, mode)
    entry = _LEADERBOARD_CACHE.get(key)
    if not entry:
        return None
    exp, value = entry
    if exp < time.time():
        _LEADERBOARD_CACHE.pop(key, None)
        return None
    return value


def _cache_set_leaderboard(league_id, mode: str, rows: list[dict]) -> None:
    ttl = int(current_app.config.get('LEADERBOARD_TTL', 120))
    _LEADERBOARD_CACHE[(league_id, mode)] = (time.time() + ttl, rows)


def _cache_clear_all() -> None:
    _LEADERBOARD_CACHE.clear()


@bp.errorhandler(FormatError)
def _format_error(exc):
    return {'error': str(exc)}, 400


@bp.errorhandler(psycopg2.IntegrityError)
def _integrity_error(exc):
    current_app.logger.warning("integrity_error type=%s", type(exc).__name__)
    if isinstance(exc, pg_errors.UniqueViolation):
        return {'error': 'That name is already in use'}, 409
    if isinstance(exc, pg_errors.ForeignKeyViolation):
        return {'error': 'Unknown car or track configuration'}, 400
    return {'error': 'The change conflicts with existing data'}, 400


def _current_user_id() -> str | None:
    """Return the user id forwarded by the upstream auth service."""
    header = current_app.config.get('AUTH_USER_HEADER', 'X-User-Id')
    value = (request.headers.get(header) or '').strip()
    return value or None


def _require_user() -> str:
    user_id = _current_user_id()
    if not user_id:
        abort(401)
    return user_id


def _viewer_league_id():
    user_id = _current_user_id()
    if not user_id:
        return None
    profile = ds_get_profile(user_id) or {}
    return profile.get('league_id')


def _int_field(payload: dict, name: str) -> int | None:
    value = payload.get(name)
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_lap_time(payload: dict) -> float | None:
    """Return the lap time in seconds from a form payload, or None if absent.

    Accepts either ``lap_time`` as ``HH:MM:SS.mmm`` (``lap_time_format`` may
    select ``MM:SS.mmm``) or separate ``minutes``/``seconds``/``milliseconds``
    fields with an optional ``hours``.
    """
    text = payload.get('lap_time')
    if text not in (None, ''):
        fmt = payload.get('lap_time_format') or HOUR_CLOCK_FORMAT
        return decode_duration(text, fmt)
    if any(payload.get(k) not in (None, '') for k in ('hours', 'minutes', 'seconds', 'milliseconds')):
        return compose_duration(
            payload.get('minutes'),
            payload.get('seconds'),
            payload.get('milliseconds'),
            hours=payload.get('hours'),
        )
    return None


def _config_names(raw) -> list[str] | None:
    """Distinct non-blank configuration names in order, or None if not a list."""
    if not isinstance(raw, list):
        return None
    names: list[str] = []
    for cfg in raw:
        cfg = str(cfg or '').strip()
        if cfg and cfg not in names:
            names.append(cfg)
    return names


def _driver_name(user_id: str | None, names: dict) -> str:
    if not user_id:
        return 'Unknown'
    info = names.get(user_id) or {}
    return info.get('display_name') or info.get('email') or f"User {user_id[:8]}..."


def _lap_time_view(record, names: dict, fmt: str = CLOCK_FORMAT) -> dict:
    return {
        'record_id': record.record_id,
        'track_name': record.track_name,
        'config_name': record.config_name,
        'car_name': record.car_name,
        'user_id': record.user_id,
        'driver': _driver_name(record.user_id, names),
        'lap_record': record.duration_seconds,
        'lap_time': display_duration(record.duration_seconds, fmt),
        'created_at': record.created_at.isoformat() if record.created_at else None,
    }


def _driver_stats(user_id: str) -> dict:
    """Total records, best time per configuration and favourite car."""
    records = ds_list_lap_times(user_id=user_id)
    chronological = sorted(
        records,
        key=lambda r: (r.created_at is None, r.created_at or datetime.min, r.record_id),
    )
    favorite = favorite_car(((r.user_id, r.car_name) for r in chronological), user_id)
    best = [
        {
            'track_name': r.track_name,
            'config_name': r.config_name,
            'car_name': r.car_name,
            'lap_record': r.duration_seconds,
            'lap_time': encode_duration(r.duration_seconds),
        }
        for r in fastest_per_config(records)
    ]
    return {
        'total_records': ds_count_lap_times(user_id),
        'best_times': best,
        'favorite_car': (
            {'car_name': favorite.car_name, 'use_count': favorite.use_count} if favorite else None
        ),
    }


@bp.route('/')
def index():
    return redirect(url_for('main.leaderboard'))


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status and
    any application tables that are missing.
    """
    import os
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {
            'connected': False,
            'status': 'no_database_url',
            'message': 'DATABASE_URL is not set.'
        }
    expected = ['leagues', 'user_profiles', 'tracks', 'track_configs', 'cars', 'track_times']
    try:
        with psycopg2.connect(url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute('SELECT current_user, current_database(), version()')
                user, db, ver = cur.fetchone()
                cur.execute(
                    """
                    SELECT table_name FROM information_schema.tables
                    WHERE table_schema = 'public' AND table_name = ANY(%s)
                    """,
                    (expected,),
                )
                present = {r[0] for r in cur.fetchall()}
            return {
                'connected': True,
                'status': 'ok',
                'user': user,
                'database': db,
                'server_version': (ver or '').split('\n')[0],
                'missing_tables': [t for t in expected if t not in present],
            }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {
            'connected': False,
            'status': 'error',
            'error': str(e),
        }


@bp.route('/api/leaderboard')
def leaderboard():
    """Best lap per track configuration within the caller's league."""
    mode = (request.args.get('mode') or MODE_FASTEST).lower()
    if mode not in (MODE_FASTEST, MODE_FIRST_SEEN):
        return {'error': f"Unknown mode: {mode}"}, 400
    league_id = _viewer_league_id()
    rows = _cache_get_leaderboard(league_id, mode)
    if rows is None:
        best = best_times(ds_list_lap_times(league_id=league_id), mode)
        names = ds_get_display_names(r.user_id for r in best)
        rows = []
        for position, record in enumerate(best, start=1):
            row = _lap_time_view(record, names)
            row['position'] = position
            rows.append(row)
        _cache_set_leaderboard(league_id, mode, rows)
    return {'mode': mode, 'league_id': league_id, 'leaderboard': rows}


@bp.route('/api/tracks')
def tracks():
    return {'tracks': ds_list_tracks()}


@bp.route('/api/tracks', methods=['POST'])
def add_track():
    user_id = _require_user()
    payload = request.get_json() or {}
    name = (payload.get('track_name') or '').strip()
    if not name:
        return {'error': 'track_name is required'}, 400
    configs = _config_names(payload.get('configs') or [])
    if configs is None:
        return {'error': 'configs must be a list'}, 400
    track = ds_add_track(name, configs)
    current_app.logger.info(
        "track_saved action=new track_id=%s configs=%d user_id=%s", track.get('track_id'), len(configs), user_id
    )
    return {'status': 'ok', 'track': track}


@bp.route('/api/tracks/<int:track_id>')
def track_detail(track_id):
    """Configurations of a track, each with its ranked lap times."""
    track = ds_get_track(track_id)
    if track is None:
        abort(404)
    configs = ds_list_track_configs(track_id)
    groups = group_by_config(ds_list_lap_times(track_id=track_id))
    names = ds_get_display_names(r.user_id for group in groups.values() for r in group)

    out = []
    for cfg in configs:
        group = groups.get(TrackConfigKey(track['track_name'], cfg['config_name']), [])
        deltas = compute_deltas(group)
        times = []
        for ranked, delta in zip(rank_times(group), deltas):
            row = _lap_time_view(ranked.record, names, HOUR_CLOCK_FORMAT)
            row['position'] = ranked.rank
            row['delta'] = delta
            times.append(row)
        out.append({'config_id': cfg['config_id'], 'config_name': cfg['config_name'], 'times': times})
    return {'track': track, 'configs': out}


@bp.route('/api/tracks/<int:track_id>', methods=['POST'])
def update_track(track_id):
    """Rename a track and/or replace its configuration list.

    Configurations missing from ``configs`` are removed together with their
    lap times; surviving names keep theirs.
    """
    user_id = _require_user()
    payload = request.get_json() or {}
    name = None
    if 'track_name' in payload:
        name = (payload.get('track_name') or '').strip()
        if not name:
            return {'error': 'track_name must not be blank'}, 400
    configs = None
    if 'configs' in payload:
        configs = _config_names(payload.get('configs'))
        if configs is None:
            return {'error': 'configs must be a list'}, 400
    if name is None and configs is None:
        return {'error': 'Nothing to update'}, 400

    if not ds_update_track(track_id, track_name=name, config_names=configs):
        abort(404)
    current_app.logger.info(
        "track_saved action=edit track_id=%s renamed=%s configs=%s user_id=%s",
        track_id, name is not None, len(configs) if configs is not None else '-', user_id,
    )
    _cache_clear_all()
    return {'status': 'ok'}


@bp.route('/api/tracks/<int:track_id>', methods=['DELETE'])
def delete_track(track_id):
    user_id = _require_user()
    if not ds_delete_track(track_id):
        abort(404)
    current_app.logger.info("track_deleted track_id=%s user_id=%s", track_id, user_id)
    _cache_clear_all()
    return {'status': 'ok'}


@bp.route('/api/records')
def records():
    """All lap times, newest first."""
    user_id = _current_user_id()
    rows = ds_list_lap_times()
    names = ds_get_display_names(r.user_id for r in rows)
    out = []
    for record in rows:
        view = _lap_time_view(record, names)
        view['can_edit'] = user_id is not None and record.user_id == user_id
        out.append(view)
    return {'records': out}


@bp.route('/api/records/<int:record_id>')
def record_detail(record_id):
    found = ds_get_lap_time(record_id)
    if found is None:
        abort(404)
    record = found['record']
    view = _lap_time_view(record, ds_get_display_names([record.user_id]))
    view.update({
        'track_id': found.get('track_id'),
        'config_id': found.get('config_id'),
        'car_id': found.get('car_id'),
    })
    return view


@bp.route('/api/records', methods=['POST'])
def add_record():
    user_id = _require_user()
    payload = request.get_json() or {}
    car_id = _int_field(payload, 'car_id')
    config_id = _int_field(payload, 'config_id')
    if car_id is None or config_id is None:
        return {'error': 'car_id and config_id are required'}, 400
    seconds = _parse_lap_time(payload)
    if seconds is None:
        return {'error': 'A lap time is required'}, 400

    record_id = ds_insert_lap_time(user_id, car_id, config_id, seconds)
    current_app.logger.info(
        "lap_time_saved action=new record_id=%s user_id=%s config_id=%s lap_record=%.3f",
        record_id, user_id, config_id, seconds,
    )
    _cache_clear_all()
    return {'status': 'ok', 'record_id': record_id, 'lap_time': encode_duration(seconds, HOUR_CLOCK_FORMAT)}


@bp.route('/api/records/<int:record_id>', methods=['POST'])
def update_record(record_id):
    user_id = _require_user()
    found = ds_get_lap_time(record_id)
    if found is None:
        abort(404)
    if found['record'].user_id != user_id:
        abort(403)

    payload = request.get_json() or {}
    fields = {}
    for name in ('car_id', 'config_id'):
        value = _int_field(payload, name)
        if value is not None:
            fields[name] = value
    seconds = _parse_lap_time(payload)
    if seconds is not None:
        fields['lap_record'] = seconds
    if not fields:
        return {'error': 'Nothing to update'}, 400

    if not ds_update_lap_time(record_id, user_id, fields):
        abort(404)
    current_app.logger.info(
        "lap_time_saved action=edit record_id=%s user_id=%s fields=%s",
        record_id, user_id, ','.join(sorted(fields)),
    )
    _cache_clear_all()
    return {'status': 'ok'}


@bp.route('/api/records/<int:record_id>', methods=['DELETE'])
def delete_record(record_id):
    user_id = _require_user()
    found = ds_get_lap_time(record_id)
    if found is None:
        abort(404)
    if found['record'].user_id != user_id:
        abort(403)
    if not ds_delete_lap_time(record_id, user_id):
        abort(404)
    current_app.logger.info("lap_time_deleted record_id=%s user_id=%s", record_id, user_id)
    _cache_clear_all()
    return {'status': 'ok'}


@bp.route('/api/profile')
def profile():
    user_id = _require_user()
    prof = ds_get_profile(user_id) or {'user_id': user_id, 'display_name': None, 'email': None,
                                      'league_id': None, 'league_name': None}
    return {'profile': prof, 'stats': _driver_stats(user_id)}


@bp.route('/api/profile', methods=['POST'])
def update_profile():
    user_id = _require_user()
    payload = request.get_json() or {}
    if 'display_name' not in payload:
        return {'error': 'display_name is required'}, 400
    raw = payload.get('display_name')
    if raw is not None and not isinstance(raw, str):
        return {'error': 'display_name must be a string'}, 400
    # Blank clears the name; drivers then show by email
    name = (raw or '').strip() or None
    ds_set_display_name(user_id, name)
    current_app.logger.info("profile_saved user_id=%s display_name_set=%s", user_id, name is not None)
    _cache_clear_all()
    return {'status': 'ok', 'display_name': name}


@bp.route('/api/drivers/<user_id>')
def driver(user_id):
    """Another driver's profile; only visible within the same league."""
    viewer = _require_user()
    viewer_league = (ds_get_profile(viewer) or {}).get('league_id')
    prof = ds_get_profile(user_id)
    if not prof or viewer_league is None or prof.get('league_id') != viewer_league:
        abort(404)
    return {'profile': prof, 'stats': _driver_stats(user_id)}


@bp.route('/api/league')
def league():
    user_id = _require_user()
    prof = ds_get_profile(user_id) or {}
    league_id = prof.get('league_id')
    if league_id is None:
        return {'league': None, 'members': []}
    return {
        'league': {'league_id': league_id, 'name': prof.get('league_name')},
        'members': ds_list_league_members(league_id),
    }


@bp.route('/api/leagues', methods=['POST'])
def create_league():
    user_id = _require_user()
    payload = request.get_json() or {}
    name = (payload.get('name') or '').strip()
    if not name:
        return {'error': 'League name is required when creating a league'}, 400
    created = ds_create_league(name, user_id)
    ds_set_profile_league(user_id, created['league_id'], display_name=payload.get('display_name'))
    current_app.logger.info("league_created league_id=%s user_id=%s", created['league_id'], user_id)
    _cache_clear_all()
    return {'status': 'ok', 'league': created}


@bp.route('/api/leagues/join', methods=['POST'])
def join_league():
    user_id = _require_user()
    payload = request.get_json() or {}
    found = ds_find_league_by_code(payload.get('join_code') or '')
    if found is None:
        return {'error': 'Invalid league code. Please check with your league administrator.'}, 400
    ds_set_profile_league(user_id, found['league_id'], display_name=payload.get('display_name'))
    current_app.logger.info("league_joined league_id=%s user_id=%s", found['league_id'], user_id)
    _cache_clear_all()
    return {'status': 'ok', 'league': {'league_id': found['league_id'], 'name': found['name']}}


@bp.route('/api/cars')
def cars():
    search = (request.args.get('search') or '').strip()
    try:
        page = int(request.args['page']) if request.args.get('page') else None
        page_size = int(request.args.get('page_size') or DEFAULT_PAGE_SIZE)
    except ValueError:
        return {'error': 'page and page_size must be integers'}, 400
    if page is not None and (page < 1 or page_size < 1):
        return {'error': 'page and page_size must be positive'}, 400
    return {
        'cars': ds_list_cars(search=search, page=page, page_size=page_size if page else None),
        'total': ds_count_cars(search=search),
        'page': page,
        'page_size': page_size if page else None,
    }


@bp.route('/api/cars', methods=['POST'])
def add_car():
    user_id = _require_user()
    payload = request.get_json() or {}
    name = (payload.get('car_name') or '').strip()
    if not name:
        return {'error': 'car_name is required'}, 400
    car_id = ds_add_car(name, user_id)
    current_app.logger.info("car_saved action=new car_id=%s user_id=%s", car_id, user_id)
    return {'status': 'ok', 'car_id': car_id}


@bp.route('/api/cars/<int:car_id>', methods=['POST'])
def update_car(car_id):
    user_id = _require_user()
    payload = request.get_json() or {}
    name = (payload.get('car_name') or '').strip()
    if not name:
        return {'error': 'car_name is required'}, 400
    if not ds_update_car(car_id, name):
        abort(404)
    current_app.logger.info("car_saved action=edit car_id=%s user_id=%s", car_id, user_id)
    _cache_clear_all()
    return {'status': 'ok'}


@bp.route('/api/cars/<int:car_id>', methods=['DELETE'])
def delete_car(car_id):
    user_id = _require_user()
    if not ds_delete_car(car_id):
        abort(404)
    current_app.logger.info("car_deleted car_id=%s user_id=%s", car_id, user_id)
    _cache_clear_all()
    return {'status': 'ok'}
