from typing import Any, Dict, Iterable, List, Optional

# PostgreSQL datastore proxy
# Route handlers import from here; every call is delegated to datastore_pg at
# call time so tests can swap the PostgreSQL functions for in-memory ones.

from . import datastore_pg as _pg
from .laptimes import LapTimeRecord


def list_tracks() -> List[Dict[str, Any]]:
    return _pg.list_tracks()


def get_track(track_id: int) -> Optional[Dict[str, Any]]:
    return _pg.get_track(track_id)


def list_track_configs(track_id: int) -> List[Dict[str, Any]]:
    return _pg.list_track_configs(track_id)


def add_track(track_name: str, config_names: Iterable[str]) -> Dict[str, Any]:
    return _pg.add_track(track_name, list(config_names))


def update_track(track_id: int, track_name: Optional[str] = None,
                 config_names: Optional[Iterable[str]] = None) -> bool:
    names = list(config_names) if config_names is not None else None
    return _pg.update_track(track_id, track_name=track_name, config_names=names)


def delete_track(track_id: int) -> bool:
    return _pg.delete_track(track_id)


def list_lap_times(
    user_id: Optional[str] = None,
    league_id: Optional[int] = None,
    track_id: Optional[int] = None,
) -> List[LapTimeRecord]:
    return _pg.list_lap_times(user_id=user_id, league_id=league_id, track_id=track_id)


def get_lap_time(record_id: int) -> Optional[Dict[str, Any]]:
    return _pg.get_lap_time(record_id)


def count_lap_times(user_id: str) -> int:
    return _pg.count_lap_times(user_id)


def insert_lap_time(user_id: str, car_id: int, config_id: int, lap_record: float) -> int:
    return _pg.insert_lap_time(user_id, car_id, config_id, lap_record)


def update_lap_time(record_id: int, user_id: str, fields: Dict[str, Any]) -> bool:
    return _pg.update_lap_time(record_id, user_id, fields)


def delete_lap_time(record_id: int, user_id: str) -> bool:
    return _pg.delete_lap_time(record_id, user_id)


def list_cars(search: str = "", page: Optional[int] = None, page_size: Optional[int] = None) -> List[Dict[str, Any]]:
    return _pg.list_cars(search=search, page=page, page_size=page_size)


def count_cars(search: str = "") -> int:
    return _pg.count_cars(search=search)


def add_car(car_name: str, user_id: Optional[str] = None) -> int:
    return _pg.add_car(car_name, user_id)


def update_car(car_id: int, car_name: str) -> bool:
    return _pg.update_car(car_id, car_name)


def delete_car(car_id: int) -> bool:
    return _pg.delete_car(car_id)


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    return _pg.get_profile(user_id)


def get_display_names(user_ids: Iterable[str]) -> Dict[str, Dict[str, Optional[str]]]:
    return _pg.get_display_names(list(user_ids))


def list_league_members(league_id: int) -> List[Dict[str, Any]]:
    return _pg.list_league_members(league_id)


def create_league(name: str, user_id: str) -> Dict[str, Any]:
    return _pg.create_league(name, user_id)


def find_league_by_code(join_code: str) -> Optional[Dict[str, Any]]:
    return _pg.find_league_by_code(join_code)


def set_profile_league(user_id: str, league_id: Optional[int], display_name: Optional[str] = None) -> None:
    _pg.set_profile_league(user_id, league_id, display_name=display_name)


def set_display_name(user_id: str, display_name: Optional[str]) -> None:
    _pg.set_display_name(user_id, display_name)
