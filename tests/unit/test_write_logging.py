import pytest

from laptrack import create_app


@pytest.fixture()
def client():
    app = create_app()
    app.config.update({"TESTING": True})
    with app.test_client() as c:
        yield c


def test_new_lap_time_logged(client, caplog):
    caplog.set_level("INFO")
    res = client.post(
        "/api/records",
        json={"car_id": 1, "config_id": 1, "lap_time": "00:01:30.500"},
        headers={"X-User-Id": "u1"},
    )
    assert res.status_code == 200
    messages = [r.getMessage() for r in caplog.records]
    assert any(
        m.startswith("lap_time_saved action=new") and "user_id=u1" in m and "lap_record=90.500" in m
        for m in messages
    )


def test_edit_and_delete_logged(client, caplog):
    caplog.set_level("INFO")
    headers = {"X-User-Id": "u1"}
    assert client.post("/api/records/3", json={"car_id": 2}, headers=headers).status_code == 200
    assert client.delete("/api/records/3", headers=headers).status_code == 200
    messages = [r.getMessage() for r in caplog.records]
    assert "lap_time_saved action=edit record_id=3 user_id=u1 fields=car_id" in messages
    assert "lap_time_deleted record_id=3 user_id=u1" in messages


def test_track_car_and_profile_writes_logged(client, caplog):
    caplog.set_level("INFO")
    headers = {"X-User-Id": "u1"}
    assert client.post("/api/tracks/2", json={"track_name": "Monza Eni"}, headers=headers).status_code == 200
    assert client.delete("/api/tracks/2", headers=headers).status_code == 200
    assert client.delete("/api/cars/3", headers=headers).status_code == 200
    assert client.post("/api/profile", json={"display_name": "Ali"}, headers=headers).status_code == 200
    messages = [r.getMessage() for r in caplog.records]
    assert "track_saved action=edit track_id=2 renamed=True configs=- user_id=u1" in messages
    assert "track_deleted track_id=2 user_id=u1" in messages
    assert "car_deleted car_id=3 user_id=u1" in messages
    assert "profile_saved user_id=u1 display_name_set=True" in messages


def test_rejected_reference_logged_as_warning(client, caplog):
    caplog.set_level("INFO")
    res = client.post(
        "/api/records",
        json={"car_id": 42, "config_id": 1, "lap_time": "00:01:30.500"},
        headers={"X-User-Id": "u1"},
    )
    assert res.status_code == 400
    warnings = [r.getMessage() for r in caplog.records if r.levelname == "WARNING"]
    assert "integrity_error type=ForeignKeyViolation" in warnings


def test_custom_auth_header(monkeypatch):
    monkeypatch.setenv("AUTH_USER_HEADER", "X-Forwarded-User")
    app = create_app()
    with app.test_client() as c:
        assert c.get("/api/profile", headers={"X-User-Id": "u1"}).status_code == 401
        assert c.get("/api/profile", headers={"X-Forwarded-User": "u1"}).status_code == 200


def test_create_app_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL")
    with pytest.raises(RuntimeError):
        create_app()


def test_health_db_reports_missing_tables(client, monkeypatch):
    import psycopg2

    class Cursor:
        def __init__(self):
            self.results = []

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def execute(self, sql, params=None):
            if "version()" in sql:
                self.results = [("laptrack", "laps", "PostgreSQL 16.2\nbuild")]
            else:
                self.results = [("tracks",), ("cars",)]

        def fetchone(self):
            return self.results[0]

        def fetchall(self):
            return self.results

    class Conn:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def cursor(self):
            return Cursor()

    monkeypatch.setattr(psycopg2, "connect", lambda url, connect_timeout=None: Conn())
    body = client.get("/health/db").get_json()
    assert body["connected"] is True
    assert body["server_version"] == "PostgreSQL 16.2"
    assert body["missing_tables"] == ["leagues", "user_profiles", "track_configs", "track_times"]
