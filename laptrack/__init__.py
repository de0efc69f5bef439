import os
from flask import Flask


def create_app():
    app = Flask(__name__)

    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        raise RuntimeError(
            "DATABASE_URL is required. Lap times are stored in PostgreSQL."
        )

    level = os.environ.get("LOG_LEVEL")
    if level:
        app.logger.setLevel(level.upper())

    try:
        ttl = int(os.environ.get("CACHE_TTL_LEADERBOARD", "120"))
    except ValueError:
        ttl = 120
    app.config.setdefault("LEADERBOARD_TTL", ttl)
    app.config.setdefault("AUTH_USER_HEADER", os.environ.get("AUTH_USER_HEADER", "X-User-Id"))

    # Initialize connection pool early (optional; direct connect works if pool init fails)
    try:
        from . import datastore_pg as _pg
        try:
            minconn = int(os.environ.get("DB_POOL_MIN", "1"))
        except ValueError:
            minconn = 1
        try:
            maxconn = int(os.environ.get("DB_POOL_MAX", "10"))
        except ValueError:
            maxconn = 10
        _pg.init_pool(minconn=minconn, maxconn=maxconn)
    except Exception:  # pragma: no cover
        app.logger.exception("PostgreSQL pool initialization failed; continuing without pool")

    from . import routes
    app.register_blueprint(routes.bp)
    app.logger.info("laptrack started")

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port)
