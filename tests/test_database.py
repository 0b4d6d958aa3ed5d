from sqlalchemy import create_engine, event, text

from database import _enable_sqlite_pragmas


def test_sqlite_connections_enforce_foreign_keys() -> None:
    engine = create_engine("sqlite:///:memory:")
    event.listen(engine, "connect", _enable_sqlite_pragmas)

    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
