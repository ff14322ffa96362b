from collections.abc import Generator

from .session import SessionLocalFleet


def get_fleet_db() -> Generator:
    db = SessionLocalFleet()
    try:
        yield db
    finally:
        db.close()
