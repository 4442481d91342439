from shared.database import get_engine, get_session

from .config import DATABASE_URL


def make_session_factory(database_url: str | None = None, **engine_kwargs):
    url = database_url or DATABASE_URL
    if not url:
        raise RuntimeError("DISPATCH_DB environment variable is not set")

    engine = get_engine(url, **engine_kwargs)
    return engine, get_session(engine)
