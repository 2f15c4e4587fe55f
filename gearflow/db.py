from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gearflow.config import settings


_url = settings.database_url_normalized
engine = create_engine(
    _url,
    future=True,
    pool_pre_ping=True,
    connect_args={'check_same_thread': False} if _url.startswith('sqlite') else {},
)

# One session per request; never share across requests.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
