# medcycle/db/database.py
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from medcycle.config.settings import settings

load_dotenv()


def build_url(database_url: Optional[str] = None):
    """
    Connection URL resolution:
      1) explicit database_url (DATABASE_URL)
      2) MySQL parts (DB_USER / DB_PASS / DB_HOST / DB_PORT / DB_NAME)
      3) local SQLite file for development
    """
    if database_url or settings.database_url:
        return database_url or settings.database_url

    if settings.db_host and settings.db_name:
        return URL.create(
            "mysql+pymysql",
            username=settings.db_user,
            password=settings.db_pass,
            host=settings.db_host,
            port=settings.db_port,
            database=settings.db_name,
        )

    return "sqlite:///./medcycle.db"


def build_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    url = build_url(database_url)

    if str(url).startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _sqlite_fk_on(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return engine

    return create_engine(
        url,
        pool_pre_ping=True,     # detect dropped connections
        pool_recycle=1800,      # refresh connections every 30 minutes
        pool_size=5,
        max_overflow=10,
        **kwargs,
    )


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# request-scoped session for read endpoints
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
