import urllib.parse

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from cashback_engine.config import DATABASE_URL


def normalize_database_url(url: str) -> str:
    """Re-encode a server URL so percent-encoded credentials survive.

    SQLite URLs carry a path and no credentials; urlunparse would collapse
    ``sqlite:///file`` to ``sqlite:/file``, so they pass through untouched.
    """
    if url.startswith("sqlite"):
        return url
    try:
        return urllib.parse.urlunparse(urllib.parse.urlparse(url))
    except ValueError:
        return url.encode("utf-8", errors="replace").decode("utf-8")


DATABASE_URL = normalize_database_url(DATABASE_URL)

connect_args = {}
if DATABASE_URL.startswith("postgres"):
    connect_args = {"options": "-c timezone=utc"}
elif DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
