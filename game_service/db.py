from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings

def make_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def make_session_factory(url: str) -> sessionmaker:
    return sessionmaker(bind=make_engine(url), expire_on_commit=False)

engine = make_engine(settings.sqlalchemy_url())
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
