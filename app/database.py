from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
import os
import uuid

# Allow overriding database via environment.
# Default is a local sqlite file; request handlers and the dispatch worker
# thread share it, hence check_same_thread=False.
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./listflow.db")

_connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass

def new_id() -> str:
	"""Primary keys are UUID strings so ids embedded in idempotency keys stay portable."""
	return str(uuid.uuid4())
