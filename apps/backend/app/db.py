# apps/backend/app/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from app.core.config import settings

DATABASE_URL = settings.database_url.strip()

if not DATABASE_URL:
  # Fail fast: better to know immediately in logs
  raise RuntimeError("DATABASE_URL is not set")

if DATABASE_URL.startswith("sqlite"):
  # in-memory sqlite must share one connection across the app's threads
  engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
  )
else:
  engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
  )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
  db = SessionLocal()
  try:
    yield db
  finally:
    db.close()
