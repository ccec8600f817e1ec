# apps/backend/app/models/event.py
from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from app.db import Base

# JSONB on postgres, plain JSON everywhere else (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Event(Base):
  __tablename__ = "user_events"

  # BigInteger does not autoincrement on sqlite
  id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
  event_id = Column(Text, nullable=True, unique=True)

  session_id = Column(Text, nullable=False, index=True)
  user_id = Column(Text, nullable=False, default="anonymous", index=True)
  project_id = Column(Text, nullable=False, default="default", index=True)

  event_type = Column(Text, nullable=False, index=True)
  event_name = Column(Text, nullable=False)

  page_url = Column(Text, nullable=False, index=True)
  page_title = Column(Text, nullable=True)
  referrer = Column(Text, nullable=True)

  element_id = Column(Text, nullable=True)
  element_class = Column(Text, nullable=True)
  utm_source = Column(Text, nullable=True, index=True)

  device_type = Column(Text, nullable=True)
  browser = Column(Text, nullable=True)
  os = Column(Text, nullable=True)
  country = Column(Text, nullable=True)
  city = Column(Text, nullable=True)

  payload = Column("metadata", JSONType, nullable=False, default=dict)

  timestamp = Column(DateTime, nullable=False, index=True)
  created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


Index("idx_user_events_project_ts", Event.project_id, Event.timestamp)
Index("idx_user_events_type_ts", Event.event_type, Event.timestamp)
Index("idx_user_events_user_ts", Event.user_id, Event.timestamp)
