# sibflo/entities.py
from sqlalchemy import Column, DateTime, JSON, String, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class KeyValueRecord(Base, TimestampMixin):
    """
    One persisted value: the trial list, a behaviour log, or a view-state snapshot.
    """
    __tablename__ = "kv_record"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
