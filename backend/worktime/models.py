from __future__ import annotations

import datetime as dt

from sqlalchemy import Boolean, Column, Date, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from .utils import ensure_utc, utcnow

Base = declarative_base()


class TimeEntryRecord(Base):
    __tablename__ = "time_entries"
    __table_args__ = (Index("ix_time_entries_user_day", "user_id", "day"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    kind = Column(String(10), nullable=False, default="work")
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    day = Column(Date, nullable=False)
    is_manual = Column(Boolean, nullable=False, default=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def mark_closed(self, now: dt.datetime) -> None:
        if self.end_time is not None:
            return
        self.end_time = ensure_utc(now)
        self.updated_at = ensure_utc(now)


class UserProfileRecord(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String(128), primary_key=True)
    employment_type = Column(String(20), nullable=False, default="employee")
    holiday_region = Column(String(20), nullable=False, default="")
    weekly_hours = Column(Float, nullable=False, default=40.0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
