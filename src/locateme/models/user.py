from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from locateme.db import Base


def _utc_now():
    """Helper function for SQLAlchemy default/onupdate."""
    return datetime.now(UTC)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    google_id = Column(String(255), unique=True, index=True, nullable=True)
    active = Column(Boolean, default=False, nullable=False)  # new OAuth users start inactive
    is_staff = Column(Boolean, default=False, nullable=False)  # elevated: sees every device
    default_device_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=_utc_now, nullable=False)
    updated_at = Column(DateTime, default=_utc_now, onupdate=_utc_now, nullable=False)
