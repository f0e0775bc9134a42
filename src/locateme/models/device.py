"""Position Store tables: people, devices, raw positions and per-user device grants."""

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint, func

from locateme.db import Base


class Person(Base):
    __tablename__ = "people"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    emoji = Column(String(16), nullable=True)
    picture = Column(String(512), nullable=True)


class Device(Base):
    __tablename__ = "devices"

    id = Column(String(64), primary_key=True)  # device serial number
    name = Column(String(255), nullable=False, default="")
    icon = Column(String(16), nullable=True)
    device_type = Column(String(64), nullable=True, default="Unknown")
    is_primary = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=True)


class Position(Base):
    """One raw position report. ``timestamp`` is epoch milliseconds as reported upstream."""

    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(64), ForeignKey("devices.id"), nullable=False)
    latitude = Column(Numeric(10, 7), nullable=True)
    longitude = Column(Numeric(10, 7), nullable=True)
    altitude = Column(Numeric(10, 2), nullable=True)
    horizontal_accuracy = Column(Numeric(10, 2), nullable=True)
    timestamp = Column(BigInteger, nullable=True)
    readable_datetime = Column(String(32), nullable=True)
    battery_level = Column(Numeric(5, 2), nullable=True)
    battery_status = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_positions_device_timestamp", "device_id", "timestamp"),)


class UserDeviceAccess(Base):
    __tablename__ = "user_device_access"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    device_id = Column(String(64), ForeignKey("devices.id"), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "device_id", name="uq_user_device_access"),)
