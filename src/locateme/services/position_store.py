"""
Position Store: read-only query contract over the relational device/position tables.

Every public method is a coroutine. The blocking SQLAlchemy work runs in the
threadpool and is bounded by a client-side timeout, so a hung query surfaces as
``PositionStoreError`` instead of stalling the caller.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from locateme.models.device import Device, Person, Position, UserDeviceAccess
from locateme.services.exceptions import PositionStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqlPositionStore:
    def __init__(self, session_factory: sessionmaker, query_timeout_ms: int = 8000):
        """
        Args:
            session_factory: sessionmaker bound to the Position Store engine
            query_timeout_ms: client-side bound for each store call
        """
        self._session_factory = session_factory
        self._timeout = query_timeout_ms / 1000

    async def _run(self, name: str, func_: Callable[..., T], *args: Any) -> T:
        def _call() -> T:
            with self._session_factory() as db:
                return func_(db, *args)

        try:
            return await asyncio.wait_for(run_in_threadpool(_call), timeout=self._timeout)
        except TimeoutError as exc:
            logger.error("Position store query %s timed out after %.1fs", name, self._timeout)
            raise PositionStoreError(f"{name} timed out after {self._timeout:.1f}s") from exc
        except SQLAlchemyError as exc:
            logger.error("Position store query %s failed: %s", name, exc)
            raise PositionStoreError(f"{name} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Query contract
    # ------------------------------------------------------------------

    async def list_devices_with_latest_position(self, user_id: int | None = None, limit: int | None = None) -> list[dict]:
        """Active devices joined with their person and most recent position, ordered by name."""
        return await self._run("list_devices_with_latest_position", _list_devices, user_id, limit)

    async def list_device_access_grants(self, user_id: int) -> set[str]:
        return await self._run("list_device_access_grants", _list_grants, user_id)

    async def get_raw_position_history(self, device_id: str, since_ms: int, limit: int) -> list[dict]:
        """Raw positions with coordinates newer than ``since_ms``, newest first."""
        return await self._run("get_raw_position_history", _position_history, device_id, since_ms, limit)

    async def get_device_by_id(self, device_id: str) -> dict | None:
        """Active device with its latest position detail, or None."""
        return await self._run("get_device_by_id", _device_by_id, device_id)

    async def count_active_devices(self) -> int:
        return await self._run("count_active_devices", _count_active_devices)

    async def count_positions_since(self, since_ms: int) -> int:
        return await self._run("count_positions_since", _count_positions_since, since_ms)


# ----------------------------------------------------------------------
# Blocking query bodies (run in the threadpool)
# ----------------------------------------------------------------------


def _latest_positions():
    """One row per device: its newest position (ties broken by insertion id)."""
    ranked = select(
        Position.device_id,
        Position.latitude,
        Position.longitude,
        Position.altitude,
        Position.horizontal_accuracy,
        Position.timestamp,
        Position.readable_datetime,
        Position.battery_level,
        Position.battery_status,
        func.row_number()
        .over(partition_by=Position.device_id, order_by=(Position.timestamp.desc(), Position.id.desc()))
        .label("rn"),
    ).subquery("ranked_positions")
    return select(ranked).where(ranked.c.rn == 1).subquery("latest_positions")


def _device_columns(lp):
    return (
        Device.id.label("device_id"),
        Device.name.label("device_name"),
        Device.icon.label("device_icon"),
        Device.device_type,
        Device.is_primary,
        Device.person_id,
        Person.name.label("person_name"),
        Person.picture.label("person_picture"),
        lp.c.latitude,
        lp.c.longitude,
        lp.c.readable_datetime,
        lp.c.timestamp,
        lp.c.battery_level,
        lp.c.battery_status,
    )


def _list_devices(db: Session, user_id: int | None, limit: int | None) -> list[dict]:
    lp = _latest_positions()
    stmt = (
        select(*_device_columns(lp))
        .outerjoin(Person, Person.id == Device.person_id)
        .outerjoin(lp, lp.c.device_id == Device.id)
        .where(Device.is_active.is_(True))
    )
    if user_id is not None:
        stmt = stmt.join(UserDeviceAccess, and_(UserDeviceAccess.device_id == Device.id, UserDeviceAccess.user_id == user_id))
    stmt = stmt.order_by(Device.name, Device.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    return [dict(row) for row in db.execute(stmt).mappings()]


def _list_grants(db: Session, user_id: int) -> set[str]:
    stmt = select(UserDeviceAccess.device_id).where(UserDeviceAccess.user_id == user_id)
    return set(db.execute(stmt).scalars())


def _position_history(db: Session, device_id: str, since_ms: int, limit: int) -> list[dict]:
    stmt = (
        select(
            Position.latitude,
            Position.longitude,
            Position.readable_datetime,
            Position.timestamp,
            Position.horizontal_accuracy,
            Position.battery_level,
        )
        .where(
            Position.device_id == device_id,
            Position.latitude.is_not(None),
            Position.longitude.is_not(None),
            Position.timestamp > since_ms,
        )
        .order_by(Position.timestamp.desc(), Position.id.desc())
        .limit(limit)
    )
    return [dict(row) for row in db.execute(stmt).mappings()]


def _device_by_id(db: Session, device_id: str) -> dict | None:
    lp = _latest_positions()
    stmt = (
        select(*_device_columns(lp), lp.c.horizontal_accuracy, lp.c.altitude)
        .outerjoin(Person, Person.id == Device.person_id)
        .outerjoin(lp, lp.c.device_id == Device.id)
        .where(Device.id == device_id, Device.is_active.is_(True))
    )
    row = db.execute(stmt).mappings().first()
    return dict(row) if row is not None else None


def _count_active_devices(db: Session) -> int:
    return db.execute(select(func.count()).select_from(Device).where(Device.is_active.is_(True))).scalar_one()


def _count_positions_since(db: Session, since_ms: int) -> int:
    return db.execute(select(func.count()).select_from(Position).where(Position.timestamp > since_ms)).scalar_one()
