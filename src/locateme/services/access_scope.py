"""Per-principal visibility over device rows, whatever their freshness source."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from locateme.services.exceptions import DeviceAccessDenied

R = TypeVar("R")


@dataclass(frozen=True)
class Principal:
    """The authenticated caller. Staff principals are exempt from per-device grants."""

    id: int
    is_staff: bool = False

    @classmethod
    def from_user(cls, user) -> "Principal":
        return cls(id=user.id, is_staff=bool(user.is_staff))


def scope_records(records: Sequence[R], principal: Principal, granted_ids: Iterable[str] | None) -> list[R]:
    """
    Filter rows to the principal's grants, preserving input order.

    Staff principals get every row back; the row cap is applied by the query
    that produced ``records``. Rows are never modified.
    """
    if principal.is_staff:
        return list(records)
    allowed = set(granted_ids or ())
    return [record for record in records if record.device_id in allowed]


class AccessScope:
    def __init__(self, store):
        self.store = store

    async def granted_ids(self, principal: Principal) -> set[str] | None:
        """Device ids visible to ``principal``; None means unrestricted."""
        if principal.is_staff:
            return None
        return await self.store.list_device_access_grants(principal.id)

    async def scope(self, records: Sequence[R], principal: Principal) -> list[R]:
        return scope_records(records, principal, await self.granted_ids(principal))

    async def ensure_device_access(self, principal: Principal, device_id: str) -> None:
        granted = await self.granted_ids(principal)
        if granted is not None and device_id not in granted:
            raise DeviceAccessDenied(device_id)
