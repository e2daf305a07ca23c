"""Append-only audit event storage."""

import asyncio
import copy
from typing import Any, Optional

from trustcore.config import settings
from trustcore.models.audit import AuditEvent
from trustcore.repositories.base import BaseRepository, from_dynamo


def _to_item(event: AuditEvent) -> dict[str, Any]:
    item = event.model_dump(mode="json")
    item["event_id"] = item.pop("id")
    return item


def _from_item(item: dict[str, Any]) -> AuditEvent:
    data = from_dynamo(dict(item))
    data["id"] = data.pop("event_id")
    return AuditEvent(**data)


class AuditRepository(BaseRepository):
    """
    Audit events in DynamoDB.

    Writes are conditional on the event id being new, so an existing record
    is never overwritten through this class.
    """

    def __init__(self, table_name: str | None = None, session=None) -> None:
        super().__init__(table_name or settings.dynamodb_table_audit, session=session)

    async def append(self, event: AuditEvent) -> None:
        """
        Store a new event.

        Args:
            event: Event to append

        Raises:
            ValueError: If an event with the same id already exists
        """
        written = await self.put_item(
            _to_item(event), condition="attribute_not_exists(event_id)"
        )
        if not written:
            raise ValueError(f"Audit event already exists: {event.id}")

    async def get(self, event_id: str) -> Optional[AuditEvent]:
        item = await self.get_item({"event_id": event_id})
        return _from_item(item) if item else None

    async def list_all(self) -> list[AuditEvent]:
        """Every stored event in append (timestamp) order."""
        events = [_from_item(item) for item in await self.scan_all()]
        return sorted(events, key=lambda e: (e.timestamp, e.id))


class InMemoryAuditRepository:
    """
    Single-process audit storage.

    `records` holds serialized rows in append order, the same shape the
    DynamoDB table stores.
    """

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def append(self, event: AuditEvent) -> None:
        async with self._lock:
            if any(r["event_id"] == event.id for r in self.records):
                raise ValueError(f"Audit event already exists: {event.id}")
            self.records.append(_to_item(event))

    async def get(self, event_id: str) -> Optional[AuditEvent]:
        for record in self.records:
            if record["event_id"] == event_id:
                return _from_item(copy.deepcopy(record))
        return None

    async def list_all(self) -> list[AuditEvent]:
        return [_from_item(copy.deepcopy(r)) for r in self.records]
