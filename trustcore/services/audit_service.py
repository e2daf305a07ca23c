"""Append-only audit log with per-record integrity digests."""

import hashlib
import json
import secrets
import time
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from trustcore.exceptions import StoreUnavailableError, ValidationError
from trustcore.logging.config import get_logger
from trustcore.models.audit import (
    AUDIT_ACTIONS,
    ActorType,
    AuditActionTemplate,
    AuditDetails,
    AuditEvent,
    AuditPage,
    AuditSearchFilters,
    AuditSeverity,
    AuditStatistics,
    IntegrityReport,
)

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def timestamp_ms(ts: datetime) -> int:
    """Exact epoch milliseconds of an aware datetime."""
    return (ts - EPOCH) // timedelta(milliseconds=1)


def compute_digest(
    event_id: str,
    event_type: str,
    action: str,
    actor: ActorType,
    details: AuditDetails,
    timestamp: datetime,
) -> str:
    """
    SHA-256 over the canonical JSON form of an event's own fields.

    The digest does not include the previous record's digest, so it detects
    edits to a single record but not deletion or reordering of records.

    Returns:
        Lowercase hex digest
    """
    payload = {
        "id": event_id,
        "type": event_type,
        "action": action,
        "actor": ActorType(actor).value,
        "details": details.model_dump(mode="json"),
        "timestamp_ms": timestamp_ms(timestamp),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _matches(event: AuditEvent, filters: AuditSearchFilters) -> bool:
    details = event.details
    if filters.user_id and details.user_id != filters.user_id:
        return False
    if filters.category and details.category != filters.category:
        return False
    if filters.action and event.action != filters.action:
        return False
    if filters.severity and details.severity != filters.severity:
        return False
    if filters.result and details.result != filters.result:
        return False
    if filters.resource and details.resource != filters.resource:
        return False
    if filters.start_time and event.timestamp < filters.start_time:
        return False
    if filters.end_time and event.timestamp > filters.end_time:
        return False
    return True


class AuditLog:
    """
    Security audit trail.

    Records are appended through the repository and never modified. Each
    record carries a digest of its own fields; `verify_integrity()` recomputes
    them.
    """

    def __init__(self, repository, clock: Callable[[], float] = time.time) -> None:
        """
        Initialize the audit log.

        Args:
            repository: AuditRepository or InMemoryAuditRepository
            clock: Returns the current time as epoch seconds
        """
        self.repository = repository
        self._clock = clock

    def _now(self) -> datetime:
        ts = datetime.fromtimestamp(self._clock(), UTC)
        return ts.replace(microsecond=ts.microsecond // 1000 * 1000)

    async def record(
        self,
        event_type: str,
        action: str,
        actor: ActorType | str,
        details: AuditDetails | dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append a new event.

        Args:
            event_type: Event type, usually the action's category
            action: Action name
            actor: Kind of principal that acted
            details: Structured payload

        Returns:
            The stored event with its digest

        Raises:
            ValidationError: If the payload does not match the schema
        """
        try:
            actor = ActorType(actor)
            if details is None:
                details = AuditDetails()
            elif isinstance(details, dict):
                details = AuditDetails(**details)
        except (ValueError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid audit event: {e}", field="details") from e

        if not event_type or not action:
            raise ValidationError("Audit events need a type and an action")

        timestamp = self._now()
        event_id = f"audit_{timestamp_ms(timestamp):x}_{secrets.token_hex(8)}"
        event = AuditEvent(
            id=event_id,
            type=event_type,
            action=action,
            actor=actor,
            details=details,
            timestamp=timestamp,
            digest=compute_digest(event_id, event_type, action, actor, details, timestamp),
        )
        await self.repository.append(event)

        context = {
            "event_id": event.id,
            "event_type": event.type,
            "action": event.action,
            "actor": event.actor.value,
            "user_id": details.user_id,
            "result": details.result.value,
        }
        if details.severity == AuditSeverity.CRITICAL:
            logger.warning("Critical security event", extra={"context": context})
        else:
            logger.info("Audit event recorded", extra={"context": context})
        return event

    async def record_action(
        self,
        template: str | AuditActionTemplate,
        *,
        actor: ActorType | str = ActorType.USER,
        **details: Any,
    ) -> AuditEvent:
        """
        Append an event from a predefined action template.

        Args:
            template: Key of AUDIT_ACTIONS or a template instance
            actor: Kind of principal that acted
            **details: AuditDetails fields other than category and severity

        Returns:
            The stored event
        """
        if isinstance(template, str):
            try:
                template = AUDIT_ACTIONS[template]
            except KeyError as e:
                raise ValidationError(f"Unknown audit action: {template}") from e
        details["category"] = template.category
        details["severity"] = template.severity
        return await self.record(template.category.value, template.action, actor, details)

    async def try_record_action(
        self,
        template: str | AuditActionTemplate,
        *,
        actor: ActorType | str = ActorType.USER,
        **details: Any,
    ) -> AuditEvent | None:
        """
        Like `record_action`, but an unreachable audit store does not fail the caller.

        Used on security paths where the outcome has already been decided;
        the lost event is logged at ERROR instead.
        """
        try:
            return await self.record_action(template, actor=actor, **details)
        except StoreUnavailableError:
            name = template if isinstance(template, str) else template.action
            logger.error(
                "Audit event could not be stored",
                extra={"context": {"action": name, "user_id": details.get("user_id")}},
            )
            return None

    async def search(
        self, filters: AuditSearchFilters | None = None, **kwargs: Any
    ) -> AuditPage:
        """
        Filter and paginate the trail, newest first.

        Args:
            filters: Search filters; keyword arguments build one if omitted

        Returns:
            Page of matching events with the total match count
        """
        if filters is None:
            try:
                filters = AuditSearchFilters(**kwargs)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid audit filters: {e}") from e

        events = [e for e in await self.repository.list_all() if _matches(e, filters)]
        # Stable sort keeps later appends first among equal timestamps
        events.reverse()
        events.sort(key=lambda e: e.timestamp, reverse=True)
        page = events[filters.offset : filters.offset + filters.limit]
        return AuditPage(
            events=page, total=len(events), limit=filters.limit, offset=filters.offset
        )

    async def verify_integrity(self) -> IntegrityReport:
        """
        Recompute every stored digest.

        Returns:
            Report listing the ids whose digest no longer matches
        """
        invalid: list[str] = []
        events = await self.repository.list_all()
        for event in events:
            expected = compute_digest(
                event.id, event.type, event.action, event.actor, event.details, event.timestamp
            )
            if expected != event.digest:
                invalid.append(event.id)

        if invalid:
            logger.warning(
                "Audit integrity check failed",
                extra={"context": {"invalid_record_ids": invalid, "checked": len(events)}},
            )
        return IntegrityReport(valid=not invalid, invalid_record_ids=invalid, checked=len(events))

    async def get_event(self, event_id: str) -> AuditEvent | None:
        return await self.repository.get(event_id)

    async def get_statistics(
        self, start_time: datetime | None = None, end_time: datetime | None = None
    ) -> AuditStatistics:
        """Counts by category, severity and result, plus the ten most frequent actions."""
        filters = AuditSearchFilters(start_time=start_time, end_time=end_time)
        events = [e for e in await self.repository.list_all() if _matches(e, filters)]

        by_category = Counter(e.details.category.value for e in events)
        by_severity = Counter(e.details.severity.value for e in events)
        by_result = Counter(e.details.result.value for e in events)
        actions = Counter(e.action for e in events)

        return AuditStatistics(
            total_events=len(events),
            by_category=dict(by_category),
            by_severity=dict(by_severity),
            by_result=dict(by_result),
            top_actions=[
                {"action": action, "count": count} for action, count in actions.most_common(10)
            ],
        )
