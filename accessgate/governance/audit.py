"""
Tamper-evident trail of authorization lifecycle events.

Every grant, credential and policy-availability change made through the
stores is appended to a per-organisation trail.  Each event's
``prev_hash`` is the SHA-256 of the event before it.  When the trail is
capped, the hash of the newest dropped event becomes the trail's anchor,
so a truncated trail still verifies end to end.
"""

import hashlib
import json
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from accessgate.config import get_settings
from accessgate.exceptions import ConfigurationError
from accessgate.governance.clock import utcnow

logger = logging.getLogger(__name__)

AuditAction = Literal[
    "grant_created",
    "grant_revoked",
    "credential_issued",
    "credential_deactivated",
    "policy_assigned",
    "policy_deactivated",
    "policy_removed",
]


class AuditConfig(BaseModel):
    """Configuration for AuditLogger.

    Attributes:
        max_entries_in_memory: Events kept per organisation.
        enable_hash_chain: Whether events are linked by ``prev_hash``.
    """

    max_entries_in_memory: int = Field(default=10_000, ge=1)
    enable_hash_chain: bool = True


class AuditEvent(BaseModel):
    """One lifecycle event.  ``details`` never holds secrets or key material."""

    event_id: str = Field(default_factory=lambda: uuid4().hex)
    occurred_at: datetime = Field(default_factory=utcnow)
    org_id: str
    actor_id: Optional[str] = None
    action: AuditAction
    resource: str  # "grant/<id>", "credential/<id>" or "policy/<id>"
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_hash: Optional[str] = None

    def digest(self) -> str:
        data = self.model_dump(mode="json")
        canonical = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class _Trail:
    """Capped event window plus the digest the window's first event links to."""

    def __init__(self, maxlen: int) -> None:
        self.events: Deque[AuditEvent] = deque()
        self.maxlen = maxlen
        self.anchor: Optional[str] = None

    def append(self, event: AuditEvent, chained: bool) -> None:
        if chained:
            event.prev_hash = self.events[-1].digest() if self.events else self.anchor
        self.events.append(event)
        while len(self.events) > self.maxlen:
            dropped = self.events.popleft()
            if chained:
                self.anchor = dropped.digest()


class AuditLogger:
    """Per-organisation audit trail shared by the governance stores.

    Args:
        config: Audit configuration; defaults come from settings.
    """

    def __init__(self, config: Optional[AuditConfig] = None) -> None:
        if config is None:
            _s = get_settings().audit
            config = AuditConfig(
                max_entries_in_memory=_s.max_entries,
                enable_hash_chain=_s.enable_hash_chain,
            )
        self._config = config
        self._lock = threading.Lock()
        self._trails: Dict[str, _Trail] = {}
        logger.info("AuditLogger initialised", extra={})

    def record(
        self,
        org_id: str,
        actor_id: Optional[str],
        action: AuditAction,
        resource: str,
        **details: Any,
    ) -> AuditEvent:
        """Append one lifecycle event to the organisation's trail."""
        event = AuditEvent(
            org_id=org_id,
            actor_id=actor_id,
            action=action,
            resource=resource,
            details=details,
        )
        with self._lock:
            trail = self._trails.get(org_id)
            if trail is None:
                trail = self._trails[org_id] = _Trail(self._config.max_entries_in_memory)
            trail.append(event, self._config.enable_hash_chain)
        logger.debug(
            "Audit event recorded",
            extra={"org_id": org_id, "action": action, "resource": resource},
        )
        return event

    def query(
        self,
        org_id: str,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        resource: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Matching events for an organisation, newest first."""
        with self._lock:
            trail = self._trails.get(org_id)
            events = list(trail.events) if trail else []

        results: List[AuditEvent] = []
        for event in reversed(events):
            if action and event.action != action:
                continue
            if actor_id and event.actor_id != actor_id:
                continue
            if resource and event.resource != resource:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def verify_integrity(self, org_id: str) -> bool:
        """Walk the organisation's chain from its anchor.

        Returns:
            True if every event links to its predecessor, False otherwise.

        Raises:
            ConfigurationError: If hash chaining is disabled.
        """
        if not self._config.enable_hash_chain:
            raise ConfigurationError("Audit hash chaining is disabled")
        with self._lock:
            trail = self._trails.get(org_id)
            if trail is None:
                return True
            expected, events = trail.anchor, list(trail.events)

        for index, event in enumerate(events):
            if event.prev_hash != expected:
                logger.warning(
                    "Audit chain integrity failure",
                    extra={"org_id": org_id, "index": index, "event_id": event.event_id},
                )
                return False
            expected = event.digest()
        return True
