"""
Append-only provisioning event log backed by PostgreSQL

The log is the only source of truth for "has this step already happened?".
Events are never updated or deleted.
"""

import logging
from typing import Any, Dict, List, Optional

import database
from services.provisioning_models import ProvisioningEvent

logger = logging.getLogger(__name__)


class EventLog:
    """Event log operations used by the orchestrator and the trigger collaborators"""

    async def append(self, subject_id: int, event_type: str, message: str,
                     payload: Optional[Dict[str, Any]] = None) -> int:
        """Record a fact; raises StorageError when it could not be stored"""
        event_id = await database.append_provisioning_event(subject_id, event_type, message, payload)
        logger.debug(f"📝 EVENT LOG: #{event_id} {event_type} for subject {subject_id}")
        return event_id

    async def has_occurred(self, subject_id: int, event_type: str) -> bool:
        return await database.has_provisioning_event(subject_id, event_type)

    async def claim_start(self, subject_id: int, message: str) -> Optional[int]:
        """
        Append provisioning.started only if no run has claimed the subject yet.

        Returns the new event id, or None when the claim is already held.
        """
        event_id = await database.claim_provisioning_start(subject_id, message)
        if event_id is None:
            logger.info(f"🔒 EVENT LOG: Subject {subject_id} already claimed by another run")
        return event_id

    async def list_events(self, subject_id: int) -> List[ProvisioningEvent]:
        rows = await database.get_provisioning_events(subject_id)
        return [ProvisioningEvent.from_row(row) for row in rows]
