"""
Provisioning trigger collaborators

Boundary functions called by the payment webhook and the admin status-change handler.
Each one persists the status change first, records an audit event, and only then
schedules a provisioning run. They report whether a run was scheduled, never how
provisioning went.
"""

import logging
from typing import Any, Dict, Optional

from services.event_log import EventLog
from services.provisioning_models import (
    EVENT_ADMIN_STATUS_CHANGED, EVENT_PAYMENT_SUCCEEDED, EVENT_PROVISIONING_COMPLETED,
    EVENT_PROVISIONING_FAILED, EVENT_PROVISIONING_STARTED, SubjectStatus
)
from services.provisioning_worker import ProvisioningLaunchError, launch_provisioning
from services.subject_store import SubjectStore

logger = logging.getLogger(__name__)

# Admin vocabulary → persisted status
ADMIN_STATUS_MAP = {
    'pending_payment': SubjectStatus.PENDING_PAYMENT,
    'pending_registration': SubjectStatus.PENDING_PROVISIONING,
    'completed': SubjectStatus.ACTIVE,
    'failed': SubjectStatus.FAILED,
    'cancelled': SubjectStatus.CANCELLED,
}
ADMIN_LAUNCH_STATUS = 'pending_registration'

# Terminal statuses only follow the matching orchestrator event
ADMIN_REQUIRED_EVENTS = {
    'completed': EVENT_PROVISIONING_COMPLETED,
    'failed': EVENT_PROVISIONING_FAILED,
}
# Refused once the subject has been claimed
ADMIN_UNCLAIMED_ONLY = ('pending_payment', 'pending_registration')


class TriggerError(Exception):
    """A trigger request could not be applied"""
    pass


class InvalidAdminStatus(TriggerError):
    """Status outside the admin vocabulary, or not allowed for the subject's history"""
    pass


class SubjectNotFound(TriggerError):
    """No subject with the given id"""
    pass


def _schedule(subject_id: int, source: str) -> bool:
    try:
        scheduled = launch_provisioning(subject_id)
    except ProvisioningLaunchError as e:
        logger.warning(f"⚠️ TRIGGER ({source}): {e} - pending sweep will relaunch subject {subject_id}")
        return False

    if scheduled:
        logger.info(f"🚀 TRIGGER ({source}): Provisioning launched for subject {subject_id}")
    return scheduled


async def on_payment_confirmed(subject_id: int, payment_reference: str,
                               raw_event: Optional[Dict[str, Any]] = None,
                               subjects: Optional[SubjectStore] = None,
                               event_log: Optional[EventLog] = None) -> bool:
    """
    Payment gateway confirmed the order: pending_payment → pending_provisioning, then launch.

    Redelivered confirmations are idempotent: no second payment.succeeded event is written.
    """
    subjects = subjects or SubjectStore()
    event_log = event_log or EventLog()

    moved = await subjects.transition_status(
        subject_id, [SubjectStatus.PENDING_PAYMENT], SubjectStatus.PENDING_PROVISIONING
    )

    if not moved:
        subject = await subjects.get(subject_id)
        if subject is None:
            logger.error(f"❌ TRIGGER (payment): Subject {subject_id} not found for payment {payment_reference}")
            return False
        if subject.status is not SubjectStatus.PENDING_PROVISIONING:
            logger.info(
                f"🔁 TRIGGER (payment): Subject {subject_id} already {subject.status.value} - "
                f"redelivered payment {payment_reference} ignored"
            )
            return False
        # Confirmed earlier but the run may never have been launched
        logger.info(f"🔁 TRIGGER (payment): Redelivered payment {payment_reference} for pending subject {subject_id}")
        return _schedule(subject_id, 'payment')

    payload: Dict[str, Any] = {'payment_reference': payment_reference}
    if raw_event is not None:
        payload['gateway_event'] = raw_event
    await event_log.append(
        subject_id, EVENT_PAYMENT_SUCCEEDED, f"Payment {payment_reference} confirmed", payload
    )
    logger.info(f"💰 TRIGGER (payment): Payment {payment_reference} confirmed for subject {subject_id}")

    return _schedule(subject_id, 'payment')


async def on_admin_status_change(subject_id: int, new_status: str,
                                 subjects: Optional[SubjectStore] = None,
                                 event_log: Optional[EventLog] = None) -> bool:
    """Apply an admin status change; only pending_registration launches provisioning"""
    subjects = subjects or SubjectStore()
    event_log = event_log or EventLog()

    status = ADMIN_STATUS_MAP.get(new_status)
    if status is None:
        raise InvalidAdminStatus(
            f"Invalid status {new_status!r}, expected one of: {', '.join(ADMIN_STATUS_MAP)}"
        )

    subject = await subjects.get(subject_id)
    if subject is None:
        raise SubjectNotFound(f"Subject {subject_id} not found")
    previous_status = subject.status

    required_event = ADMIN_REQUIRED_EVENTS.get(new_status)
    if required_event and not await event_log.has_occurred(subject_id, required_event):
        logger.warning(
            f"⚠️ TRIGGER (admin): Refused {new_status} for subject {subject_id} - no {required_event} event"
        )
        raise InvalidAdminStatus(f"Subject {subject_id} cannot be set to {new_status!r} without {required_event}")

    if new_status in ADMIN_UNCLAIMED_ONLY and await event_log.has_occurred(subject_id, EVENT_PROVISIONING_STARTED):
        logger.warning(
            f"⚠️ TRIGGER (admin): Refused {new_status} for subject {subject_id} - provisioning already started"
        )
        raise InvalidAdminStatus(
            f"Subject {subject_id} was already provisioned once; create a new subject to retry"
        )

    await subjects.update_status(subject_id, status)
    await event_log.append(
        subject_id, EVENT_ADMIN_STATUS_CHANGED,
        f"Admin changed status from {previous_status.value} to {status.value}",
        {'admin_status': new_status, 'previous_status': previous_status.value, 'status': status.value}
    )
    logger.info(f"🛠️ TRIGGER (admin): Subject {subject_id} set to {status.value} ({new_status})")

    if new_status != ADMIN_LAUNCH_STATUS:
        return False
    return _schedule(subject_id, 'admin')
