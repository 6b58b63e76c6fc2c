"""
Provisioning subject persistence and read-only collaborator lookups
"""

import logging
from typing import Iterable, List, Optional

import database
from services.provisioning_models import (
    OperationType, ProvisioningSubject, RegistrantDetails, SubjectStatus
)

logger = logging.getLogger(__name__)


class SubjectStore:
    """Mutable subject records plus plan/client data owned by other components"""

    async def create(self, client_id: int, service_id: int, name: str, operation_type: OperationType,
                     status: SubjectStatus = SubjectStatus.PENDING_PAYMENT,
                     transfer_auth_code: Optional[str] = None) -> int:
        subject_id = await database.create_provisioning_subject(
            client_id, service_id, name, operation_type.value,
            status=status.value, transfer_auth_code=transfer_auth_code
        )
        logger.info(f"✅ SUBJECT STORE: Created subject {subject_id} ({operation_type.value} {name})")
        return subject_id

    async def get(self, subject_id: int) -> Optional[ProvisioningSubject]:
        row = await database.get_provisioning_subject(subject_id)
        return ProvisioningSubject.from_row(row) if row else None

    async def update_status(self, subject_id: int, status: SubjectStatus) -> bool:
        return await database.update_subject_status(subject_id, status.value)

    async def transition_status(self, subject_id: int, from_statuses: Iterable[SubjectStatus],
                                to_status: SubjectStatus) -> bool:
        """Move to to_status only from one of from_statuses; False when the subject was elsewhere"""
        return await database.transition_subject_status(
            subject_id, [status.value for status in from_statuses], to_status.value
        )

    async def set_provider_order(self, subject_id: int, provider_name: str, provider_order_id: str) -> bool:
        return await database.update_subject_provider_order(subject_id, provider_name, provider_order_id)

    async def unclaimed_pending_ids(self, limit: int = 100) -> List[int]:
        return await database.get_unclaimed_pending_subject_ids(limit)

    # Collaborator data

    async def plan_name_for_service(self, service_id: int) -> Optional[str]:
        return await database.get_service_plan_name(service_id)

    async def contact_email(self, client_id: int) -> Optional[str]:
        client = await database.get_client_contact(client_id)
        if not client:
            return None
        return client.get('email') or None

    async def registrant_details(self, client_id: int) -> Optional[RegistrantDetails]:
        client = await database.get_client_contact(client_id)
        if not client or not client.get('email'):
            return None
        return RegistrantDetails(
            name=client.get('name') or '',
            email=client['email'],
            country=client.get('country') or '',
            state=client.get('state') or '',
            city=client.get('city') or '',
            address=client.get('address') or '',
            postcode=client.get('postcode') or '',
            phone=client.get('phone') or '',
            tax_id=client.get('tax_id'),
        )
