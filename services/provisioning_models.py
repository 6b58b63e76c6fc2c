"""
Provisioning domain types

Subjects, events, run states, provider results and the provisioning error taxonomy
shared by the storage layer, the provider adapters and the orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, Union

# ====================================================================
# EVENT TYPES
# ====================================================================

EVENT_PROVISIONING_STARTED = 'provisioning.started'
EVENT_PROVISIONING_COMPLETED = 'provisioning.completed'
EVENT_PROVISIONING_FAILED = 'provisioning.failed'
EVENT_DNS_SETUP_SKIPPED = 'dns.setup.skipped'
EVENT_HOSTING_ACCOUNT_CREATED = 'hostingpanel.account.created'
EVENT_PAYMENT_SUCCEEDED = 'payment.succeeded'
EVENT_ADMIN_STATUS_CHANGED = 'admin.status.changed'


def registrar_event_type(provider_name: str, operation: 'OperationType') -> str:
    """e.g. hostinger.register.initiated"""
    return f"{provider_name}.{operation.value}.initiated"


# ====================================================================
# SUBJECTS
# ====================================================================

class OperationType(Enum):
    """What the registrar step has to do for a subject"""
    REGISTER = "register"
    TRANSFER = "transfer"
    USE_EXISTING = "existing"

    @property
    def requires_registrar(self) -> bool:
        return self is not OperationType.USE_EXISTING


class SubjectStatus(Enum):
    """Persisted lifecycle status of a provisioning subject"""
    PENDING_PAYMENT = "pending_payment"
    PENDING_PROVISIONING = "pending_provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ProvisioningSubject:
    """A domain order being turned into live infrastructure"""
    id: int
    client_id: int
    service_id: int
    name: str
    operation_type: OperationType
    status: SubjectStatus
    provider_name: Optional[str] = None
    provider_order_id: Optional[str] = None
    transfer_auth_code: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ProvisioningSubject':
        return cls(
            id=row['id'],
            client_id=row['client_id'],
            service_id=row['service_id'],
            name=row['name'],
            operation_type=OperationType(row['operation_type']),
            status=SubjectStatus(row['status']),
            provider_name=row.get('provider_name'),
            provider_order_id=row.get('provider_order_id'),
            transfer_auth_code=row.get('transfer_auth_code'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )


@dataclass(frozen=True)
class ProvisioningEvent:
    """One append-only fact about a subject"""
    id: int
    subject_id: int
    type: str
    message: str
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ProvisioningEvent':
        return cls(
            id=row['id'],
            subject_id=row['subject_id'],
            type=row['type'],
            message=row.get('message') or '',
            payload=row.get('payload'),
            created_at=row.get('created_at'),
        )


@dataclass(frozen=True)
class RegistrantDetails:
    """WHOIS contact data for a domain registration, taken from the client record"""
    name: str
    email: str
    country: str
    state: str = ''
    city: str = ''
    address: str = ''
    postcode: str = ''
    phone: str = ''
    tax_id: Optional[str] = None

    def to_whois_profile(self) -> Dict[str, Any]:
        profile = {
            'name': self.name,
            'email': self.email,
            'country': self.country,
            'state': self.state,
            'city': self.city,
            'address': self.address,
            'postcode': self.postcode,
            'phone': self.phone,
        }
        if self.tax_id:
            profile['tax_id'] = self.tax_id
        return profile


@dataclass(frozen=True)
class AccountHandle:
    """What the hosting panel hands back for a created account"""
    username: str
    domain: str
    server_ip: Optional[str] = None


# ====================================================================
# PROVIDER RESULTS
# ====================================================================

T = TypeVar('T')


class ProviderErrorKind(Enum):
    UNAVAILABLE = "provider_unavailable"
    REJECTED = "provider_rejected"

    @property
    def retryable(self) -> bool:
        return self is ProviderErrorKind.UNAVAILABLE


@dataclass(frozen=True)
class ProviderOk(Generic[T]):
    value: T


@dataclass(frozen=True)
class ProviderError:
    kind: ProviderErrorKind
    message: str


ProviderResult = Union[ProviderOk[T], ProviderError]


# ====================================================================
# RUNS
# ====================================================================

class RunState(Enum):
    """Progress of a single orchestration run"""
    NOT_STARTED = "not_started"
    STARTED = "started"
    REGISTRAR_STEP_DONE = "registrar_step_done"
    HOSTING_STEP_DONE = "hosting_step_done"
    COMPLETED = "completed"
    FAILED = "failed"


class RunOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"    # another run owns the subject
    SKIPPED = "skipped"      # subject not in pending_provisioning
    ABORTED = "aborted"      # storage unavailable, nothing recorded


@dataclass
class RunResult:
    subject_id: int
    outcome: RunOutcome
    state: RunState = RunState.NOT_STARTED
    failed_step: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


# ====================================================================
# ERRORS
# ====================================================================

class ProvisioningError(Exception):
    """Base class for provisioning errors"""
    pass


class ProviderUnavailable(ProvisioningError):
    """Transient failure talking to a provider (network, timeout, 5xx)"""
    pass


class ProviderRejected(ProvisioningError):
    """The provider explicitly declined the request"""
    pass


class StorageError(ProvisioningError):
    """The event log or subject store could not be reached"""
    pass


class IdempotencyConflict(ProvisioningError):
    """Another run already owns this subject"""
    pass


def provider_error_from_exception(error: ProvisioningError) -> ProviderError:
    """Convert an adapter-internal exception into a tagged result"""
    if isinstance(error, ProviderRejected):
        return ProviderError(ProviderErrorKind.REJECTED, str(error))
    return ProviderError(ProviderErrorKind.UNAVAILABLE, str(error))
