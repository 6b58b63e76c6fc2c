"""
Provisioning Orchestrator - turns a paid order into a registered domain and a hosting account

Architecture:
- Idempotency gate on the event log: a subject is run at most once
- Atomic claim (provisioning.started) as the only cross-run coordination
- Registrar step → hosting step → finalize, each recorded in the event log
- Provider failures become a failed status plus a provisioning.failed event;
  nothing is rolled back automatically
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, Tuple

from provisioning_config import OrchestratorConfig
from services.event_log import EventLog
from services.hosting_panel import (
    HostingAccountProvisioner, generate_one_time_password, provisioning_username
)
from services.registrar import DomainRegistrar
from services.subject_store import SubjectStore
from services.provisioning_models import (
    EVENT_DNS_SETUP_SKIPPED, EVENT_HOSTING_ACCOUNT_CREATED, EVENT_PROVISIONING_COMPLETED,
    EVENT_PROVISIONING_FAILED, EVENT_PROVISIONING_STARTED, IdempotencyConflict, OperationType,
    ProviderError, ProviderErrorKind, ProviderRejected, ProviderResult, ProviderUnavailable,
    ProvisioningSubject, RunOutcome, RunResult, RunState, StorageError, SubjectStatus,
    provider_error_from_exception, registrar_event_type
)

logger = logging.getLogger(__name__)

STEP_REGISTRAR = 'registrar'
STEP_HOSTING = 'hosting'


class ProvisioningOrchestrator:
    """
    Runs the provisioning workflow for one subject.

    Every run ends in a RunResult; no exception crosses run() except programming errors.
    """

    def __init__(self, event_log: EventLog, subjects: SubjectStore, registrar: DomainRegistrar,
                 hosting_panel: HostingAccountProvisioner, config: Optional[OrchestratorConfig] = None):
        self.event_log = event_log
        self.subjects = subjects
        self.registrar = registrar
        self.hosting_panel = hosting_panel
        self.config = config or OrchestratorConfig()

    async def run(self, subject_id: int) -> RunResult:
        logger.info(f"🎯 ORCHESTRATOR: Starting provisioning run for subject {subject_id}")
        result = RunResult(subject_id=subject_id, outcome=RunOutcome.ABORTED)

        try:
            return await self._execute(subject_id, result)

        except IdempotencyConflict as e:
            logger.warning(f"🚫 ORCHESTRATOR: {e}")
            result.outcome = RunOutcome.CONFLICT
            result.error = str(e)
            return result

        except StorageError as e:
            logger.error(
                f"💥 ORCHESTRATOR: Storage failure for subject {subject_id} in state {result.state.value}, "
                f"run aborted: {e}",
                exc_info=True
            )
            result.outcome = RunOutcome.ABORTED
            result.error = str(e)
            return result

    async def _execute(self, subject_id: int, result: RunResult) -> RunResult:
        # Step 1: Idempotency gate
        if await self.event_log.has_occurred(subject_id, EVENT_PROVISIONING_STARTED):
            raise IdempotencyConflict(f"Subject {subject_id} was already started by another run")

        # Step 2: Load the subject
        subject = await self.subjects.get(subject_id)
        if subject is None:
            logger.error(f"❌ ORCHESTRATOR: Subject {subject_id} not found - aborting")
            result.outcome = RunOutcome.ABORTED
            result.error = f"Subject {subject_id} not found"
            return result

        if subject.status is not SubjectStatus.PENDING_PROVISIONING:
            logger.info(f"⏭️ ORCHESTRATOR: Subject {subject_id} is {subject.status.value}, not pending_provisioning - skipping")
            result.outcome = RunOutcome.SKIPPED
            return result

        # Step 3: Atomic claim
        claimed = await self.event_log.claim_start(
            subject_id, f"Provisioning started for {subject.name} ({subject.operation_type.value})"
        )
        if claimed is None:
            raise IdempotencyConflict(f"Subject {subject_id} was claimed by a concurrent run")
        result.state = RunState.STARTED

        # Step 4: Registrar step
        registrar_order: Optional[Tuple[str, str]] = None
        if not subject.operation_type.requires_registrar:
            await self.event_log.append(
                subject_id, EVENT_DNS_SETUP_SKIPPED,
                f"{subject.name} uses an existing domain; registrar step skipped"
            )
            logger.info(f"⏭️ ORCHESTRATOR: Registrar step skipped for existing domain {subject.name}")
        else:
            outcome = await self._registrar_step(subject)
            if isinstance(outcome, ProviderError):
                return await self._finalize_failed(subject, result, STEP_REGISTRAR, outcome, None)

            order_id = outcome.value
            provider = self.registrar.provider_name
            await self.subjects.set_provider_order(subject_id, provider, order_id)
            await self.event_log.append(
                subject_id, registrar_event_type(provider, subject.operation_type),
                f"{subject.operation_type.value.capitalize()} of {subject.name} initiated with {provider}",
                {'order_id': order_id}
            )
            registrar_order = (provider, order_id)
            result.state = RunState.REGISTRAR_STEP_DONE

        # Step 5: Hosting step
        hosting_outcome = await self._hosting_step(subject)
        if isinstance(hosting_outcome, ProviderError):
            return await self._finalize_failed(subject, result, STEP_HOSTING, hosting_outcome, registrar_order)
        result.state = RunState.HOSTING_STEP_DONE

        # Step 6: Finalize, terminal event before status
        await self.event_log.append(
            subject_id, EVENT_PROVISIONING_COMPLETED, f"Provisioning of {subject.name} completed"
        )
        await self.subjects.update_status(subject_id, SubjectStatus.ACTIVE)
        result.state = RunState.COMPLETED
        result.outcome = RunOutcome.COMPLETED
        logger.info(f"🎉 ORCHESTRATOR: Subject {subject_id} ({subject.name}) is active")
        return result

    async def _registrar_step(self, subject: ProvisioningSubject) -> ProviderResult[str]:
        if subject.operation_type is OperationType.REGISTER:
            registrant = await self.subjects.registrant_details(subject.client_id)
            if registrant is None:
                return ProviderError(
                    ProviderErrorKind.REJECTED,
                    f"Client {subject.client_id} has no registrant contact details"
                )
            return await self._call_provider(
                self.registrar.register(subject.name, registrant), 'Registrar register'
            )

        return await self._call_provider(
            self.registrar.transfer(subject.name, subject.transfer_auth_code or ''), 'Registrar transfer'
        )

    async def _hosting_step(self, subject: ProvisioningSubject) -> ProviderResult[Any]:
        plan_name = await self.subjects.plan_name_for_service(subject.service_id)
        if not plan_name:
            return ProviderError(
                ProviderErrorKind.REJECTED, f"No hosting plan found for service {subject.service_id}"
            )

        contact_email = await self.subjects.contact_email(subject.client_id)
        if not contact_email:
            return ProviderError(
                ProviderErrorKind.REJECTED, f"Client {subject.client_id} has no contact email"
            )

        try:
            username = provisioning_username(subject.id)
        except ValueError as e:
            return ProviderError(ProviderErrorKind.REJECTED, str(e))

        outcome = await self._call_provider(
            self.hosting_panel.create_account(
                username, subject.name, plan_name, generate_one_time_password(), contact_email
            ),
            'Hosting panel create_account'
        )
        if isinstance(outcome, ProviderError):
            return outcome

        account = outcome.value
        await self.event_log.append(
            subject.id, EVENT_HOSTING_ACCOUNT_CREATED,
            f"Hosting account {username} created for {subject.name}",
            {'username': username, 'plan': plan_name, 'server_ip': account.server_ip}
        )
        logger.info(f"✅ ORCHESTRATOR: Hosting account {username} created for subject {subject.id}")
        return outcome

    async def _call_provider(self, call: Awaitable[ProviderResult[Any]], label: str) -> ProviderResult[Any]:
        """Bound a provider call by the configured timeout"""
        timeout = self.config.provider_call_timeout
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"⏰ ORCHESTRATOR: {label} timed out after {timeout}s")
            return ProviderError(ProviderErrorKind.UNAVAILABLE, f"{label} timed out after {timeout}s")
        except (ProviderUnavailable, ProviderRejected) as e:
            return provider_error_from_exception(e)
        except Exception as e:
            logger.error(f"💥 ORCHESTRATOR: {label} raised unexpectedly: {type(e).__name__}: {e}", exc_info=True)
            return ProviderError(
                ProviderErrorKind.UNAVAILABLE, f"{label} failed unexpectedly: {type(e).__name__}: {e}"
            )

    async def _finalize_failed(self, subject: ProvisioningSubject, result: RunResult, step: str,
                               error: ProviderError,
                               registrar_order: Optional[Tuple[str, str]]) -> RunResult:
        payload: Dict[str, Any] = {
            'step': step,
            'error': error.message,
            'error_kind': error.kind.value,
            'retryable': error.kind.retryable,
        }
        message = f"Provisioning of {subject.name} failed at {step} step: {error.message}"

        if registrar_order is not None:
            provider, order_id = registrar_order
            payload['requires_manual_reconciliation'] = True
            payload['provider'] = provider
            payload['provider_order_id'] = order_id
            message += (
                f". The {provider} {subject.operation_type.value} (order {order_id}) was not rolled back "
                f"and requires manual reconciliation"
            )
            logger.critical(
                f"🚨 ORCHESTRATOR: Subject {subject.id} failed after {provider} order {order_id} was placed - "
                f"manual reconciliation required"
            )

        await self.event_log.append(subject.id, EVENT_PROVISIONING_FAILED, message, payload)
        await self.subjects.update_status(subject.id, SubjectStatus.FAILED)

        logger.error(f"❌ ORCHESTRATOR: Subject {subject.id} failed at {step}: {error.message} ({error.kind.value})")
        result.outcome = RunOutcome.FAILED
        result.state = RunState.FAILED
        result.failed_step = step
        result.error = error.message
        result.details = payload
        return result
