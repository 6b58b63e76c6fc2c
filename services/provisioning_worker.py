"""
Provisioning worker pool and pending sweep

Runs launched provisioning runs on a bounded asyncio queue drained by a fixed number
of worker tasks. launch_provisioning() never waits: callers (payment webhook, admin
status change) get control back immediately.
"""

import asyncio
import logging
from collections import Counter
from typing import List, Optional, Set

from provisioning_config import WorkerPoolConfig
from services.provisioning_orchestrator import ProvisioningOrchestrator
from services.provisioning_models import StorageError
from services.subject_store import SubjectStore

logger = logging.getLogger(__name__)


class ProvisioningLaunchError(Exception):
    """A run could not be scheduled"""
    pass


class ProvisioningQueueFull(ProvisioningLaunchError):
    """The worker pool queue is at capacity"""
    pass


class WorkerPoolUnavailable(ProvisioningLaunchError):
    """No worker pool is running in this process"""
    pass


class ProvisioningWorkerPool:
    """Bounded pool of provisioning workers"""

    def __init__(self, orchestrator: ProvisioningOrchestrator, config: Optional[WorkerPoolConfig] = None):
        self.orchestrator = orchestrator
        self.config = config or WorkerPoolConfig()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._workers: List[asyncio.Task] = []
        # Subject ids queued or in flight in this process
        self._scheduled: Set[int] = set()
        self.outcomes: Counter = Counter()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def is_scheduled(self, subject_id: int) -> bool:
        return subject_id in self._scheduled

    async def start(self):
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"provisioning-worker-{n}")
            for n in range(self.config.workers)
        ]
        logger.info(f"✅ WORKER POOL: Started {self.config.workers} workers (queue size {self.config.queue_size})")

    def launch(self, subject_id: int) -> bool:
        """
        Schedule a run without waiting for it.

        Returns False when the subject is already queued or running here.
        Raises ProvisioningQueueFull when the queue is at capacity.
        """
        if subject_id in self._scheduled:
            logger.info(f"🔁 WORKER POOL: Subject {subject_id} already scheduled - not queued again")
            return False

        try:
            self._queue.put_nowait(subject_id)
        except asyncio.QueueFull:
            logger.warning(f"⚠️ WORKER POOL: Queue full ({self.config.queue_size}) - subject {subject_id} not launched")
            raise ProvisioningQueueFull(f"Provisioning queue is full, subject {subject_id} not launched")

        self._scheduled.add(subject_id)
        logger.info(f"📥 WORKER POOL: Subject {subject_id} queued ({self._queue.qsize()} waiting)")
        return True

    async def _worker(self, worker_number: int):
        logger.debug(f"👷 WORKER POOL: Worker {worker_number} started")

        while True:
            subject_id = await self._queue.get()

            if subject_id is None:  # Shutdown signal
                self._queue.task_done()
                break

            try:
                result = await self.orchestrator.run(subject_id)
                self.outcomes[result.outcome.value] += 1
                logger.info(f"🏁 WORKER POOL: Subject {subject_id} run finished: {result.outcome.value}")
            except Exception as e:
                self.outcomes['error'] += 1
                logger.error(f"❌ WORKER POOL: Run for subject {subject_id} raised: {e}", exc_info=True)
            finally:
                self._scheduled.discard(subject_id)
                self._queue.task_done()

        logger.debug(f"👷 WORKER POOL: Worker {worker_number} stopped")

    async def join(self):
        """Wait until every queued run has finished"""
        await self._queue.join()

    async def stop(self):
        """Drain queued runs, then stop the workers"""
        if not self._workers:
            return
        for _ in self._workers:
            await self._queue.put(None)
        await asyncio.gather(*self._workers)
        self._workers = []
        logger.info("✅ WORKER POOL: Stopped")


# ====================================================================
# PROCESS-WIDE POOL
# ====================================================================

_worker_pool: Optional[ProvisioningWorkerPool] = None


def set_worker_pool(pool: Optional[ProvisioningWorkerPool]):
    """Register the pool used by launch_provisioning (None to clear)"""
    global _worker_pool
    _worker_pool = pool


def get_worker_pool() -> Optional[ProvisioningWorkerPool]:
    return _worker_pool


def launch_provisioning(subject_id: int) -> bool:
    """Fire-and-forget entry point used by the trigger collaborators"""
    if _worker_pool is None:
        raise WorkerPoolUnavailable(f"No provisioning worker pool running, subject {subject_id} not launched")
    return _worker_pool.launch(subject_id)


# ====================================================================
# PENDING SWEEP
# ====================================================================

async def sweep_pending_subjects(subjects: SubjectStore, pool: ProvisioningWorkerPool, limit: int = 100) -> int:
    """Relaunch subjects left pending_provisioning without a provisioning.started event"""
    subject_ids = await subjects.unclaimed_pending_ids(limit)
    launched = 0

    for subject_id in subject_ids:
        try:
            if pool.launch(subject_id):
                launched += 1
        except ProvisioningQueueFull:
            logger.warning(f"⚠️ SWEEP: Queue full after {launched} launches - remaining subjects wait for the next sweep")
            break

    if subject_ids:
        logger.info(f"🧹 SWEEP: {len(subject_ids)} unclaimed pending subjects found, {launched} launched")
    return launched


async def run_pending_sweep_loop(subjects: SubjectStore, pool: ProvisioningWorkerPool,
                                 interval: float, stop_event: asyncio.Event):
    logger.info(f"🧹 SWEEP: Pending sweep running every {interval}s")

    while not stop_event.is_set():
        try:
            await sweep_pending_subjects(subjects, pool)
        except StorageError as e:
            logger.error(f"❌ SWEEP: Could not read pending subjects: {e}")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue

    logger.info("🧹 SWEEP: Stopped")
