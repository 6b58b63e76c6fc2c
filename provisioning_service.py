#!/usr/bin/env python3
"""
Provisioning service - runs the provisioning worker pool and the pending sweep in one event loop
"""

import sys
import signal
import asyncio
import logging

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# SECURITY FIX: Prevent httpx from logging request URLs
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

import database
from performance_monitor import log_performance_summary
from provisioning_config import (
    ConfigurationError, DatabaseConfig, HostingPanelConfig, OrchestratorConfig, RegistrarConfig,
    WorkerPoolConfig
)
from services.event_log import EventLog
from services.hosting_panel import WHMAccountProvisioner
from services.provisioning_models import StorageError
from services.provisioning_orchestrator import ProvisioningOrchestrator
from services.provisioning_worker import ProvisioningWorkerPool, run_pending_sweep_loop, set_worker_pool
from services.registrar import HostingerRegistrar
from services.subject_store import SubjectStore

# Global shutdown flag
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")


def build_worker_pool(registrar: HostingerRegistrar, hosting_panel: WHMAccountProvisioner,
                      pool_config: WorkerPoolConfig) -> ProvisioningWorkerPool:
    orchestrator = ProvisioningOrchestrator(
        event_log=EventLog(),
        subjects=SubjectStore(),
        registrar=registrar,
        hosting_panel=hosting_panel,
        config=OrchestratorConfig.from_env(),
    )
    return ProvisioningWorkerPool(orchestrator, pool_config)


async def main_service_loop() -> bool:
    database.configure_database(DatabaseConfig.from_env())
    await database.init_database()

    registrar = HostingerRegistrar(RegistrarConfig.from_env())
    hosting_panel = WHMAccountProvisioner(HostingPanelConfig.from_env())
    pool_config = WorkerPoolConfig.from_env()

    pool = build_worker_pool(registrar, hosting_panel, pool_config)
    await pool.start()
    set_worker_pool(pool)

    stop_event = asyncio.Event()
    sweep_task = asyncio.create_task(
        run_pending_sweep_loop(SubjectStore(), pool, pool_config.sweep_interval, stop_event)
    )
    logger.info("✅ Provisioning service running")

    try:
        status_counter = 0
        while not shutdown_requested:
            await asyncio.sleep(1)
            status_counter += 1
            if status_counter % 300 == 0:  # Every 5 minutes
                logger.info(f"⏰ Provisioning service running - {pool.queued} runs queued, outcomes: {dict(pool.outcomes)}")
                log_performance_summary()

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    finally:
        set_worker_pool(None)
        stop_event.set()
        await sweep_task
        await pool.stop()
        await registrar.close()
        database.close_connection_pool()
        logger.info("✅ Cleanup completed")


def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting provisioning service...")

    try:
        result = asyncio.run(main_service_loop())
        logger.info("✅ Provisioning service stopped normally" if result else "⚠️ Provisioning service stopped with error")
        return result
    except (ConfigurationError, StorageError) as e:
        logger.error(f"💥 Provisioning service could not start: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
