"""
Basement SSL Reconciliation Scheduler
=====================================

Background service that periodically re-verifies every domain with a
certificate configured and writes the derived status back.

Runs as a background task in the FastAPI application. Runs never overlap:
a trigger that arrives while one is in progress is skipped.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

from ..config import ReconcileConfig
from ..errors import DomainNotFoundError, InstanceNotFoundError
from ..store import Store
from .ssl_verification import DomainVerifier, VerificationResult

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class ReconcileSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    total: int = 0
    errors: int = 0
    counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total": self.total,
            "errors": self.errors,
            "counts": dict(self.counts),
        }


class ReconciliationScheduler:
    """
    Re-derives certificate state for all domains on running instances.

    Usage:
        scheduler = ReconciliationScheduler(store, verifier, ReconcileConfig())
        asyncio.create_task(scheduler.start())
    """

    def __init__(
        self,
        store: Store,
        verifier: DomainVerifier,
        config: Optional[ReconcileConfig] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.config = config or ReconcileConfig()
        self.status = JobStatus.IDLE
        self.last_summary: Optional[ReconcileSummary] = None
        self._running = False

    async def start(self):
        """Start the reconciliation loop."""
        self._running = True
        logger.info(
            f"SSL reconciliation scheduled every {self.config.interval_seconds:.0f}s "
            f"(first run in {self.config.initial_delay_seconds:.0f}s)"
        )

        await asyncio.sleep(self.config.initial_delay_seconds)

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Reconciliation cycle failed: {e}")

            await asyncio.sleep(self.config.interval_seconds)

    def stop(self):
        """Stop the reconciliation loop."""
        self._running = False
        logger.info("SSL reconciliation stopped")

    async def _persist(self, result: VerificationResult) -> None:
        if result.conclusive:
            await self.store.record_verification(
                result.domain_id,
                ssl_status=result.new_status,
                dns_valid=result.dns.valid,
                cert_exists=result.cert_exists,
                reachable=result.tls.reachable,
                expected_ip=result.expected_ip,
            )
            if result.changed:
                logger.info(
                    f"{result.hostname}: {result.previous_status.value} -> {result.new_status.value}",
                    extra={"domain": result.hostname, "ssl_status": result.new_status},
                )
        else:
            await self.store.record_partial_verification(
                result.domain_id,
                dns_valid=result.dns.valid,
                reachable=result.tls.reachable,
                expected_ip=result.expected_ip,
            )

    async def run_once(self) -> Optional[ReconcileSummary]:
        """
        Verify every eligible domain once, sequentially.

        Returns:
            Summary of the run, or None if a run was already in progress
        """
        if self.status == JobStatus.RUNNING:
            logger.info("SSL reconciliation already running, skipping")
            return None

        self.status = JobStatus.RUNNING
        summary = ReconcileSummary(started_at=datetime.now(timezone.utc))
        counts: Counter = Counter()

        try:
            pairs = await self.store.domains_for_reconciliation()
            summary.total = len(pairs)
            logger.info(f"Starting SSL reconciliation: {len(pairs)} domain(s) to verify")

            for index, (domain, instance) in enumerate(pairs):
                try:
                    result = await self.verifier.verify(domain, instance)
                    await self._persist(result)
                    counts[result.new_status.value if result.conclusive else "inconclusive"] += 1
                except Exception as e:
                    summary.errors += 1
                    logger.error(
                        f"Verification failed for {domain.hostname}: {e}",
                        extra={"domain": domain.hostname, "instance_id": instance.id},
                    )

                if index < len(pairs) - 1:
                    await asyncio.sleep(self.config.throttle_seconds)

            summary.counts = dict(counts)
            summary.finished_at = datetime.now(timezone.utc)
            self.last_summary = summary
            logger.info(f"SSL reconciliation complete: {summary.counts} ({summary.errors} error(s))")
            return summary
        finally:
            self.status = JobStatus.IDLE

    async def verify_domain(self, domain_id: int) -> VerificationResult:
        """
        Verify and persist a single domain on demand.

        Raises:
            DomainNotFoundError: no such domain
            InstanceNotFoundError: the owning instance is gone
        """
        domain = await self.store.get_domain(domain_id)
        if not domain:
            raise DomainNotFoundError(domain_id)

        instance = await self.store.get_instance(domain.instance_id)
        if not instance:
            raise InstanceNotFoundError(domain.instance_id)

        result = await self.verifier.verify(domain, instance)
        await self._persist(result)
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "scheduler_running": self._running,
            "interval_seconds": self.config.interval_seconds,
            "last_run": self.last_summary.to_dict() if self.last_summary else None,
        }
