"""
Run coordinator for the reconciliation engine.

The RunCoordinator executes a policy document against hosts: one strictly
sequential pass per host, hosts in parallel on a bounded worker pool, and
every failure recorded in the RunReport rather than raised.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .models import (
    ErrorDetail, ExecutionResult, HandlerResult, PolicyDocument, ResultStatus, RunReport
)
from .notifications import HandlerRunner, NotificationQueue
from .reconciler import Reconciler
from ..hosts.base import Host

logger = logging.getLogger(__name__)


class RunCoordinator:
    """
    Main orchestrator class for applying a policy document.

    The document is frozen and shared read-only by every host run; each
    run owns its own reconciler, notification queue and report.
    """

    def __init__(self, document: PolicyDocument,
                 timeout: float = 30.0,
                 dry_run: bool = False,
                 continue_on_error: bool = False,
                 on_report: Optional[Callable[[RunReport], None]] = None):
        """
        Initialize the coordinator.

        Args:
            document: Validated policy document
            timeout: Per-operation timeout in seconds
            dry_run: Probe only; report what would change
            continue_on_error: Never halt, even on fatal resources
            on_report: Called with each finished report (e.g. history store)
        """
        self.document = document
        self.timeout = timeout
        self.dry_run = dry_run
        self.continue_on_error = continue_on_error
        self.on_report = on_report

    def run(self, host: Host, cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Apply the document to one host.

        Resources run in document order. A failure is recorded and the run
        continues unless the resource is fatal. Notified handlers fire once
        each after the resource pass. Cancellation is honoured between
        resources only.

        Returns:
            RunReport: Complete run record; this method never raises
        """
        run_id = str(uuid.uuid4())
        started_at = datetime.now(timezone.utc)
        results: List[ExecutionResult] = []
        halted_by: Optional[str] = None
        cancelled = False

        logger.info("Run %s: applying %s to %s%s", run_id, self.document.name or "policy",
                    host.name, " (dry run)" if self.dry_run else "")

        reconciler = Reconciler(host, timeout=self.timeout, dry_run=self.dry_run)
        queue = NotificationQueue()

        for resource in self.document.resources:
            if cancel is not None and cancel.is_set():
                logger.warning("Run %s cancelled before %s", run_id, resource.id)
                cancelled = True
                break

            result = reconciler.check(resource)
            results.append(result)
            queue.record(result, resource.notify)

            if (result.status == ResultStatus.FAILED and resource.fatal
                    and not self.continue_on_error):
                logger.error("Run %s halted: fatal resource %s failed", run_id, resource.id)
                halted_by = resource.id
                break

        if cancel is not None and cancel.is_set():
            cancelled = True

        handler_results = self._fire_handlers(host, queue, halted_by, cancelled)

        report = RunReport(
            run_id=run_id,
            host=host.name,
            policy_name=self.document.name,
            dry_run=self.dry_run,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            results=results,
            handler_results=handler_results,
            halted_by=halted_by,
            cancelled=cancelled,
        )

        if self.on_report is not None:
            try:
                self.on_report(report)
            except Exception:
                logger.exception("Failed to record report for run %s", run_id)

        return report

    def run_many(self, hosts: List[Host], max_workers: int = 4,
                 cancel: Optional[threading.Event] = None) -> Dict[str, RunReport]:
        """
        Apply the document to several hosts in parallel.

        Returns:
            Dict[str, RunReport]: Reports keyed by host name, in input order

        Raises:
            ValueError: If two hosts share a name
        """
        if not hosts:
            return {}

        names = [host.name for host in hosts]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate host names: {', '.join(duplicates)}")

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(hosts)))) as pool:
            futures = [(host, pool.submit(self.run, host, cancel)) for host in hosts]
            return {host.name: future.result() for host, future in futures}

    def _fire_handlers(self, host: Host, queue: NotificationQueue,
                       halted_by: Optional[str], cancelled: bool) -> List[HandlerResult]:
        runner = HandlerRunner(host, self.document.handlers, timeout=self.timeout)
        handler_results = []

        for name in queue.due():
            if halted_by is not None:
                handler_results.append(runner.skip(name, f"run halted by {halted_by}"))
            elif cancelled:
                handler_results.append(runner.skip(name, "run cancelled"))
            elif self.dry_run:
                handler_results.append(runner.skip(name, "would run (dry run)"))
            else:
                try:
                    handler_results.append(runner.fire(name))
                except Exception as e:
                    logger.exception("Unexpected error in handler %s", name)
                    handler_results.append(HandlerResult(
                        name=name,
                        status=ResultStatus.FAILED,
                        message=str(e),
                        error=ErrorDetail(type="HandlerError", message=str(e)),
                    ))

        return handler_results
