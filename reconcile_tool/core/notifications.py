"""
Deferred handler notification and dispatch.

Changed resources notify handlers by name. After the resource pass each
notified handler fires once, in the order it was first notified.
"""

import logging
from typing import Dict, List

from .errors import HandlerError, HostError, OperationTimeoutError
from .models import (
    ErrorDetail, ExecutionResult, HandlerAction, HandlerActionType, HandlerResult,
    ResultStatus
)
from ..hosts.base import Host

logger = logging.getLogger(__name__)

_SERVICE_STATES = {
    HandlerActionType.RESTART: "restarted",
    HandlerActionType.RELOAD: "reloaded",
    HandlerActionType.START: "started",
    HandlerActionType.STOP: "stopped",
}


class NotificationQueue:
    """Ordered, de-duplicated set of handler names due to fire."""

    def __init__(self):
        self._due: Dict[str, None] = {}

    def record(self, result: ExecutionResult, notify: List[str]) -> None:
        """Notify handlers if the result reports a change."""
        if result.status != ResultStatus.CHANGED:
            return
        for name in notify:
            if name not in self._due:
                logger.debug("Handler %s notified by %s", name, result.resource_id)
            self._due.setdefault(name, None)

    def due(self) -> List[str]:
        return list(self._due)


class HandlerRunner:
    """Executes handler actions against a host."""

    def __init__(self, host: Host, handlers: Dict[str, HandlerAction], timeout: float = 30.0):
        self.host = host
        self.handlers = handlers
        self.timeout = timeout

    def fire(self, name: str) -> HandlerResult:
        """Run one handler. Failures are returned as data, never retried."""
        handler = self.handlers[name]
        try:
            self._execute(handler)
        except (HandlerError, OperationTimeoutError) as e:
            return self._failed(name, e.code, e.message)
        except (HostError, OSError) as e:
            return self._failed(name, HandlerError.code, str(e))

        logger.info("Handler %s fired on %s", name, self.host.name)
        return HandlerResult(name=name, status=ResultStatus.CHANGED,
                             message=f"{handler.action.value} completed")

    def skip(self, name: str, reason: str) -> HandlerResult:
        return HandlerResult(name=name, status=ResultStatus.SKIPPED, message=reason)

    def _execute(self, handler: HandlerAction) -> None:
        if handler.action == HandlerActionType.COMMAND:
            result = self.host.run_command(list(handler.command), self.timeout)
            if result['exit_code'] != 0:
                raise HandlerError(
                    f"command exited with {result['exit_code']}: "
                    f"{(result.get('stderr') or '').strip()}"
                )
            return
        self.host.service_set_state(handler.service, _SERVICE_STATES[handler.action], self.timeout)

    def _failed(self, name: str, code: str, message: str) -> HandlerResult:
        logger.warning("HandlerError %s: %s", name, message)
        return HandlerResult(
            name=name,
            status=ResultStatus.FAILED,
            message=message,
            error=ErrorDetail(type=code, message=message),
        )
