"""
Action Dispatch Registry.

Maps an ``action_type`` to a handler ``fn(config, invocation) -> result``.
Handlers run on a worker pool so each call can be bounded by a timeout; the
registry never raises to its caller, it reports an :class:`ActionOutcome`.

Built-in handlers:

* ``create_insight``, ``send_notification``, ``create_task``: logged hand-offs
  to the downstream pipeline.
* ``webhook``: HTTP POST of the rule/signal envelope to ``config["url"]``.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from ..core.errors import log_exception

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_TIMEOUT = "timeout"


@dataclass(frozen=True)
class ActionInvocation:
    """What a handler knows about the rule run that triggered it."""

    rule_id: str
    rule_version_id: str
    action_id: str
    agency_id: str
    signal: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionOutcome:
    outcome: str
    result: Any = None
    error: Optional[str] = None
    duration_ms: int = 0


ActionHandler = Callable[[Dict[str, Any], ActionInvocation], Any]


class ActionDispatchRegistry:
    def __init__(self, max_workers: int = 4) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self._handlers: Dict[str, ActionHandler] = {}
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def register(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def unregister(self, action_type: str) -> None:
        self._handlers.pop(action_type, None)

    def get(self, action_type: str) -> Optional[ActionHandler]:
        return self._handlers.get(action_type)

    def action_types(self) -> list[str]:
        return sorted(self._handlers)

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="rule-action")
            return self._executor

    def dispatch(
        self,
        action_type: str,
        config: Dict[str, Any],
        invocation: ActionInvocation,
        *,
        timeout_sec: float,
    ) -> ActionOutcome:
        handler = self._handlers.get(action_type)
        if handler is None:
            return ActionOutcome(OUTCOME_FAILED, error=f"no handler registered for action type '{action_type}'")
        started = time.monotonic()
        future = self._pool().submit(handler, dict(config or {}), invocation)
        try:
            result = future.result(timeout=timeout_sec)
        except FutureTimeoutError:
            future.cancel()
            self.logger.warning(
                "Action timed out type=%s rule_id=%s action_id=%s timeout=%ss",
                action_type,
                invocation.rule_id,
                invocation.action_id,
                timeout_sec,
            )
            return ActionOutcome(OUTCOME_TIMEOUT, error=f"timed out after {timeout_sec}s", duration_ms=_elapsed_ms(started))
        except Exception as exc:
            log_exception(
                self.logger,
                "Action failed",
                extra={"type": action_type, "rule_id": invocation.rule_id, "action_id": invocation.action_id},
                exc=exc,
            )
            return ActionOutcome(OUTCOME_FAILED, error=str(exc) or exc.__class__.__name__, duration_ms=_elapsed_ms(started))
        return ActionOutcome(OUTCOME_SUCCEEDED, result=result, duration_ms=_elapsed_ms(started))

    def shutdown(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


_handoff_logger = logging.getLogger("rule_actions")


def _logged_handoff(action_type: str) -> ActionHandler:
    def _handler(config: Dict[str, Any], invocation: ActionInvocation) -> Dict[str, Any]:
        _handoff_logger.info(
            "Rule action %s agency=%s rule_id=%s signal_id=%s config=%s",
            action_type,
            invocation.agency_id,
            invocation.rule_id,
            invocation.signal.get("id"),
            config,
        )
        return {"action_type": action_type, "queued": True}

    return _handler


DEFAULT_WEBHOOK_TIMEOUT_SEC = 5.0


def webhook_handler(config: Dict[str, Any], invocation: ActionInvocation) -> Dict[str, Any]:
    url = config.get("url")
    if not url:
        raise ValueError("webhook action requires a url")
    body = {
        "rule_id": invocation.rule_id,
        "rule_version_id": invocation.rule_version_id,
        "action_id": invocation.action_id,
        "agency_id": invocation.agency_id,
        "signal": invocation.signal,
    }
    resp = requests.post(
        url,
        json=body,
        headers=config.get("headers") or {},
        timeout=float(config.get("timeout_sec") or DEFAULT_WEBHOOK_TIMEOUT_SEC),
    )
    resp.raise_for_status()
    return {"status_code": resp.status_code}


def build_default_registry() -> ActionDispatchRegistry:
    registry = ActionDispatchRegistry()
    for action_type in ("create_insight", "send_notification", "create_task"):
        registry.register(action_type, _logged_handoff(action_type))
    registry.register("webhook", webhook_handler)
    return registry


action_registry = build_default_registry()
