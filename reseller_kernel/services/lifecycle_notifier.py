"""
LifecycleNotifier -- best-effort webhook delivery with a guaranteed audit row.

Responsibility:
    POSTs create_user / delete_user / update_user_status payloads to the one
    configured endpoint and writes exactly one LifecycleEvent per attempt,
    whatever happens: 2xx, non-2xx, timeout, connection failure, or no
    endpoint configured at all.

Architecture position:
    Kernel > Services.  Unlike the flush-only services, the notifier owns
    its own short transactions (one session_scope per record), because the
    triggering unit of work has already committed by the time it runs.

Invariants enforced:
    - notify() never raises and never blocks on the network when dispatch
      is "background".
    - One attempt, one record.  No automatic retries.
    - Secret credentials are sent but never stored or logged.

Failure modes:
    - Delivery problems become outcome values on the record and a
      NotificationFailure in the log, nothing more.
    - If even the record write fails, the error is logged.
"""

import threading
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any
from uuid import UUID

import requests
from sqlalchemy.orm import Session, sessionmaker

from reseller_config.schema import DispatchMode, WebhookSettings
from reseller_kernel.db.engine import session_scope
from reseller_kernel.domain.clock import Clock, SystemClock
from reseller_kernel.domain.dtos import LifecycleEventInfo, PendingNotification
from reseller_kernel.exceptions import NotificationFailure
from reseller_kernel.logging_config import LogContext, get_logger
from reseller_kernel.models.lifecycle_event import (
    NOT_CONFIGURED_URL,
    DeliveryOutcome,
    LifecycleEvent,
)
from reseller_kernel.utils.serialization import canonicalize_json, hash_payload, to_jsonable

logger = get_logger("services.lifecycle_notifier")

NOT_CONFIGURED_BODY = "Webhook URL not configured, no external call made."

# Stored response bodies are truncated to this many characters
MAX_STORED_BODY = 10_000

_REDACTED = "***"


class LifecycleNotifier:
    """
    Fire-and-forget webhook sender.

    Args:
        session_factory: Factory for the sessions that write records.
        settings: Endpoint, secret, timeout and dispatch mode.
        clock: Timestamp source for sent_at.
        http: Object with a requests-compatible ``post``; defaults to a
            ``requests.Session``.
        executor: Thread pool for background dispatch; created on demand.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: WebhookSettings,
        clock: Clock | None = None,
        http: Any = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock or SystemClock()
        self._http = http if http is not None else requests.Session()
        self._executor = executor
        self._owns_executor = executor is None
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    @property
    def settings(self) -> WebhookSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def notify(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        target_account_id: UUID | None = None,
    ) -> None:
        """Dispatch one event.  Never raises."""
        context = LogContext.get_all()
        if self._settings.dispatch is DispatchMode.INLINE:
            self._deliver_quietly(event_type, payload, target_account_id, context)
            return
        try:
            future = self._get_executor().submit(
                self._deliver_quietly, event_type, payload, target_account_id, context
            )
        except RuntimeError:
            # Executor already shut down; deliver on the caller's thread.
            logger.warning(
                "lifecycle_executor_unavailable",
                extra={"event_type": event_type},
            )
            self._deliver_quietly(event_type, payload, target_account_id, context)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def notify_all(self, notifications: list[PendingNotification]) -> None:
        for item in notifications:
            self.notify(item.event_type, item.payload, item.target_account_id)

    def deliver(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        target_account_id: UUID | None = None,
    ) -> LifecycleEventInfo:
        """
        Attempt delivery synchronously and write the record.

        Raises only if the record itself cannot be written; notify()
        shields callers from that too.
        """
        body = to_jsonable(dict(payload))
        sent_at = self._clock.now()

        if not self._settings.is_configured:
            logger.info(
                "lifecycle_webhook_not_configured",
                extra={"event_type": event_type},
            )
            return self._record(
                event_type=event_type,
                target_url=NOT_CONFIGURED_URL,
                payload=body,
                request_headers={},
                outcome=DeliveryOutcome.NOT_CONFIGURED,
                status_code=200,
                response_body=NOT_CONFIGURED_BODY,
                failure_reason=None,
                target_account_id=target_account_id,
                sent_at=sent_at,
                duration_ms=0,
            )

        url = self._settings.url
        headers = self._build_headers()
        status_code: int | None = None
        response_body: str | None = None
        failure_reason: str | None = None

        start = time.monotonic()
        try:
            response = self._http.post(
                url,
                data=canonicalize_json(body).encode("utf-8"),
                headers=headers,
                timeout=self._settings.timeout_seconds,
            )
            status_code = response.status_code
            response_body = (response.text or "")[:MAX_STORED_BODY]
            outcome = (
                DeliveryOutcome.DELIVERED
                if 200 <= status_code < 300
                else DeliveryOutcome.REJECTED
            )
            if outcome is DeliveryOutcome.REJECTED:
                failure_reason = f"HTTP {status_code}"
        except requests.exceptions.Timeout as exc:
            outcome = DeliveryOutcome.TIMED_OUT
            failure_reason = f"Timed out after {self._settings.timeout_seconds}s: {exc}"
        except requests.exceptions.RequestException as exc:
            outcome = DeliveryOutcome.FAILED
            failure_reason = f"{type(exc).__name__}: {exc}"
        except Exception as exc:  # any transport error is an outcome, not a crash
            outcome = DeliveryOutcome.FAILED
            failure_reason = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "lifecycle_webhook_unexpected_error",
                extra={"event_type": event_type},
            )
        duration_ms = int((time.monotonic() - start) * 1000)

        if outcome is DeliveryOutcome.DELIVERED:
            logger.info(
                "lifecycle_webhook_delivered",
                extra={
                    "event_type": event_type,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )
        else:
            failure = NotificationFailure(event_type, url, failure_reason or "")
            logger.warning(
                "lifecycle_webhook_failed",
                extra={
                    "event_type": event_type,
                    "error_code": failure.code,
                    "outcome": outcome.value,
                    "status_code": status_code,
                    "failure_reason": failure.reason,
                    "duration_ms": duration_ms,
                },
            )

        return self._record(
            event_type=event_type,
            target_url=url,
            payload=body,
            request_headers=_redact(headers),
            outcome=outcome,
            status_code=status_code,
            response_body=response_body,
            failure_reason=failure_reason,
            target_account_id=target_account_id,
            sent_at=sent_at,
            duration_ms=duration_ms,
        )

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for in-flight background deliveries.  True if all finished."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=wait_for_pending)
            self._executor = None
        close = getattr(self._http, "close", None)
        if callable(close):
            close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._settings.max_workers,
                    thread_name_prefix="lifecycle-webhook",
                )
                self._owns_executor = True
            return self._executor

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver_quietly(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        target_account_id: UUID | None,
        context: dict[str, str],
    ) -> LifecycleEventInfo | None:
        with LogContext.bind(**context):
            try:
                return self.deliver(event_type, payload, target_account_id)
            except Exception:
                logger.exception(
                    "lifecycle_event_record_failed",
                    extra={
                        "event_type": event_type,
                        "target_account_id": str(target_account_id)
                        if target_account_id
                        else None,
                    },
                )
                return None

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.secret:
            headers["Authorization"] = f"Bearer {self._settings.secret}"
            headers["apikey"] = self._settings.secret
        return headers

    def _record(
        self,
        *,
        event_type: str,
        target_url: str,
        payload: dict[str, Any],
        request_headers: dict[str, str],
        outcome: DeliveryOutcome,
        status_code: int | None,
        response_body: str | None,
        failure_reason: str | None,
        target_account_id: UUID | None,
        sent_at,
        duration_ms: int | None,
    ) -> LifecycleEventInfo:
        with session_scope(self._session_factory) as session:
            row = LifecycleEvent(
                event_type=event_type,
                target_url=target_url,
                payload=payload,
                payload_hash=hash_payload(payload),
                request_headers=request_headers,
                outcome=outcome.value,
                response_status_code=status_code,
                response_body=response_body,
                failure_reason=failure_reason,
                target_account_id=target_account_id,
                sent_at=sent_at,
                duration_ms=duration_ms,
            )
            session.add(row)
            session.flush()
            info = LifecycleEventInfo.from_model(row)
        logger.info(
            "lifecycle_event_recorded",
            extra={
                "lifecycle_event_id": str(info.id),
                "event_type": event_type,
                "outcome": outcome.value,
            },
        )
        return info


def _redact(headers: Mapping[str, str]) -> dict[str, str]:
    redacted = dict(headers)
    if "Authorization" in redacted:
        redacted["Authorization"] = f"Bearer {_REDACTED}"
    if "apikey" in redacted:
        redacted["apikey"] = _REDACTED
    return redacted
