"""Account webhook notifications.

Accounts can register a webhook URL to be told when a scheduled job runs
(success or failure). Payloads carry an HMAC-SHA256 signature header.
Deliveries are logged to `webhook_deliveries` and pruned periodically.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from seomcp.db import get_sessionmaker
from seomcp.models import User, WebhookDelivery


logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10
MAX_RETRIES = 2
DELIVERY_RETENTION_DAYS = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _is_private_host(hostname: str) -> bool:
    h = hostname.lower()
    if h.startswith("[") and h.endswith("]"):
        h = h[1:-1]
    if h in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}:
        return True
    if h.startswith(("10.", "192.168.", "169.254.")):
        return True
    if h.startswith("172."):
        parts = h.split(".")
        if len(parts) > 1 and parts[1].isdigit() and 16 <= int(parts[1]) <= 31:
            return True
    # IPv6 unique-local and link-local.
    if ":" in h and h.startswith(("fc", "fd", "fe80")):
        return True
    # Cloud metadata endpoints.
    return h.endswith(".internal")


def validate_webhook_url(url: str) -> Tuple[bool, Optional[str]]:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False, "Invalid URL format"
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        return False, "Webhook URL must use HTTPS or HTTP"
    if _is_private_host(parsed.hostname):
        return False, "Webhook URL cannot point to private/internal addresses"
    return True, None


class WebhookNotifier:
    def __init__(
        self,
        database_url: str,
        *,
        signing_secret: str,
        session: Optional[requests.Session] = None,
        max_workers: int = 2,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self.database_url = database_url
        self._secret = signing_secret
        self._http = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")
        self._backoff = float(retry_backoff_seconds)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def get_webhook_url(self, user_id: str) -> Optional[str]:
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            user = s.get(User, str(user_id))
            return user.webhook_url if user is not None and user.webhook_url else None

    def set_webhook_url(self, user_id: str, url: Optional[str]) -> bool:
        if url:
            ok, err = validate_webhook_url(url)
            if not ok:
                raise ValueError(err)
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            user = s.get(User, str(user_id))
            if user is None:
                return False
            user.webhook_url = url or None
            s.commit()
            return True

    def sign(self, user_id: str, body: str) -> str:
        key = f"{self._secret}:webhook:{user_id}".encode("utf-8")
        return hmac.new(key, body.encode("utf-8"), hashlib.sha256).hexdigest()

    def _log_delivery(
        self,
        user_id: str,
        event: str,
        url: str,
        status_code: Optional[int],
        success: bool,
        error: Optional[str],
        duration_ms: float,
    ) -> None:
        sm = get_sessionmaker(self.database_url)
        try:
            with sm() as s:
                s.add(
                    WebhookDelivery(
                        user_id=str(user_id),
                        event=event,
                        url=url,
                        status_code=status_code,
                        success=bool(success),
                        error=error,
                        duration_ms=float(duration_ms),
                    )
                )
                s.commit()
        except SQLAlchemyError:
            logger.exception("failed to log webhook delivery", extra={"user_id": user_id})

    def send_webhook(self, user_id: str, event: str, data: Dict[str, Any]) -> bool:
        """Deliver one event with retries on 5xx/network errors. Blocking."""
        url = self.get_webhook_url(user_id)
        if not url:
            return False

        timestamp = _utcnow().isoformat() + "Z"
        body = json.dumps({"event": event, "timestamp": timestamp, "data": data}, default=str)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "seomcp-gateway/webhook",
            "X-Webhook-Event": event,
            "X-Webhook-Signature": f"sha256={self.sign(user_id, body)}",
            "X-Webhook-Timestamp": timestamp,
        }

        for attempt in range(MAX_RETRIES + 1):
            started = time.monotonic()
            try:
                resp = self._http.post(url, data=body, headers=headers, timeout=WEBHOOK_TIMEOUT_SECONDS)
                duration_ms = (time.monotonic() - started) * 1000
                # 4xx is the receiver's problem; only 5xx is retried.
                if resp.status_code < 500:
                    ok = 200 <= resp.status_code < 300
                    self._log_delivery(user_id, event, url, resp.status_code, ok, None, duration_ms)
                    return ok
                if attempt == MAX_RETRIES:
                    self._log_delivery(
                        user_id, event, url, resp.status_code, False, f"HTTP {resp.status_code}", duration_ms
                    )
            except requests.exceptions.RequestException as exc:
                duration_ms = (time.monotonic() - started) * 1000
                if attempt == MAX_RETRIES:
                    self._log_delivery(user_id, event, url, None, False, str(exc), duration_ms)
                    logger.warning(
                        "webhook failed after %d attempts: %s", MAX_RETRIES + 1, exc, extra={"user_id": user_id}
                    )
            if attempt < MAX_RETRIES:
                time.sleep(self._backoff * (attempt + 1))
        return False

    def _submit(self, user_id: str, event: str, data: Dict[str, Any]) -> Future:
        future = self._executor.submit(self.send_webhook, user_id, event, data)
        future.add_done_callback(_log_future_error)
        return future

    def notify_scheduled_job_result(
        self,
        owner_id: str,
        job_id: str,
        tool_name: str,
        target: str,
        score: Optional[int],
        success: bool,
        error: Optional[str] = None,
    ) -> Future:
        """Queue a scheduled-run notification; returns immediately."""
        return self._submit(
            owner_id,
            "scheduled_job.completed" if success else "scheduled_job.failed",
            {
                "schedule_id": job_id,
                "tool": tool_name,
                "site_url": target,
                "health_score": score,
                "success": bool(success),
                "error": error or None,
            },
        )

    def send_test_webhook(self, user_id: str) -> Future:
        return self._submit(
            user_id,
            "test",
            {"message": "This is a test webhook from the SEO MCP gateway", "timestamp": _utcnow().isoformat() + "Z"},
        )

    def get_deliveries(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            q = (
                select(WebhookDelivery)
                .where(WebhookDelivery.user_id == str(user_id))
                .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
                .limit(min(int(limit), 50))
            )
            return [d.to_dict() for d in s.execute(q).scalars().all()]

    def prune_stale_deliveries(self, *, older_than_days: int = DELIVERY_RETENTION_DAYS) -> int:
        cutoff = _utcnow() - timedelta(days=int(older_than_days))
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            res = s.execute(delete(WebhookDelivery).where(WebhookDelivery.created_at < cutoff))
            s.commit()
            return int(res.rowcount or 0)


def _log_future_error(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("webhook delivery crashed", exc_info=exc)
