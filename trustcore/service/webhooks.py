from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union
from urllib.parse import urlparse

import httpx

from trustcore.logging import get_logger
from trustcore.service import generator
from trustcore.service.errors import NotFoundError, ValidationError
from trustcore.service.store import CredentialStore
from trustcore.storage.models import WebhookEndpoint, WebhookStatus, new_id, utcnow

logger = get_logger(__name__)

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"
SIGNATURE_HEADER = "X-Webhook-Signature"
TEST_EVENT = "test"


@dataclass
class WebhookView:
    """Read model of an endpoint. Never carries the signing secret."""

    id: str
    organization_id: str
    name: str
    url: str
    events: List[str]
    status: WebhookStatus
    failure_count: int
    last_triggered_at: Optional[datetime]
    created_at: datetime


@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class WebhookService:
    def __init__(
        self,
        store: CredentialStore,
        *,
        failure_threshold: int = 5,
        signature_tolerance_seconds: int = 300,
        delivery_timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.failure_threshold = failure_threshold
        self.signature_tolerance_seconds = signature_tolerance_seconds
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self.transport = transport
        self._clock = clock or utcnow

    def issue(self) -> str:
        return SECRET_PREFIX + generator.random_token(generator.WEBHOOK_SECRET_BYTES)

    def _view(self, endpoint: WebhookEndpoint) -> WebhookView:
        return WebhookView(
            id=endpoint.id,
            organization_id=endpoint.organization_id,
            name=endpoint.name,
            url=endpoint.url,
            events=list(endpoint.events),
            status=endpoint.status(self.failure_threshold),
            failure_count=endpoint.failure_count,
            last_triggered_at=endpoint.last_triggered_at,
            created_at=endpoint.created_at,
        )

    def create_endpoint(
        self, organization_id: str, name: str, url: str, events: List[str]
    ) -> Tuple[WebhookView, str]:
        """Create an endpoint and return its signing secret, the only time it is exposed."""
        clean_name = _clean_name(name)
        clean_url = _clean_url(url)
        clean_events = _clean_events(events)

        secret = self.issue()
        endpoint = self.store.create_webhook(
            WebhookEndpoint(
                id=new_id(),
                organization_id=organization_id,
                name=clean_name,
                url=clean_url,
                events=clean_events,
                signing_secret=secret,
                created_at=self._clock(),
            )
        )
        logger.info(
            "webhook_created",
            webhook_id=endpoint.id,
            organization_id=organization_id,
            event_count=len(clean_events),
        )
        return self._view(endpoint), secret

    def _owned(self, organization_id: str, webhook_id: str) -> WebhookEndpoint:
        endpoint = self.store.get_webhook(webhook_id)
        if not endpoint or endpoint.organization_id != organization_id:
            raise NotFoundError("webhook not found")
        return endpoint

    def get_endpoint(self, organization_id: str, webhook_id: str) -> WebhookView:
        return self._view(self._owned(organization_id, webhook_id))

    def list_endpoints(self, organization_id: str) -> List[WebhookView]:
        return [self._view(e) for e in self.store.list_webhooks(organization_id)]

    def regenerate_secret(self, organization_id: str, webhook_id: str) -> str:
        self._owned(organization_id, webhook_id)
        secret = self.issue()
        if not self.store.update_webhook_secret(webhook_id, secret):
            raise NotFoundError("webhook not found")
        logger.info("webhook_secret_rotated", webhook_id=webhook_id)
        return secret

    def update_endpoint(
        self,
        organization_id: str,
        webhook_id: str,
        *,
        name: Optional[str] = None,
        url: Optional[str] = None,
        events: Optional[List[str]] = None,
        enabled: Optional[bool] = None,
    ) -> WebhookView:
        """Apply the fields that were given. Re-enabling clears the failure count."""
        endpoint = self._owned(organization_id, webhook_id)
        changes = {}
        if name is not None:
            changes["name"] = _clean_name(name)
        if url is not None:
            changes["url"] = _clean_url(url)
        if events is not None:
            changes["events"] = _clean_events(events)
        if enabled is not None:
            changes["enabled"] = enabled
            if enabled:
                changes["failure_count"] = 0
        if not changes:
            return self._view(endpoint)

        updated = self.store.update_webhook(replace(endpoint, **changes))
        if updated is None:
            raise NotFoundError("webhook not found")
        logger.info(
            "webhook_updated",
            webhook_id=webhook_id,
            fields=sorted(changes),
            enabled=updated.enabled,
        )
        return self._view(updated)

    def delete_endpoint(self, organization_id: str, webhook_id: str) -> None:
        self._owned(organization_id, webhook_id)
        if not self.store.delete_webhook(webhook_id):
            raise NotFoundError("webhook not found")
        logger.info("webhook_deleted", webhook_id=webhook_id, organization_id=organization_id)

    def send_test_event(self, organization_id: str, webhook_id: str) -> DeliveryResult:
        """POST a signed ``test`` event to the endpoint and record the outcome.

        Delivery problems are reported in the result and counted against the
        endpoint; they never raise.
        """
        endpoint = self._owned(organization_id, webhook_id)
        body = json.dumps(
            {
                "event": TEST_EVENT,
                "timestamp": self._clock().isoformat(),
                "data": {"webhook_id": endpoint.id, "webhook_name": endpoint.name},
            },
            separators=(",", ":"),
        )
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: self.sign_payload(body, endpoint.signing_secret),
            "X-Webhook-Id": endpoint.id,
            "User-Agent": "trustcore-webhook/1.0",
        }
        timeout = httpx.Timeout(self.delivery_timeout_seconds)
        try:
            with httpx.Client(
                timeout=timeout, transport=self.transport, follow_redirects=False
            ) as client:
                response = client.post(endpoint.url, content=body, headers=headers)
        except httpx.TimeoutException:
            self.record_delivery_failure(endpoint.id)
            return DeliveryResult(success=False, error="delivery timed out")
        except httpx.HTTPError as exc:
            self.record_delivery_failure(endpoint.id)
            return DeliveryResult(
                success=False, error=f"delivery failed: {type(exc).__name__}"
            )

        if response.is_success:
            self.record_delivery_success(endpoint.id)
            logger.info(
                "webhook_test_delivered",
                webhook_id=endpoint.id,
                status_code=response.status_code,
            )
            return DeliveryResult(success=True, status_code=response.status_code)
        self.record_delivery_failure(endpoint.id)
        return DeliveryResult(
            success=False,
            status_code=response.status_code,
            error=f"endpoint returned status {response.status_code}",
        )

    def sign_payload(
        self, payload: Union[str, bytes], secret: str, timestamp: Optional[int] = None
    ) -> str:
        ts = int(self._clock().timestamp()) if timestamp is None else int(timestamp)
        return f"t={ts},{SIGNATURE_VERSION}={_signature(payload, secret, ts)}"

    def verify_signature(
        self,
        payload: Union[str, bytes],
        header: str,
        secret: str,
        tolerance: Optional[int] = None,
    ) -> bool:
        window = self.signature_tolerance_seconds if tolerance is None else tolerance
        parts = {}
        for item in (header or "").split(","):
            key, sep, value = item.strip().partition("=")
            if sep:
                parts[key] = value
        try:
            ts = int(parts.get("t", ""))
        except ValueError:
            return False
        provided = parts.get(SIGNATURE_VERSION)
        if not provided or not provided.isascii():
            return False
        if abs(int(self._clock().timestamp()) - ts) > window:
            return False
        return hmac.compare_digest(_signature(payload, secret, ts), provided)

    def record_delivery_failure(self, webhook_id: str) -> WebhookStatus:
        count = self.store.record_webhook_failure(webhook_id)
        if count is None:
            raise NotFoundError("webhook not found")
        endpoint = self.store.get_webhook(webhook_id)
        if endpoint is None:
            raise NotFoundError("webhook not found")
        status = endpoint.status(self.failure_threshold)
        logger.warning(
            "webhook_delivery_failed",
            webhook_id=webhook_id,
            failure_count=count,
            status=status.value,
        )
        return status

    def record_delivery_success(self, webhook_id: str) -> WebhookStatus:
        if not self.store.record_webhook_success(webhook_id, self._clock()):
            raise NotFoundError("webhook not found")
        endpoint = self.store.get_webhook(webhook_id)
        if endpoint is None:
            raise NotFoundError("webhook not found")
        return endpoint.status(self.failure_threshold)


def _clean_name(name: Optional[str]) -> str:
    clean = (name or "").strip()
    if not clean:
        raise ValidationError("name is required", detail={"field": "name"})
    return clean


def _clean_url(url: Optional[str]) -> str:
    clean = (url or "").strip()
    parsed = urlparse(clean)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationError("webhook URL must use https", detail={"field": "url"})
    return clean


def _clean_events(events: Optional[List[str]]) -> List[str]:
    clean = sorted({e.strip() for e in events or [] if e and e.strip()})
    if not clean:
        raise ValidationError("at least one event is required", detail={"field": "events"})
    return clean

def _signature(payload: Union[str, bytes], secret: str, timestamp: int) -> str:
    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
