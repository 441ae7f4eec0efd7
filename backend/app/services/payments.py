from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.core.errors import AuthenticationError, ConfigurationError, ExternalDependencyError, ValidationError
from app.models.payment import PaymentWebhookEvent

logger = logging.getLogger(__name__)

PaymentsProvider = Literal["real", "mock"]

_QR_API_VERSION = "2022-07-31"


def payments_provider() -> PaymentsProvider:
    raw = (settings.payments_provider or "real").strip().lower()
    if raw in {"mock", "test"}:
        env = (settings.environment or "").strip().lower()
        if env in {"prod", "production"}:
            return "real"
        return "mock"
    return "real"


def is_mock_payments() -> bool:
    return payments_provider() == "mock"


def _gateway_secret() -> str:
    return (settings.payment_gateway_secret_key or "").strip()


def is_gateway_configured() -> bool:
    return bool(_gateway_secret())


@dataclass(frozen=True)
class PaymentIntent:
    reference_id: str
    provider_id: str
    qr_string: str
    amount: int
    expires_at: datetime
    raw: dict[str, Any] = field(default_factory=dict)


def _mock_intent(*, reference_id: str, amount: int, expires_at: datetime, metadata: dict[str, Any]) -> PaymentIntent:
    provider_id = f"qr_mock_{uuid4().hex[:16]}"
    return PaymentIntent(
        reference_id=reference_id,
        provider_id=provider_id,
        qr_string=f"MOCKQR|{reference_id}|{amount}",
        amount=amount,
        expires_at=expires_at,
        raw={
            "id": provider_id,
            "reference_id": reference_id,
            "status": "ACTIVE",
            "metadata": metadata,
            "mock": True,
        },
    )


async def create_payment_intent(
    *, reference_id: str, amount: int, expires_at: datetime, metadata: dict[str, Any] | None = None
) -> PaymentIntent:
    """Ask the QR gateway for a dynamic code worth ``amount`` rupiah.

    ``metadata`` is echoed back by the gateway on every callback for the code.
    """
    metadata = dict(metadata or {})
    if amount <= 0:
        raise ValidationError("Payment amount must be positive", code="invalid_amount")
    if is_mock_payments():
        return _mock_intent(reference_id=reference_id, amount=amount, expires_at=expires_at, metadata=metadata)
    if not is_gateway_configured():
        raise ConfigurationError("Payment gateway not configured")

    body = {
        "reference_id": reference_id,
        "type": "DYNAMIC",
        "currency": "IDR",
        "amount": amount,
        "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
    }
    if metadata:
        body["metadata"] = metadata
    try:
        async with httpx.AsyncClient(base_url=settings.payment_gateway_base_url, timeout=15) as client:
            resp = await client.post(
                "/qr_codes",
                json=body,
                auth=(_gateway_secret(), ""),
                headers={"api-version": _QR_API_VERSION, "Content-Type": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as exc:
        raise ExternalDependencyError("Payment gateway request failed") from exc

    provider_id = data.get("id")
    qr_string = data.get("qr_string")
    if not provider_id or not qr_string:
        raise ExternalDependencyError("Payment gateway response missing QR code")
    return PaymentIntent(
        reference_id=reference_id,
        provider_id=str(provider_id),
        qr_string=str(qr_string),
        amount=amount,
        expires_at=expires_at,
        raw=data,
    )


def verify_callback_token(token: str | None) -> None:
    expected = (settings.payment_callback_token or "").strip()
    if not expected:
        raise ConfigurationError("Payment callback token not configured")
    if not token or not hmac.compare_digest(token.strip(), expected):
        metrics.record_payment_failure()
        raise AuthenticationError("Invalid callback token", code="invalid_callback_token")


@dataclass(frozen=True)
class PaymentNotification:
    event_id: str
    reference_id: str
    status: str
    provider_reference: str | None = None
    amount: int | None = None
    paid_at: datetime | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    payment_session_id: str | None = None


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _metadata(container: dict[str, Any]) -> dict[str, Any]:
    metadata = container.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def parse_notification(payload: dict[str, Any]) -> PaymentNotification:
    """Accept both the flat and the ``{"data": {...}}`` callback shapes."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload", code="invalid_payload")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference_id = payload.get("external_id") or payload.get("reference_id") or data.get("reference_id")
    status_raw = payload.get("status") or data.get("status")
    if not reference_id or not status_raw:
        raise ValidationError("Callback missing reference or status", code="invalid_payload")
    provider_reference = data.get("id") or payload.get("id") or payload.get("qr_id") or data.get("qr_id")
    event_id = payload.get("event_id") or payload.get("callback_id") or data.get("payment_id") or provider_reference
    amount_raw = data.get("amount", payload.get("amount"))
    try:
        amount = int(amount_raw) if amount_raw is not None else None
    except (TypeError, ValueError):
        amount = None
    metadata = _metadata(payload) or _metadata(data)
    session_ref = metadata.get("payment_session_id")
    status = str(status_raw).strip().upper()
    return PaymentNotification(
        event_id=str(event_id or f"{reference_id}:{status}"),
        reference_id=str(reference_id),
        status=status,
        provider_reference=str(provider_reference) if provider_reference else None,
        amount=amount,
        paid_at=_parse_timestamp(data.get("created") or payload.get("paid_at") or payload.get("created")),
        payload=payload,
        payment_session_id=str(session_ref) if session_ref else None,
    )


def _payload_summary(notification: PaymentNotification) -> dict[str, Any]:
    return {
        "reference_id": notification.reference_id,
        "status": notification.status,
        "provider_reference": notification.provider_reference,
        "amount": notification.amount,
        "payment_session_id": notification.payment_session_id,
    }


async def record_webhook_event(
    session: AsyncSession, notification: PaymentNotification, *, now: datetime | None = None
) -> PaymentWebhookEvent:
    """Persist a callback delivery, bumping ``attempts`` when the event was seen before."""
    now = now or datetime.now(timezone.utc)
    record = PaymentWebhookEvent(
        provider_event_id=notification.event_id,
        event_status=notification.status,
        attempts=1,
        last_attempt_at=now,
        payload=_payload_summary(notification),
    )
    session.add(record)
    try:
        await session.commit()
        return record
    except IntegrityError:
        await session.rollback()

    existing = (
        await session.execute(
            select(PaymentWebhookEvent).where(PaymentWebhookEvent.provider_event_id == notification.event_id)
        )
    ).scalar_one()
    existing.attempts = int(existing.attempts or 0) + 1
    existing.last_attempt_at = now
    existing.event_status = notification.status or existing.event_status
    session.add(existing)
    await session.commit()
    return existing


async def mark_webhook_processed(
    session: AsyncSession, record: PaymentWebhookEvent, *, error: str | None = None, now: datetime | None = None
) -> None:
    record.last_error = error
    if error is None:
        record.processed_at = now or datetime.now(timezone.utc)
    session.add(record)
    await session.commit()
