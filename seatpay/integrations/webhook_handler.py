"""
Provider webhook handling with signature verification and deduplication.

Implements:
- Signature verification (Stripe signing secret, PayPal verification API)
- Durable record of every delivery in ``provider_webhook_events``; the
  UNIQUE(provider, event_id) constraint is the deduplication authority
- Redis fast path in front of the table for repeated deliveries
- Normalization of rail payloads into ``ProviderEvent`` and routing to the
  hold coordinator or the settlement engine

A delivery is acknowledged once it is recorded. Processing failures are
stored on the row and retried by the expiry sweeper.
"""
import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seatpay.config import Settings, get_settings
from seatpay.core.errors import AlreadyAuthorized, InvalidState, ValidationError
from seatpay.core.hold_coordinator import HoldCoordinator
from seatpay.core.settlement import SettlementEngine
from seatpay.core.store import PaymentRecordStore
from seatpay.database.connection import get_session_factory
from seatpay.database.models import (
    AuthorizationState,
    ProviderWebhookEvent,
    Rail,
    utcnow,
)
from seatpay.domain.money import round_half_up
from seatpay.integrations.base import ProviderEvent, ProviderState
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Deliveries that keep failing are left for manual replay
MAX_PROCESSING_ATTEMPTS = 10

STRIPE_EVENT_OUTCOMES = {
    "payment_intent.amount_capturable_updated": ProviderState.AUTHORIZED,
    "payment_intent.succeeded": ProviderState.CAPTURED,
    "payment_intent.canceled": ProviderState.VOIDED,
    "charge.refunded": ProviderState.REFUNDED,
}

PAYPAL_EVENT_OUTCOMES = {
    "PAYMENT.AUTHORIZATION.CREATED": ProviderState.AUTHORIZED,
    "PAYMENT.AUTHORIZATION.VOIDED": ProviderState.VOIDED,
    "PAYMENT.CAPTURE.COMPLETED": ProviderState.CAPTURED,
    "PAYMENT.CAPTURE.REFUNDED": ProviderState.REFUNDED,
}


def _to_cents(value: Optional[str]) -> Optional[int]:
    """PayPal decimal amount string to integer cents."""
    if value is None:
        return None
    try:
        return round_half_up(Decimal(str(value)) * 100)
    except InvalidOperation:
        return None


def _stripe_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


def parse_stripe_event(payload: Dict[str, Any]) -> ProviderEvent:
    """Normalize a Stripe event body."""
    event_type = payload.get("type", "")
    obj = (payload.get("data") or {}).get("object") or {}
    outcome = STRIPE_EVENT_OUTCOMES.get(event_type)
    reference = obj.get("id")
    capture_id = None
    amount_cents = None

    if event_type == "payment_intent.succeeded":
        capture_id = _stripe_id(obj.get("latest_charge"))
        amount_cents = obj.get("amount_received")
    elif event_type == "payment_intent.canceled":
        if obj.get("cancellation_reason") == "automatic":
            outcome = ProviderState.EXPIRED
    elif event_type == "charge.refunded":
        reference = _stripe_id(obj.get("payment_intent"))
        capture_id = obj.get("id")
        amount_cents = obj.get("amount_refunded")

    return ProviderEvent(
        provider=Rail.CARD,
        event_id=payload.get("id", ""),
        event_type=event_type,
        outcome=outcome,
        reference=reference,
        capture_id=capture_id,
        amount_cents=amount_cents,
    )


def parse_paypal_event(payload: Dict[str, Any]) -> ProviderEvent:
    """Normalize a PayPal webhook body."""
    event_type = payload.get("event_type", "")
    resource = payload.get("resource") or {}
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    outcome = PAYPAL_EVENT_OUTCOMES.get(event_type)
    reference = resource.get("id")
    capture_id = None
    amount_cents = None

    if event_type == "PAYMENT.AUTHORIZATION.CREATED":
        reference = related.get("order_id") or reference
    elif event_type == "PAYMENT.CAPTURE.COMPLETED":
        capture_id = resource.get("id")
        reference = related.get("authorization_id") or capture_id
        amount_cents = _to_cents((resource.get("amount") or {}).get("value"))
    elif event_type == "PAYMENT.CAPTURE.REFUNDED":
        capture_id = _capture_from_links(resource.get("links"))
        reference = capture_id
        breakdown = resource.get("seller_payable_breakdown") or {}
        total = (breakdown.get("total_refunded_amount") or {}).get("value")
        amount_cents = _to_cents(total or (resource.get("amount") or {}).get("value"))

    return ProviderEvent(
        provider=Rail.WALLET,
        event_id=payload.get("id", ""),
        event_type=event_type,
        outcome=outcome,
        reference=reference,
        capture_id=capture_id,
        amount_cents=amount_cents,
    )


def _capture_from_links(links: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    """A refund's parent capture id, from its ``up`` link."""
    for link in links or []:
        if link.get("rel") == "up" and link.get("href"):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


PARSERS = {
    Rail.CARD: parse_stripe_event,
    Rail.WALLET: parse_paypal_event,
}


class WebhookHandler:
    """
    Receives provider webhooks and applies them exactly once.

    Features:
    - Signature verification per rail
    - Durable deduplication, with Redis as an optional fast path
    - Replay of recorded but unprocessed deliveries
    """

    def __init__(
        self,
        engine: SettlementEngine,
        coordinator: HoldCoordinator,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            engine: Applies captures, voids and refunds
            coordinator: Completes approvals reported by the rail
            session_factory: Session factory (defaults to the global one)
            redis_client: Optional Redis client for the dedup fast path
            settings: Settings (defaults to the cached ones)
        """
        self.engine = engine
        self.coordinator = coordinator
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.store = PaymentRecordStore()
        self.redis_client = redis_client
        self._redis_initialized = False

        logger.info(
            "webhook_handler_initialized",
            redis=bool(redis_client or self.settings.redis_url),
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Redis client, or None when no Redis is configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    @staticmethod
    def _redis_key(provider: Rail, event_id: str) -> str:
        return f"webhook:processed:{provider.value}:{event_id}"

    async def is_event_processed(self, provider: Rail, event_id: str) -> bool:
        """Fast-path check; a Redis failure falls through to the durable table."""
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return False
            return bool(await redis.exists(self._redis_key(provider, event_id)))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, provider: Rail, event_id: str) -> None:
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return
            await redis.setex(
                self._redis_key(provider, event_id), self.settings.webhook_dedup_ttl, "1"
            )
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def handle_stripe(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify and ingest a Stripe delivery.

        Raises:
            ValidationError: Bad signature or payload
        """
        card = self.engine.providers.get(Rail.CARD)
        card.construct_webhook_event(payload, signature)
        # Signature verified; keep the plain JSON body as the durable record
        return await self.ingest(Rail.CARD, json.loads(payload))

    async def handle_paypal(self, headers: Dict[str, str], payload: bytes) -> Dict[str, Any]:
        """
        Verify and ingest a PayPal delivery.

        Raises:
            ValidationError: Bad signature or payload
        """
        try:
            body = json.loads(payload)
        except ValueError:
            raise ValidationError("Invalid PayPal webhook payload")
        wallet = self.engine.providers.get(Rail.WALLET)
        await wallet.verify_webhook(headers, body)
        return await self.ingest(Rail.WALLET, body)

    async def ingest(self, provider: Rail, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record a verified delivery and process it.

        Returns:
            Dict[str, Any]: ``status`` is ``duplicate``, ``processed`` or
            ``failed``; failures stay recorded for replay
        """
        started = time.perf_counter()
        event = PARSERS[provider](payload)
        if not event.event_id:
            raise ValidationError("Webhook event has no id")

        log = logger.bind(
            provider=provider.value, event_id=event.event_id, event_type=event.event_type
        )
        result = {"event_id": event.event_id, "event_type": event.event_type}

        if await self.is_event_processed(provider, event.event_id):
            log.info("webhook_event_already_processed", source="redis")
            metrics.record_webhook_event(
                provider.value, event.event_type, "duplicate", time.perf_counter() - started
            )
            return {**result, "status": "duplicate"}

        async with self.session_factory() as db:
            record = ProviderWebhookEvent(
                provider=provider.value,
                event_id=event.event_id,
                event_type=event.event_type,
                payload=payload,
            )
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                log.info("webhook_event_already_processed", source="database")
                metrics.record_webhook_event(
                    provider.value, event.event_type, "duplicate", time.perf_counter() - started
                )
                return {**result, "status": "duplicate"}
            record_id = record.id

        log.info("webhook_event_recorded", record_id=record_id)
        outcome = await self._process(record_id, event, log)
        status = "failed" if outcome is None else "processed"
        metrics.record_webhook_event(
            provider.value, event.event_type, status, time.perf_counter() - started
        )
        return {**result, "status": status, "outcome": outcome}

    async def _process(self, record_id: int, event: ProviderEvent, log: Any) -> Optional[str]:
        """Apply one recorded delivery; returns None when it failed."""
        try:
            outcome = await self._apply(event)
        except Exception as e:
            log.error(
                "webhook_event_processing_failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            async with self.session_factory() as db:
                await db.execute(
                    update(ProviderWebhookEvent)
                    .where(ProviderWebhookEvent.id == record_id)
                    .values(
                        processing_attempts=ProviderWebhookEvent.processing_attempts + 1,
                        last_error=f"{type(e).__name__}: {e}"[:2000],
                    )
                )
                await db.commit()
            return None

        async with self.session_factory() as db:
            await db.execute(
                update(ProviderWebhookEvent)
                .where(ProviderWebhookEvent.id == record_id)
                .values(
                    processed_at=utcnow(),
                    processing_attempts=ProviderWebhookEvent.processing_attempts + 1,
                    last_error=None,
                )
            )
            await db.commit()
        await self.mark_event_processed(event.provider, event.event_id)
        log.info("webhook_event_processed_successfully", outcome=outcome)
        return outcome

    async def _apply(self, event: ProviderEvent) -> str:
        if event.outcome is None:
            return "ignored"
        if event.outcome is ProviderState.AUTHORIZED:
            return await self._apply_authorized(event)
        return await self.engine.apply_provider_event(event)

    async def _apply_authorized(self, event: ProviderEvent) -> str:
        """The payer approved and the rail placed the hold."""
        if event.reference is None:
            return "ignored"
        async with self.session_factory() as db:
            row = await self.store.find_by_provider_reference(
                db, event.provider.value, event.reference
            )
        if row is None:
            logger.warning("provider_event_unmatched", reference=event.reference)
            return "unmatched"
        if row.state == AuthorizationState.AUTHORIZED.value:
            return "duplicate"
        if row.state != AuthorizationState.CREATED.value:
            return "ignored"
        try:
            await self.coordinator.confirm_approval(row.id, row.provider_order_id)
        except AlreadyAuthorized:
            return "duplicate"
        except InvalidState as e:
            logger.info("webhook_approval_not_applied", reason=str(e))
            return "ignored"
        return "authorized"

    async def replay_unprocessed(self, limit: int = 100) -> int:
        """
        Re-run deliveries that were recorded but never processed.

        Returns the number processed successfully.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(ProviderWebhookEvent)
                .where(
                    ProviderWebhookEvent.processed_at.is_(None),
                    ProviderWebhookEvent.processing_attempts < MAX_PROCESSING_ATTEMPTS,
                )
                .order_by(ProviderWebhookEvent.received_at)
                .limit(limit)
            )
            records = list(result.scalars().all())

        processed = 0
        for record in records:
            provider = Rail(record.provider)
            event = PARSERS[provider](record.payload)
            log = logger.bind(
                provider=record.provider,
                event_id=record.event_id,
                event_type=record.event_type,
                replay=True,
            )
            if await self._process(record.id, event, log) is not None:
                processed += 1
        if records:
            logger.info("webhook_replay_completed", total=len(records), processed=processed)
        return processed

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()
