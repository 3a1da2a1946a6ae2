"""
Wallet rail: PayPal Orders v2 with intent AUTHORIZE.

The payer approves the order on PayPal's site; the hold is placed by a
second round trip (``authorize``) and later captured or voided through the
Payments v2 authorization endpoints.
"""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from seatpay.config import Settings
from seatpay.core.errors import (
    AlreadyAuthorized,
    AmountExceedsAuthorization,
    InvalidState,
    NotApproved,
    ProviderRejected,
    ProviderUnavailable,
    SettlementError,
    ValidationError,
)
from seatpay.database.models import Rail
from seatpay.domain.money import Money
from seatpay.integrations.base import (
    AuthorizationResult,
    OrderIntent,
    PaymentProvider,
    ProviderErrorType,
    ProviderOrder,
    ProviderState,
    ProviderStatus,
)
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Refresh the OAuth token this long before PayPal says it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60

INVALID_STATE_ISSUES = frozenset(
    {
        "AUTHORIZATION_ALREADY_CAPTURED",
        "AUTHORIZATION_VOIDED",
        "AUTHORIZATION_EXPIRED",
        "PREVIOUSLY_CAPTURED",
        "PREVIOUSLY_VOIDED",
        "CANNOT_BE_VOIDED",
        "CAPTURE_FULLY_REFUNDED",
        "ORDER_ALREADY_CAPTURED",
        "ORDER_NOT_APPROVED_FOR_AUTHORIZATION",
    }
)
AMOUNT_ISSUES = frozenset(
    {"MAX_CAPTURE_AMOUNT_EXCEEDED", "REFUND_AMOUNT_EXCEEDED", "AMOUNT_EXCEEDED"}
)

AUTHORIZATION_STATES = {
    "CREATED": ProviderState.AUTHORIZED,
    "PENDING": ProviderState.PENDING,
    "CAPTURED": ProviderState.CAPTURED,
    "PARTIALLY_CAPTURED": ProviderState.CAPTURED,
    "VOIDED": ProviderState.VOIDED,
    "EXPIRED": ProviderState.EXPIRED,
}


def parse_paypal_time(value: Optional[str]) -> Optional[datetime]:
    """Parse PayPal's RFC 3339 timestamps ('2026-10-25T12:00:00Z')."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def find_link(links: Optional[List[Dict[str, Any]]], *rels: str) -> Optional[str]:
    """First HATEOAS link href matching one of ``rels``."""
    for link in links or []:
        if link.get("rel") in rels:
            return link.get("href")
    return None


class PayPalClient(PaymentProvider):
    """
    PayPal REST client over httpx.

    Every mutating call carries a ``PayPal-Request-Id`` so a retried request
    is applied at most once by PayPal.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(settings)
        self.base_url = self.settings.paypal_base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.settings.provider_timeout_seconds),
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

        logger.info(
            "paypal_client_initialized",
            base_url=self.base_url,
            sandbox=self.settings.paypal_sandbox_mode,
        )

    @property
    def rail(self) -> Rail:
        return Rail.WALLET

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry."""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        try:
            response = await self._client.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailable("PayPal token request timed out", rail=self.rail.value) from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"PayPal network error: {e}", rail=self.rail.value) from e

        if response.status_code != 200:
            logger.error("paypal_token_request_failed", status_code=response.status_code)
            metrics.record_provider_error(self.rail.value, ProviderErrorType.TRANSIENT.value)
            raise ProviderUnavailable(
                f"PayPal authentication failed: {response.status_code}", rail=self.rail.value
            )

        data = response.json()
        self._access_token = data["access_token"]
        expires_in = int(data.get("expires_in", 0))
        self._token_expires_at = time.monotonic() + max(
            expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0
        )
        return self._access_token

    def _translate_error(self, response: httpx.Response, operation: str) -> SettlementError:
        """Map a PayPal error response onto the settlement taxonomy."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        name = body.get("name", "")
        issues = [d.get("issue", "") for d in body.get("details", []) if isinstance(d, dict)]
        message = body.get("message") or response.text or f"HTTP {response.status_code}"

        if response.status_code >= 500 or response.status_code in (401, 429):
            error_type = (
                ProviderErrorType.RATE_LIMIT
                if response.status_code == 429
                else ProviderErrorType.TRANSIENT
            )
        else:
            error_type = ProviderErrorType.PERMANENT

        logger.error(
            "paypal_api_error",
            operation=operation,
            status_code=response.status_code,
            error_type=error_type.value,
            error_name=name,
            issues=issues,
            debug_id=body.get("debug_id"),
        )
        metrics.record_provider_error(self.rail.value, error_type.value)

        context = {"rail": self.rail.value, "issues": issues, "status_code": response.status_code}
        if error_type is not ProviderErrorType.PERMANENT:
            if response.status_code == 401:
                self._access_token = None
            return ProviderUnavailable(message, **context)
        if "ORDER_NOT_APPROVED" in issues:
            return NotApproved(message, **context)
        if "ORDER_ALREADY_AUTHORIZED" in issues:
            return AlreadyAuthorized(message, **context)
        if INVALID_STATE_ISSUES.intersection(issues):
            return InvalidState(message, **context)
        if AMOUNT_ISSUES.intersection(issues):
            return AmountExceedsAuthorization(message, **context)
        return ProviderRejected(message, **context)

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Authenticated JSON request under the shared resilience policy."""

        async def _send() -> Dict[str, Any]:
            token = await self._get_access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            }
            if request_id:
                headers["PayPal-Request-Id"] = request_id

            try:
                response = await self._client.request(
                    method, f"{self.base_url}{path}", json=json, headers=headers
                )
            except httpx.TimeoutException as e:
                raise ProviderUnavailable(
                    f"PayPal {operation} timed out", rail=self.rail.value
                ) from e
            except httpx.TransportError as e:
                raise ProviderUnavailable(
                    f"PayPal network error: {e}", rail=self.rail.value
                ) from e

            if response.status_code >= 400:
                raise self._translate_error(response, operation)
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        return await self._execute(operation, _send)

    async def create_order(
        self,
        amount: Money,
        intent: OrderIntent,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderOrder:
        """
        Create an order and return the payer approval URL.

        Raises:
            ValidationError: Amount is not positive
            ProviderUnavailable: PayPal unreachable or authentication failed
        """
        self._require_positive(amount)
        metadata = metadata or {}

        purchase_unit: Dict[str, Any] = {
            "amount": {
                "currency_code": amount.currency,
                "value": amount.to_provider_string(),
            },
            "custom_id": idempotency_key,
        }
        if "booking_id" in metadata:
            purchase_unit["reference_id"] = str(metadata["booking_id"])
        if "description" in metadata:
            purchase_unit["description"] = str(metadata["description"])[:127]

        body = {
            "intent": intent.value,
            "purchase_units": [purchase_unit],
            "application_context": {
                "brand_name": self.settings.paypal_brand_name,
                "landing_page": "BILLING",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "CONTINUE" if intent is OrderIntent.AUTHORIZE else "PAY_NOW",
                "return_url": self.settings.paypal_return_url,
                "cancel_url": self.settings.paypal_cancel_url,
            },
        }

        logger.info(
            "creating_paypal_order",
            amount_cents=amount.cents,
            currency=amount.currency,
            intent=intent.value,
            idempotency_key=idempotency_key,
        )
        data = await self._request(
            "create_order", "POST", "/v2/checkout/orders", json=body, request_id=idempotency_key
        )
        order = ProviderOrder(
            order_id=data["id"],
            status=data.get("status", ""),
            approval_url=find_link(data.get("links"), "approve", "payer-action"),
        )
        logger.info("paypal_order_created", order_id=order.order_id, status=order.status)
        return order

    async def authorize(self, order_id: str) -> AuthorizationResult:
        """
        Authorize an approved order.

        Raises:
            NotApproved: Payer has not approved the order
            AlreadyAuthorized: The order was authorized before; carries the
                existing authorization when it can be recovered
        """
        try:
            data = await self._request(
                "authorize",
                "POST",
                f"/v2/checkout/orders/{order_id}/authorize",
                json={},
                request_id=f"authorize-{order_id}",
            )
        except AlreadyAuthorized as e:
            order = await self._request("get_order", "GET", f"/v2/checkout/orders/{order_id}")
            e.authorization = self._extract_authorization(order)
            raise

        result = self._extract_authorization(data)
        if result is None:
            raise ProviderRejected(
                f"PayPal returned no authorization for order {order_id}", rail=self.rail.value
            )
        if result.status != "CREATED":
            raise ProviderRejected(
                f"PayPal authorization {result.authorization_id} is {result.status}",
                rail=self.rail.value,
            )

        logger.info(
            "paypal_order_authorized",
            order_id=order_id,
            authorization_id=result.authorization_id,
            expires_at=result.expires_at.isoformat() if result.expires_at else None,
        )
        return result

    @staticmethod
    def _extract_authorization(order: Dict[str, Any]) -> Optional[AuthorizationResult]:
        for unit in order.get("purchase_units", []):
            authorizations = unit.get("payments", {}).get("authorizations", [])
            if authorizations:
                auth = authorizations[0]
                return AuthorizationResult(
                    authorization_id=auth["id"],
                    expires_at=parse_paypal_time(auth.get("expiration_time")),
                    status=auth.get("status", ""),
                )
        return None

    async def capture(
        self,
        authorization_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Capture an authorization; returns the PayPal capture id."""
        body: Dict[str, Any] = {"final_capture": True}
        if amount is not None:
            self._require_positive(amount)
            body["amount"] = {
                "currency_code": amount.currency,
                "value": amount.to_provider_string(),
            }

        logger.info(
            "capturing_paypal_authorization",
            authorization_id=authorization_id,
            amount_cents=amount.cents if amount else None,
        )
        data = await self._request(
            "capture",
            "POST",
            f"/v2/payments/authorizations/{authorization_id}/capture",
            json=body,
            request_id=idempotency_key or f"capture-{authorization_id}",
        )
        status = data.get("status")
        if status not in ("COMPLETED", "PENDING"):
            raise ProviderRejected(
                f"PayPal capture for {authorization_id} is {status}", rail=self.rail.value
            )

        logger.info(
            "paypal_authorization_captured",
            authorization_id=authorization_id,
            capture_id=data["id"],
            status=status,
        )
        return data["id"]

    async def void(self, authorization_id: str, idempotency_key: Optional[str] = None) -> None:
        logger.info("voiding_paypal_authorization", authorization_id=authorization_id)
        await self._request(
            "void",
            "POST",
            f"/v2/payments/authorizations/{authorization_id}/void",
            request_id=idempotency_key or f"void-{authorization_id}",
        )
        logger.info("paypal_authorization_voided", authorization_id=authorization_id)

    async def refund(
        self,
        capture_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        body: Dict[str, Any] = {}
        if amount is not None:
            self._require_positive(amount)
            body["amount"] = {
                "currency_code": amount.currency,
                "value": amount.to_provider_string(),
            }

        logger.info(
            "refunding_paypal_capture",
            capture_id=capture_id,
            amount_cents=amount.cents if amount else None,
        )
        data = await self._request(
            "refund",
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json=body,
            request_id=idempotency_key or f"refund-{capture_id}",
        )
        logger.info("paypal_capture_refunded", capture_id=capture_id, refund_id=data["id"])
        return data["id"]

    async def fetch_status(self, authorization_id: str) -> ProviderStatus:
        """
        Current state of an authorization.

        The authorization resource does not name its capture, so a captured
        one is matched against the captures listed on its parent order.
        """
        data = await self._request(
            "fetch_status", "GET", f"/v2/payments/authorizations/{authorization_id}"
        )
        raw_status = data.get("status", "")
        state = AUTHORIZATION_STATES.get(raw_status, ProviderState.UNKNOWN)
        amount = data.get("amount")
        amount_cents = Money.of(amount["value"], amount["currency_code"]).cents if amount else None
        capture_id = None
        if state is ProviderState.CAPTURED:
            capture_id = await self._find_capture_id(data.get("id", authorization_id), data)
        return ProviderStatus(
            state=state,
            authorization_id=data.get("id", authorization_id),
            capture_id=capture_id,
            amount_cents=amount_cents,
            raw_status=raw_status,
            details={"expiration_time": data.get("expiration_time")},
        )

    async def _find_capture_id(
        self, authorization_id: str, authorization: Dict[str, Any]
    ) -> Optional[str]:
        order_id = (
            authorization.get("supplementary_data", {}).get("related_ids", {}).get("order_id")
        )
        if not order_id:
            up = find_link(authorization.get("links"), "up")
            order_id = up.rstrip("/").rsplit("/", 1)[-1] if up else None
        if not order_id:
            logger.warning("paypal_capture_order_unknown", authorization_id=authorization_id)
            return None

        order = await self._request("get_order", "GET", f"/v2/checkout/orders/{order_id}")
        captures = [
            capture
            for unit in order.get("purchase_units", [])
            for capture in unit.get("payments", {}).get("captures", [])
        ]
        for capture in captures:
            up = find_link(capture.get("links"), "up")
            if up and up.rstrip("/").endswith(f"/authorizations/{authorization_id}"):
                return capture["id"]
        # One authorization per order, so a lone capture is ours
        if len(captures) == 1:
            return captures[0]["id"]
        logger.warning(
            "paypal_capture_not_found",
            authorization_id=authorization_id,
            order_id=order_id,
            captures=len(captures),
        )
        return None

    async def verify_webhook(self, headers: Dict[str, str], event: Dict[str, Any]) -> None:
        """
        Verify a webhook delivery through PayPal's verification API.

        Raises:
            ValidationError: Signature headers missing or verification failed
        """
        if not self.settings.paypal_webhook_id:
            raise ValidationError("PayPal webhook id is not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        required = (
            "paypal-auth-algo",
            "paypal-cert-url",
            "paypal-transmission-id",
            "paypal-transmission-sig",
            "paypal-transmission-time",
        )
        missing = [h for h in required if not lowered.get(h)]
        if missing:
            raise ValidationError(f"Missing PayPal signature headers: {', '.join(missing)}")

        data = await self._request(
            "verify_webhook",
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={
                "auth_algo": lowered["paypal-auth-algo"],
                "cert_url": lowered["paypal-cert-url"],
                "transmission_id": lowered["paypal-transmission-id"],
                "transmission_sig": lowered["paypal-transmission-sig"],
                "transmission_time": lowered["paypal-transmission-time"],
                "webhook_id": self.settings.paypal_webhook_id,
                "webhook_event": event,
            },
        )
        if data.get("verification_status") != "SUCCESS":
            logger.warning(
                "paypal_webhook_signature_invalid",
                transmission_id=lowered["paypal-transmission-id"],
            )
            raise ValidationError("Invalid PayPal webhook signature")
