"""
PayPal Payment Adapter

Orders are created with intent AUTHORIZE and carry the booking id as
`custom_id`; PayPal echoes it back in webhook resources, which is how
provider callbacks are correlated to bookings.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from ..config import settings
from ..exceptions import AdapterNotConfiguredError, NonRetryableAdapterError
from .provider_client import BaseProviderClient

logger = logging.getLogger(__name__)

PAYPAL_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)

APPROVED_CAPTURE_STATUSES = {"COMPLETED", "PENDING"}


@dataclass
class CaptureResult:
    approved: bool
    provider_txn_id: Optional[str]
    status: str


class PayPalClient(BaseProviderClient):
    provider = "paypal"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        webhook_id: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(base_url or settings.paypal_api_base, **kwargs)
        self.client_id = client_id if client_id is not None else settings.paypal_client_id
        self.client_secret = client_secret if client_secret is not None else settings.paypal_client_secret
        self.webhook_id = webhook_id if webhook_id is not None else settings.paypal_webhook_id
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _access_token(self) -> str:
        if not self.is_configured:
            raise AdapterNotConfiguredError(self.provider)

        if self._token and time.time() < self._token_expires_at:
            return self._token

        data = self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=(self.client_id, self.client_secret),
        )
        token = data.get("access_token")
        if not token:
            raise NonRetryableAdapterError(self.provider, "token response without access_token")

        self._token = token
        # Refresh a minute before PayPal expires it
        self._token_expires_at = time.time() + max(int(data.get("expires_in", 0)) - 60, 0)
        return token

    def _authed(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        if extra:
            headers.update(extra)
        return headers

    # ==================
    # Payment Adapter contract
    # ==================

    def create_order(self, booking_id: str, amount: Decimal, currency: str) -> str:
        """Create an AUTHORIZE order for the booking; returns the PayPal order id"""
        body = {
            "intent": "AUTHORIZE",
            "purchase_units": [
                {
                    "reference_id": booking_id,
                    "custom_id": booking_id,
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": f"{Decimal(amount):.2f}",
                    },
                }
            ],
        }
        data = self._request(
            "POST",
            "/v2/checkout/orders",
            json_body=body,
            # Same booking -> same request id, so a retried create is idempotent
            headers=self._authed({"PayPal-Request-Id": f"order-{booking_id}"}),
        )
        order_id = data.get("id")
        if not order_id:
            raise NonRetryableAdapterError(self.provider, "order response without id")
        logger.info(f"PayPal order {order_id} created for booking {booking_id}")
        return order_id

    def capture(self, order_ref: str) -> CaptureResult:
        """
        Capture a previously authorized payment.

        `order_ref` is the authorization id. Declines (including PayPal's
        422 business errors) come back as `approved=False` rather than raising.
        """
        try:
            data = self._request(
                "POST",
                f"/v2/payments/authorizations/{order_ref}/capture",
                json_body={"final_capture": True},
                headers=self._authed({"PayPal-Request-Id": f"capture-{order_ref}"}),
            )
        except NonRetryableAdapterError as e:
            if e.status_code == 422:
                logger.warning(f"PayPal capture of {order_ref} denied: {e.message}")
                return CaptureResult(approved=False, provider_txn_id=None, status="DENIED")
            raise

        status = str(data.get("status", "")).upper()
        return CaptureResult(
            approved=status in APPROVED_CAPTURE_STATUSES,
            provider_txn_id=data.get("id"),
            status=status,
        )

    def void(self, authorization_id: str) -> str:
        """
        Release an authorization that will never be captured.

        PayPal answers 204 with no body, or the authorization itself when
        asked for a representation; either way the hold is gone.
        """
        data = self._request(
            "POST",
            f"/v2/payments/authorizations/{authorization_id}/void",
            headers=self._authed({"PayPal-Request-Id": f"void-{authorization_id}"}),
        )
        status = str(data.get("status") or "VOIDED").upper()
        logger.info(f"PayPal authorization {authorization_id} voided ({status})")
        return status

    # ==================
    # Webhook verification
    # ==================

    def verify_webhook_signature(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        """Ask PayPal whether the transmission headers match this event"""
        lowered = {k.lower(): v for k, v in headers.items()}
        if any(not lowered.get(name) for name in PAYPAL_SIGNATURE_HEADERS):
            return False

        body = {
            "auth_algo": lowered["paypal-auth-algo"],
            "cert_url": lowered["paypal-cert-url"],
            "transmission_id": lowered["paypal-transmission-id"],
            "transmission_sig": lowered["paypal-transmission-sig"],
            "transmission_time": lowered["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        data = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json_body=body,
            headers=self._authed(),
        )
        return data.get("verification_status") == "SUCCESS"


def get_payment_adapter() -> Optional[PayPalClient]:
    """Configured PayPal client, or None when credentials are absent"""
    client = PayPalClient()
    return client if client.is_configured else None
