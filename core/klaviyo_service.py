import requests
import logging
from django.conf import settings

logger = logging.getLogger(__name__)


class KlaviyoError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self):
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class KlaviyoService:
    BASE_URL = "https://a.klaviyo.com/api"

    def __init__(self, api_key=None, timeout=None):
        self.api_key = api_key or getattr(settings, 'KLAVIYO_API_KEY', None)
        self.timeout = timeout or getattr(settings, 'NOTIFICATION_HTTP_TIMEOUT', 10)
        if not self.api_key:
            logger.warning("KLAVIYO_API_KEY not found in settings.")

        self.headers = {
            "Authorization": f"Klaviyo-API-Key {self.api_key}",
            "revision": getattr(settings, 'KLAVIYO_API_REVISION', '2025-02-15'),
            "Accept": "application/vnd.api+json",
            "Content-Type": "application/vnd.api+json",
        }

    @property
    def is_configured(self):
        return bool(self.api_key)

    def create_event(self, metric_name, email, properties, value=None, unique_id=None, time=None):
        """
        POST /events. `unique_id` makes the event idempotent on Klaviyo's side.
        Raises KlaviyoError on failure.
        """
        attributes = {
            "properties": properties,
            "metric": {"data": {"type": "metric", "attributes": {"name": metric_name}}},
            "profile": {"data": {"type": "profile", "attributes": {"email": email}}},
        }
        if value is not None:
            attributes["value"] = float(value)
        if unique_id:
            attributes["unique_id"] = unique_id
        if time:
            attributes["time"] = time

        url = f"{self.BASE_URL}/events/"
        try:
            response = requests.post(
                url, json={"data": {"type": "event", "attributes": attributes}},
                headers=self.headers, timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise KlaviyoError(f"Klaviyo unreachable: {e}")

        if response.status_code in (200, 201, 202):
            logger.info(f"Klaviyo event '{metric_name}' recorded for {email} ({unique_id})")
            return True

        raise KlaviyoError(f"Klaviyo rejected event: {response.status_code} - {response.text}", response.status_code)


def placed_order_properties(purchase):
    product = purchase.product
    return {
        "order_id": str(purchase.id),
        "currency": purchase.currency,
        "subtotal": float(purchase.original_amount),
        "discount_total": float(purchase.discount_amount),
        "total": float(purchase.final_amount),
        "coupon_code": purchase.coupon_code or None,
        "stripe_payment_intent_id": None if purchase.is_free else purchase.transaction_id,
        "line_items": [
            {
                "product_id": str(product.id),
                "product_name": product.name,
                "sku": product.slug,
                "quantity": 1,
                "price": float(purchase.original_amount),
            },
        ],
    }
