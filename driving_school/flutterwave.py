"""HTTP client for the Flutterwave v3 REST API."""

import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

import httpx
from fastapi import Depends

from driving_school.config import Settings, get_settings
from driving_school.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentLinkRequest:
    amount: Decimal
    currency: str
    customer_email: str
    customer_name: str
    reference: str
    redirect_url: str
    description: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderTransaction:
    id: str
    tx_ref: str
    status: str
    flw_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ProviderTransaction":
        try:
            return cls(
                id=str(data["id"]),
                tx_ref=data["tx_ref"],
                status=data["status"],
                flw_ref=data.get("flw_ref"),
                amount=Decimal(str(data["amount"])) if data.get("amount") is not None else None,
                currency=data.get("currency"),
            )
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise PaymentProviderError(f"Unexpected transaction payload: missing {exc}") from exc


def verify_webhook_signature(signature: Optional[str], secret_hash: str) -> bool:
    if not secret_hash or not signature:
        return False
    return hmac.compare_digest(signature.encode(), secret_hash.encode())


class FlutterwaveClient:
    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self._http = http or httpx.Client(
            base_url=settings.flutterwave_base_url,
            timeout=settings.payment_provider_timeout,
        )

    def close(self) -> None:
        self._http.close()

    def _headers(self) -> Dict[str, str]:
        if not self.settings.flutterwave_secret_key:
            raise PaymentProviderError("FLUTTERWAVE_SECRET_KEY is not configured")
        return {
            "Authorization": f"Bearer {self.settings.flutterwave_secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        headers = self._headers()
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise PaymentProviderError(f"Flutterwave API error: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.is_error or body.get("status") != "success":
            message = body.get("message") or f"HTTP {response.status_code}"
            raise PaymentProviderError(f"Flutterwave API error: {message}")
        return body

    def create_payment_link(self, request: PaymentLinkRequest) -> str:
        body = self._request(
            "POST",
            "/payments",
            json={
                "tx_ref": request.reference,
                "amount": float(request.amount),
                "currency": request.currency,
                "redirect_url": request.redirect_url,
                "customer": {"email": request.customer_email, "name": request.customer_name},
                "customizations": {
                    "title": "Marvel Driving School",
                    "description": request.description or "Payment for driving school services",
                },
                "meta": request.meta,
            },
        )
        data = body.get("data")
        link = data.get("link") if isinstance(data, dict) else None
        if not link:
            raise PaymentProviderError("Flutterwave API error: no payment link returned")
        return link

    def verify_transaction(self, transaction_id: str) -> ProviderTransaction:
        body = self._request("GET", f"/transactions/{quote(str(transaction_id), safe='')}/verify")
        data = body.get("data")
        if not isinstance(data, dict):
            raise PaymentProviderError("Unexpected transaction payload: data is not an object")
        return ProviderTransaction.from_api(data)

    def verify_transaction_by_reference(self, tx_ref: str) -> Optional[ProviderTransaction]:
        body = self._request("GET", "/transactions", params={"tx_ref": tx_ref})
        data = body.get("data") or []
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise PaymentProviderError("Unexpected transaction payload: data is not a list of transactions")
        if not data:
            return None
        return ProviderTransaction.from_api(data[0])


def get_payment_provider(settings: Settings = Depends(get_settings)) -> Iterator[FlutterwaveClient]:
    client = FlutterwaveClient(settings)
    try:
        yield client
    finally:
        client.close()
