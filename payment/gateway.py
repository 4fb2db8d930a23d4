# src/payment/gateway.py
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any

import requests

from clock import Clock, SystemClock
from config import settings
from errors import AuthError, ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class CheckoutSession:
    checkout_url: str
    tracking_id: Optional[str]


@dataclass(frozen=True)
class ProviderStatus:
    description: str
    code: Optional[int] = None
    merchant_reference: Optional[str] = None
    tracking_id: Optional[str] = None


class TokenCache:
    """Holds one access token and refreshes it under a lock, one caller at a time."""

    def __init__(self, fetch: Callable[[], AccessToken], clock: Clock, margin_seconds: int):
        self._fetch = fetch
        self._clock = clock
        self._margin = timedelta(seconds=margin_seconds)
        self._lock = threading.Lock()
        self._current: Optional[AccessToken] = None

    def _usable(self, token: Optional[AccessToken]) -> bool:
        return token is not None and self._clock.now() < token.expires_at - self._margin

    def get(self) -> str:
        token = self._current
        if self._usable(token):
            return token.token
        with self._lock:
            # another thread may have refreshed while we waited
            if not self._usable(self._current):
                self._current = self._fetch()
            return self._current.token

    def invalidate(self) -> None:
        with self._lock:
            self._current = None


class ProviderGateway:
    """Request/response contract with the payment provider."""

    def request_access_token(self) -> AccessToken:
        raise NotImplementedError

    def create_order(self, reference: str, amount: int, currency: str, metadata: Dict[str, Any]) -> CheckoutSession:
        raise NotImplementedError

    def get_status(self, tracking_id_or_reference: str) -> ProviderStatus:
        raise NotImplementedError

    def register_ipn(self, url: str) -> str:
        raise NotImplementedError


def _parse_expiry(raw: Optional[str], fallback: datetime) -> datetime:
    # Pesapal sends e.g. "2021-08-26T12:29:30.5177702Z"; seconds precision is enough
    if not raw:
        return fallback
    try:
        return datetime.fromisoformat(raw[:19])
    except ValueError:
        logger.warning(f"Unparseable token expiry {raw!r}, using fallback TTL")
        return fallback


def _has_error(error: Any) -> bool:
    # successful replies still carry {"error_type": null, "code": null, "message": null}
    if isinstance(error, dict):
        return any(value for value in error.values())
    return bool(error)


class PesapalGateway(ProviderGateway):
    """Pesapal API 3.0 client with a cached bearer token and bounded timeouts."""

    def __init__(
            self,
            base_url: Optional[str] = None,
            consumer_key: Optional[str] = None,
            consumer_secret: Optional[str] = None,
            notification_id: Optional[str] = None,
            callback_url: Optional[str] = None,
            timeout: Optional[int] = None,
            http: Optional[requests.Session] = None,
            clock: Optional[Clock] = None,
    ):
        self.base_url = (base_url or settings.PESAPAL_BASE_URL).rstrip("/")
        self.consumer_key = consumer_key if consumer_key is not None else settings.PESAPAL_CONSUMER_KEY
        self.consumer_secret = consumer_secret if consumer_secret is not None else settings.PESAPAL_CONSUMER_SECRET
        self.notification_id = notification_id if notification_id is not None else settings.PESAPAL_NOTIFICATION_ID
        self.callback_url = callback_url or f"{settings.FRONTEND_URL}/payment-status"
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.clock = clock or SystemClock()
        self.tokens = TokenCache(self.request_access_token, self.clock, settings.TOKEN_REFRESH_MARGIN_SECONDS)

    def request_access_token(self) -> AccessToken:
        url = f"{self.base_url}/api/Auth/RequestToken"
        try:
            response = self.http.post(
                url,
                json={"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Token request failed: {e}") from e

        if response.status_code >= 500:
            raise ProviderError("Token endpoint unavailable", status_code=response.status_code)
        data = self._json(response)
        token = data.get("token")
        if response.status_code != 200 or not token:
            logger.error(f"Pesapal rejected credentials: status={response.status_code}, body={data}")
            raise AuthError("Could not obtain Pesapal token")

        fallback = self.clock.now() + timedelta(seconds=settings.TOKEN_FALLBACK_TTL_SECONDS)
        return AccessToken(token=token, expires_at=_parse_expiry(data.get("expiryDate"), fallback))

    def create_order(self, reference: str, amount: int, currency: str, metadata: Dict[str, Any]) -> CheckoutSession:
        order = {
            "id": reference,
            "currency": currency,
            "amount": amount,
            "description": metadata.get("description", f"CarDirectory {metadata.get('plan', '')} plan subscription"),
            "callback_url": f"{self.callback_url}?ref={reference}",
            "notification_id": self.notification_id,
            "billing_address": {
                "phone_number": metadata.get("phone", ""),
                "email_address": metadata.get("email", ""),
                "country_code": "KE",
                "first_name": metadata.get("first_name", "User"),
                "last_name": metadata.get("last_name", "Subscriber"),
            },
        }
        data = self._authorized("POST", "/api/Transactions/SubmitOrderRequest", reference, json=order)
        redirect_url = data.get("redirect_url")
        if not redirect_url:
            logger.error(f"Pesapal order error for {reference}: {data}")
            raise ProviderError("Provider returned no checkout URL", reference=reference)
        return CheckoutSession(checkout_url=redirect_url, tracking_id=data.get("order_tracking_id"))

    def get_status(self, tracking_id_or_reference: str) -> ProviderStatus:
        data = self._authorized(
            "GET",
            "/api/Transactions/GetTransactionStatus",
            tracking_id_or_reference,
            params={"orderTrackingId": tracking_id_or_reference},
        )
        description = data.get("payment_status_description") or ""
        return ProviderStatus(
            description=str(description),
            code=data.get("status_code"),
            merchant_reference=data.get("merchant_reference"),
            tracking_id=data.get("order_tracking_id") or tracking_id_or_reference,
        )

    def register_ipn(self, url: str) -> str:
        data = self._authorized(
            "POST", "/api/URLSetup/RegisterIPN", None, json={"url": url, "ipn_notification_type": "GET"}
        )
        ipn_id = data.get("ipn_id")
        if not ipn_id:
            raise ProviderError(f"IPN registration failed: {data}")
        return ipn_id

    def _authorized(self, method: str, path: str, reference: Optional[str], **kwargs) -> Dict[str, Any]:
        """Send an authenticated request; one retry with a fresh token on 401."""
        for attempt in range(2):
            headers = {"Accept": "application/json", "Authorization": f"Bearer {self.tokens.get()}"}
            try:
                response = self.http.request(method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                logger.error(f"Pesapal {path} request failed for {reference}: {e}")
                raise ProviderError(f"Provider request failed: {e}", reference=reference) from e

            if response.status_code == 401 and attempt == 0:
                logger.info("Pesapal token rejected, refreshing")
                self.tokens.invalidate()
                continue
            if response.status_code == 401:
                raise AuthError("Provider rejected refreshed token", reference=reference)
            if response.status_code >= 400:
                logger.error(f"Pesapal {path} returned {response.status_code} for {reference}: {response.text}")
                raise ProviderError(
                    f"Provider returned HTTP {response.status_code}", reference=reference, status_code=response.status_code
                )

            data = self._json(response)
            error = data.get("error")
            if _has_error(error):
                logger.error(f"Pesapal {path} error for {reference}: {error}")
                raise ProviderError(f"Provider error: {error}", reference=reference)
            return data
        raise AuthError("Provider rejected refreshed token", reference=reference)

    @staticmethod
    def _json(response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Provider returned a non-JSON body", status_code=response.status_code) from e
        return data if isinstance(data, dict) else {}
