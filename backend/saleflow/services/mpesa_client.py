# Overview: Outbound HTTP adapter for the M-Pesa Daraja API (OAuth token, STK push, STK query).

"""
Daraja gateway client.

- One instance per app (app.extensions["mpesa_client"]); the bearer token is
  cached on the instance until 60s before its declared expiry.
- Any non-2xx response, timeout or transport failure raises GatewayError
  carrying the upstream payload. Nothing here retries: the caller decides
  whether to re-initiate.
- Secrets (consumer secret, passkey, token) are never logged.
"""

from __future__ import annotations

import atexit
import logging
import threading
import time
from datetime import datetime
from zoneinfo import ZoneInfo

import httpx
from flask import Flask, current_app

from ..errors import GatewayError
from ..domain import mpesa as mpesa_rules

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Refresh this long before the declared expiry
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def base_url_for(environment: str) -> str:
    return PRODUCTION_BASE_URL if environment == "production" else SANDBOX_BASE_URL


def _upstream_payload(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text


class MpesaClient:
    def __init__(
        self,
        *,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        environment: str = "sandbox",
        timeout: float = 30.0,
        timezone_name: str = "Africa/Nairobi",
        transport: httpx.BaseTransport | None = None,
        clock=time.monotonic,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.environment = environment
        self.timezone_name = timezone_name
        self._clock = clock

        self._http = httpx.Client(
            base_url=base_url_for(environment),
            timeout=timeout,
            transport=transport,
        )

        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_config(cls, config, *, transport: httpx.BaseTransport | None = None) -> "MpesaClient":
        return cls(
            consumer_key=config.get("MPESA_CONSUMER_KEY", ""),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET", ""),
            shortcode=config.get("MPESA_BUSINESS_SHORTCODE", ""),
            passkey=config.get("MPESA_PASSKEY", ""),
            callback_url=config.get("MPESA_CALLBACK_URL", ""),
            environment=config.get("MPESA_ENVIRONMENT", "sandbox"),
            timeout=float(config.get("MPESA_TIMEOUT_SECONDS", 30)),
            timezone_name=config.get("BUSINESS_TIMEZONE", "Africa/Nairobi"),
            transport=transport,
        )

    @property
    def is_closed(self) -> bool:
        return self._http.is_closed

    def close(self) -> None:
        self._http.close()

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, *, what: str, **kwargs) -> dict:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("M-Pesa %s timed out", what)
            raise GatewayError(f"M-Pesa {what} timed out", upstream=str(exc)) from exc
        except httpx.HTTPError as exc:
            logger.error("M-Pesa %s transport error: %s", what, type(exc).__name__)
            raise GatewayError(f"M-Pesa {what} failed", upstream=str(exc)) from exc

        if not response.is_success:
            payload = _upstream_payload(response)
            logger.error("M-Pesa %s returned HTTP %s", what, response.status_code)
            raise GatewayError(
                f"M-Pesa {what} failed", upstream=payload, status=response.status_code
            )

        payload = _upstream_payload(response)
        if not isinstance(payload, dict):
            raise GatewayError(
                f"M-Pesa {what} returned an unreadable body", upstream=payload, status=response.status_code
            )
        return payload

    # -------------------------------------------------------------------------
    # AUTH
    # -------------------------------------------------------------------------

    def get_access_token(self) -> str:
        """Client-credentials token, cached until shortly before expiry."""
        with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            payload = self._request(
                "GET",
                TOKEN_PATH,
                what="token request",
                params={"grant_type": "client_credentials"},
                headers={
                    "Authorization": mpesa_rules.basic_auth_header(self.consumer_key, self.consumer_secret)
                },
            )
            token = payload.get("access_token")
            if not token:
                raise GatewayError("M-Pesa token response missing access_token", upstream=payload)

            try:
                expires_in = int(payload.get("expires_in", 3599))
            except (TypeError, ValueError):
                expires_in = 3599

            self._token = token
            self._token_expires_at = self._clock() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
            logger.info("Obtained M-Pesa access token (expires_in=%ss)", expires_in)
            return token

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.get_access_token()}"}

    def _timestamp(self) -> str:
        # Daraja validates the password timestamp against East Africa Time
        return mpesa_rules.make_timestamp(datetime.now(ZoneInfo(self.timezone_name)))

    # -------------------------------------------------------------------------
    # STK
    # -------------------------------------------------------------------------

    def stk_push(self, phone: str, amount, account_reference: str, transaction_desc: str) -> dict:
        """
        Prompt the customer's phone for a PIN.

        Returns dict with checkout_request_id, merchant_request_id,
        response_code and response_description.
        """
        timestamp = self._timestamp()
        msisdn = mpesa_rules.format_phone(phone)
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": mpesa_rules.make_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": mpesa_rules.gateway_amount(amount),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }
        payload = self._request("POST", STK_PUSH_PATH, what="STK push", json=body, headers=self._auth_headers())

        checkout_id = payload.get("CheckoutRequestID")
        merchant_id = payload.get("MerchantRequestID")
        if not checkout_id or not merchant_id:
            raise GatewayError("Invalid M-Pesa response - missing request IDs", upstream=payload)

        return {
            "checkout_request_id": checkout_id,
            "merchant_request_id": merchant_id,
            "response_code": payload.get("ResponseCode"),
            "response_description": payload.get("ResponseDescription"),
            "customer_message": payload.get("CustomerMessage"),
        }

    def stk_query(self, checkout_request_id: str) -> dict:
        """Ask the gateway for the outcome of an STK push."""
        timestamp = self._timestamp()
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": mpesa_rules.make_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        payload = self._request("POST", STK_QUERY_PATH, what="STK query", json=body, headers=self._auth_headers())

        result_code = payload.get("ResultCode")
        return {
            "result_code": str(result_code) if result_code is not None else None,
            "result_desc": payload.get("ResultDesc"),
            "merchant_request_id": payload.get("MerchantRequestID"),
            "checkout_request_id": payload.get("CheckoutRequestID"),
        }


def init_mpesa_client(app: Flask, *, transport: httpx.BaseTransport | None = None) -> MpesaClient:
    """Install a fresh client on the app, closing the one it replaces."""
    previous = app.extensions.get("mpesa_client")
    if previous is not None:
        atexit.unregister(previous.close)
        previous.close()

    client = MpesaClient.from_config(app.config, transport=transport)
    app.extensions["mpesa_client"] = client
    atexit.register(client.close)
    return client


def get_client() -> MpesaClient:
    client = current_app.extensions.get("mpesa_client")
    if client is None:
        client = init_mpesa_client(current_app._get_current_object())
    return client
