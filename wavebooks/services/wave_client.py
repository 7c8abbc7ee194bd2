# wavebooks/services/wave_client.py
"""
Thin client for the Wave money-movement API.

Every non-2xx answer becomes a GatewayError carrying Wave's own error code;
network failures become GatewayError("gateway-unavailable"). Nothing here
touches the database, so callers can hold no lock while waiting on Wave.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

import requests
from flask import current_app

from wavebooks.services.errors import GatewayError, GatewayNotConfiguredError, ValidationError
from wavebooks.utils.clock import parse_timestamp


ZERO_DECIMAL_CURRENCIES = {"XOF", "XAF", "GNF"}


def wave_currency(currency: str | None) -> str:
    """Map local currency labels onto Wave codes (FCFA is XOF)."""
    code = (currency or "").strip().upper()
    if code in ("", "FCFA", "CFA"):
        return "XOF"
    return code


def format_amount(amount, currency: str) -> str:
    """Wave wants string amounts, without decimals for XOF."""
    value = Decimal(str(amount))
    if wave_currency(currency) in ZERO_DECIMAL_CURRENCIES:
        return str(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _decimal(value, field_name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}: {value!r}", details={"field": field_name})


# =========================================================
# Types
# =========================================================
@dataclass(frozen=True)
class ExternalTransaction:
    """An immutable ledger fact reported by Wave (positive amount = inbound)."""

    id: str
    amount: Decimal
    fee: Decimal
    currency: str
    timestamp: datetime
    counterparty_mobile: Optional[str] = None
    counterparty_name: Optional[str] = None
    is_reversal: bool = False
    payment_reason: Optional[str] = None
    client_reference: Optional[str] = None
    payout_id: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def is_inbound(self) -> bool:
        return self.amount > 0

    @property
    def is_outbound(self) -> bool:
        return self.amount < 0

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ExternalTransaction":
        if not isinstance(data, dict):
            raise ValidationError("Transaction payload must be an object.")

        tx_id = str(data.get("transaction_id") or data.get("id") or "").strip()
        if not tx_id:
            raise ValidationError("transaction_id is required.", details={"field": "transaction_id"})

        timestamp = parse_timestamp(data.get("timestamp") or data.get("when_created"))
        if timestamp is None:
            raise ValidationError("A valid transaction timestamp is required.", details={"field": "timestamp"})

        return cls(
            id=tx_id,
            amount=_decimal(data.get("amount"), "amount"),
            fee=_decimal(data.get("fee") or 0, "fee"),
            currency=wave_currency(data.get("currency")),
            timestamp=timestamp,
            counterparty_mobile=(data.get("counterparty_mobile") or None),
            counterparty_name=(data.get("counterparty_name") or None),
            is_reversal=bool(data.get("is_reversal")),
            payment_reason=(data.get("payment_reason") or None),
            client_reference=(data.get("client_reference") or None),
            payout_id=(data.get("payout_id") or None),
            raw=dict(data),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "transaction_id": self.id,
            "amount": str(self.amount),
            "fee": str(self.fee),
            "currency": self.currency,
            "timestamp": self.timestamp.isoformat() + "Z",
            "counterparty_mobile": self.counterparty_mobile,
            "counterparty_name": self.counterparty_name,
            "is_reversal": self.is_reversal,
            "payment_reason": self.payment_reason,
            "client_reference": self.client_reference,
            "payout_id": self.payout_id,
        }


@dataclass(frozen=True)
class TransactionPage:
    items: list[ExternalTransaction]
    has_next_page: bool = False
    end_cursor: Optional[str] = None


@dataclass(frozen=True)
class GatewayPayout:
    id: str
    status: str
    amount: Decimal
    fee: Decimal
    currency: str
    mobile: Optional[str] = None
    timestamp: Optional[datetime] = None
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayPayout":
        error = data.get("payout_error") or {}
        return cls(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or "processing").lower(),
            amount=_decimal(data.get("receive_amount") or data.get("amount") or 0, "receive_amount"),
            fee=_decimal(data.get("fee") or 0, "fee"),
            currency=wave_currency(data.get("currency")),
            mobile=data.get("mobile"),
            timestamp=parse_timestamp(data.get("timestamp")),
            transaction_id=data.get("transaction_id"),
            error_code=(error.get("error_code") if isinstance(error, dict) else None),
        )


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    launch_url: Optional[str]
    checkout_status: Optional[str] = None
    payment_status: Optional[str] = None
    client_reference: Optional[str] = None
    transaction_id: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "CheckoutSession":
        return cls(
            id=str(data.get("id") or ""),
            launch_url=data.get("wave_launch_url") or data.get("checkout_url"),
            checkout_status=data.get("checkout_status"),
            payment_status=data.get("payment_status"),
            client_reference=data.get("client_reference"),
            transaction_id=data.get("transaction_id"),
        )


# =========================================================
# Client
# =========================================================
class WaveGateway:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.wave.com",
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    # -----------------------------
    # Transport
    # -----------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        headers: dict | None = None,
        none_on_404: bool = False,
    ) -> Optional[dict]:
        url = f"{self.base_url}/v1/{path.lstrip('/')}"
        all_headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        all_headers.update(headers or {})

        try:
            resp = self.session.request(
                method, url, params=params, json=json, headers=all_headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            current_app.logger.exception("Wave %s %s failed before a response", method, path)
            raise GatewayError("gateway-unavailable", str(exc)) from exc

        if resp.status_code == 404 and none_on_404:
            return None

        if resp.ok:
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError:
                return {}

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        code = payload.get("error_code") or payload.get("code")
        if not code:
            code = "not-found" if resp.status_code == 404 else f"http-{resp.status_code}"
        message = payload.get("message") or payload.get("error_message") or (resp.text or "")[:500]

        current_app.logger.warning("Wave %s %s -> %s (%s)", method, path, resp.status_code, code)
        raise GatewayError(code, message, status_code=resp.status_code, payload=payload)

    # -----------------------------
    # Queries
    # -----------------------------
    def get_balance(self) -> dict:
        return self._request("GET", "me/balance")

    def list_transactions(self, date: str, after: str | None = None, first: int = 50) -> TransactionPage:
        params = {"date": date, "first": first}
        if after:
            params["after"] = after
        data = self._request("GET", "transactions", params=params)
        page_info = data.get("page_info") or {}
        return TransactionPage(
            items=[ExternalTransaction.from_payload(item) for item in (data.get("items") or [])],
            has_next_page=bool(page_info.get("has_next_page")),
            end_cursor=page_info.get("end_cursor"),
        )

    def get_payout(self, payout_id: str) -> GatewayPayout:
        return GatewayPayout.from_payload(self._request("GET", f"payout/{payout_id}"))

    def find_checkout_session(
        self, transaction_id: str, client_reference: str | None = None
    ) -> Optional[CheckoutSession]:
        """Checkout session that produced a payment, by transaction id then by client reference."""
        data = self._request(
            "GET", "checkout/sessions", params={"transaction_id": transaction_id}, none_on_404=True
        )
        if data and data.get("id"):
            return CheckoutSession.from_payload(data)

        if client_reference:
            found = self._request(
                "GET",
                "checkout/sessions/search",
                params={"client_reference": client_reference},
                none_on_404=True,
            )
            results = (found or {}).get("result") or []
            if results:
                return CheckoutSession.from_payload(results[0])
        return None

    # -----------------------------
    # Commands (irreversible)
    # -----------------------------
    def send_payout(
        self,
        *,
        amount,
        mobile: str,
        currency: str,
        idempotency_key: str,
        reason: str | None = None,
        name: str | None = None,
        client_reference: str | None = None,
    ) -> GatewayPayout:
        body = {
            "currency": wave_currency(currency),
            "receive_amount": format_amount(amount, currency),
            "mobile": mobile,
        }
        if name:
            body["name"] = name
        if reason:
            body["payment_reason"] = reason
        if client_reference:
            body["client_reference"] = client_reference

        data = self._request("POST", "payout", json=body, headers={"Idempotency-Key": idempotency_key})
        return GatewayPayout.from_payload(data)

    def reverse_payout(self, payout_id: str) -> dict:
        return self._request("POST", f"payout/{payout_id}/reverse")

    def cancel_pending_payout(self, payout_id: str) -> dict:
        return self._request("POST", f"payout/{payout_id}/cancel")

    def refund_checkout_session(self, session_id: str) -> dict:
        return self._request("POST", f"checkout/sessions/{session_id}/refund")

    def create_checkout_session(
        self,
        *,
        amount,
        currency: str,
        success_url: str,
        error_url: str,
        client_reference: str,
    ) -> CheckoutSession:
        body = {
            "amount": format_amount(amount, currency),
            "currency": wave_currency(currency),
            "success_url": success_url,
            "error_url": error_url,
            "client_reference": client_reference,
        }
        return CheckoutSession.from_payload(self._request("POST", "checkout/sessions", json=body))


def gateway_for(user) -> WaveGateway:
    """Build the gateway for an account, falling back to the app-wide key."""
    api_key = (getattr(user, "wave_api_key", None) or current_app.config.get("WAVE_API_KEY") or "").strip()
    if not api_key:
        raise GatewayNotConfiguredError("Wave API key is not configured for this account.")
    return WaveGateway(
        api_key,
        base_url=current_app.config.get("WAVE_API_URL", "https://api.wave.com"),
        timeout=current_app.config.get("WAVE_TIMEOUT_SECONDS", 20.0),
    )
