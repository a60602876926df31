"""External payment ledger access (Stripe), one client per environment.

Live and test are independent Stripe accounts with their own secret keys:

* live: ``STRIPE_SECRET_KEY_LIVE`` (``STRIPE_SECRET_KEY`` only when ``STRIPE_MODE=live``)
* test: ``STRIPE_SECRET_KEY_TEST`` / ``STRIPE_TEST_SECRET`` (``STRIPE_SECRET_KEY``
  only when ``STRIPE_MODE=test``)

A key whose prefix belongs to the other environment is a configuration
error, raised on first use. Pages come back as ``LedgerPage`` holding plain
dicts with only the fields reconciliation and revenue read.
"""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import stripe

from app.config import STRIPE_SETTINGS
from app.models.db.enums import LedgerMode
from app.utils import get_logger

logger = get_logger(__name__)

_LIVE_PREFIXES = ("sk_live_", "rk_live_")
_TEST_PREFIXES = ("sk_test_", "rk_test_")


class LedgerConfigurationError(RuntimeError):
    pass


@dataclass
class LedgerPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False


class LedgerClient(Protocol):
    mode: str

    def list_checkout_sessions(self, *, created_gte: int, starting_after: Optional[str] = None, limit: int = 100) -> LedgerPage: ...

    def list_paid_invoices(self, *, created_gte: int, starting_after: Optional[str] = None, limit: int = 100) -> LedgerPage: ...


def active_mode() -> str:
    raw = str(STRIPE_SETTINGS["active_mode"]).lower()
    return raw if raw in (LedgerMode.LIVE.value, LedgerMode.TEST.value) else LedgerMode.LIVE.value


def resolve_modes(selector: Optional[str]) -> list[str]:
    """live/test -> that mode only; anything else (all) -> active mode first, then the other."""
    value = (selector or "all").strip().lower()
    if value in (LedgerMode.LIVE.value, LedgerMode.TEST.value):
        return [value]
    primary = active_mode()
    secondary = LedgerMode.TEST.value if primary == LedgerMode.LIVE.value else LedgerMode.LIVE.value
    return [primary, secondary]


def _read_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None


def resolve_secret_key(mode: str) -> str:
    include_base = active_mode() == mode
    if mode == LedgerMode.LIVE.value:
        names = ["STRIPE_SECRET_KEY_LIVE"] + (["STRIPE_SECRET_KEY"] if include_base else [])
    elif mode == LedgerMode.TEST.value:
        names = ["STRIPE_SECRET_KEY_TEST", "STRIPE_TEST_SECRET"] + (["STRIPE_SECRET_KEY"] if include_base else [])
    else:
        raise LedgerConfigurationError(f"Unknown Stripe mode: {mode}")

    secret = _read_env(*names)
    if not secret:
        raise LedgerConfigurationError(f"Missing required Stripe secret key for mode={mode} ({' / '.join(names)})")
    if mode == LedgerMode.LIVE.value and secret.startswith(_TEST_PREFIXES):
        raise LedgerConfigurationError("Invalid Stripe configuration: mode=live but resolved key is test")
    if mode == LedgerMode.TEST.value and secret.startswith(_LIVE_PREFIXES):
        raise LedgerConfigurationError("Invalid Stripe configuration: mode=test but resolved key is live")
    return secret


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return {str(k): v for k, v in obj.items()}
    items = getattr(obj, "items", None)
    if callable(items):
        return {str(k): v for k, v in items()}
    return {}


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Newer API versions nest it under parent.subscription_details."""
    nested = _field(_field(_field(invoice, "parent"), "subscription_details"), "subscription")
    if isinstance(nested, str) and nested:
        return nested
    legacy = _field(invoice, "subscription")
    if isinstance(legacy, str) and legacy:
        return legacy
    return _field(legacy, "id")


def checkout_session_to_dict(session: Any) -> dict[str, Any]:
    return {
        "id": _field(session, "id"),
        "mode": _field(session, "mode"),
        "payment_status": _field(session, "payment_status"),
        "status": _field(session, "status"),
        "amount_total": int(_field(session, "amount_total", 0) or 0),
        "currency": _field(session, "currency", "usd"),
        "created": _field(session, "created"),
        "metadata": _as_dict(_field(session, "metadata")),
    }


def invoice_to_dict(invoice: Any) -> dict[str, Any]:
    return {
        "id": _field(invoice, "id"),
        "status": _field(invoice, "status"),
        "amount_paid": int(_field(invoice, "amount_paid", 0) or 0),
        "amount_due": int(_field(invoice, "amount_due", 0) or 0),
        "currency": _field(invoice, "currency", "usd"),
        "created": _field(invoice, "created"),
        "subscription_id": invoice_subscription_id(invoice),
    }


class StripeLedgerClient:
    """Read-only Stripe access for one mode; the key is passed per call, never set globally."""

    def __init__(self, mode: str, secret_key: Optional[str] = None):
        self.mode = mode
        self._api_key = secret_key or resolve_secret_key(mode)

    def _params(self, created_gte: int, starting_after: Optional[str], limit: int) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "created": {"gte": created_gte}, "api_key": self._api_key}
        if starting_after:
            params["starting_after"] = starting_after
        return params

    def list_checkout_sessions(self, *, created_gte: int, starting_after: Optional[str] = None, limit: int = 100) -> LedgerPage:
        response = stripe.checkout.Session.list(**self._params(created_gte, starting_after, limit))
        return LedgerPage(
            items=[checkout_session_to_dict(s) for s in _field(response, "data", [])],
            has_more=bool(_field(response, "has_more", False)),
        )

    def list_paid_invoices(self, *, created_gte: int, starting_after: Optional[str] = None, limit: int = 100) -> LedgerPage:
        params = self._params(created_gte, starting_after, limit)
        params["status"] = "paid"
        response = stripe.Invoice.list(**params)
        return LedgerPage(
            items=[invoice_to_dict(i) for i in _field(response, "data", [])],
            has_more=bool(_field(response, "has_more", False)),
        )


class LedgerClientRegistry:
    """Per-mode client cache owned by whoever builds the registry (app state or a test)."""

    def __init__(self, factory=None):
        self._factory = factory or StripeLedgerClient
        self._clients: dict[str, LedgerClient] = {}
        self._lock = threading.Lock()

    def get(self, mode: str) -> LedgerClient:
        with self._lock:
            client = self._clients.get(mode)
            if client is None:
                client = self._factory(mode)
                self._clients[mode] = client
                logger.info("Ledger client initialized", mode=mode)
            return client

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()


__all__ = [
    "LedgerClient",
    "LedgerClientRegistry",
    "LedgerConfigurationError",
    "LedgerPage",
    "StripeLedgerClient",
    "active_mode",
    "resolve_modes",
    "resolve_secret_key",
    "invoice_subscription_id",
]
