"""Stripe invoice webhook -> FHIR Invoice.

Triggered by a Stripe webhook event. Creates a FHIR Invoice for the Stripe
invoice (once, keyed by the Stripe invoice id) and links it to the Account
whose identifier matches the Stripe customer id.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ..medplum.references import create_reference
from ..protocols import FhirClientProtocol
from .schemas import BotEvent

logger = logging.getLogger(__name__)

STRIPE_INVOICE_SYSTEM = "https://stripe.com/invoice/id"

# Stripe invoice status -> FHIR Invoice.status
INVOICE_STATUS = {
    "paid": "balanced",
    "open": "issued",
    "uncollectible": "cancelled",
    "void": "cancelled",
}


def get_invoice_status(stripe_status: str | None) -> str:
    return INVOICE_STATUS.get(stripe_status or "", "draft")


def _money(cents: float | None, currency: str | None) -> dict:
    # Stripe amounts are in the currency's smallest unit
    return {"value": (cents or 0) / 100, "currency": (currency or "").upper()}


def build_invoice(stripe_status: str | None, stripe_invoice: dict[str, Any]) -> dict:
    """Unsaved FHIR Invoice for a Stripe invoice object."""
    currency = stripe_invoice.get("currency")
    lines = (stripe_invoice.get("lines") or {}).get("data") or []
    return {
        "resourceType": "Invoice",
        "identifier": [{"system": STRIPE_INVOICE_SYSTEM, "value": stripe_invoice["id"]}],
        "status": get_invoice_status(stripe_status),
        "issued": datetime.now(timezone.utc).isoformat(),
        "totalGross": _money(stripe_invoice.get("amount_due"), currency),
        "totalNet": _money(stripe_invoice.get("amount_paid"), currency),
        "note": [
            {
                "id": "hosted_invoice_url",
                "text": (
                    "This invoice was created by Stripe "
                    f"[invoice]({stripe_invoice.get('hosted_invoice_url')})"
                ),
            },
            {
                "id": "invoice_pdf",
                "text": f"Stripe invoice PDF [invoice]({stripe_invoice.get('invoice_pdf')})",
            },
        ],
        "lineItem": [
            {
                "sequence": line.get("id"),
                "priceComponent": [
                    {
                        "code": "base",
                        "factor": line.get("quantity"),
                        "amount": _money(line.get("amount"), line.get("currency")),
                    }
                ],
            }
            for line in lines
        ],
    }


async def handler(medplum: FhirClientProtocol, event: BotEvent) -> bool:
    """Record the Stripe invoice in ``event.input``; False for non-invoice payloads."""
    payload = event.input or {}
    stripe_object = payload.get("object") or {}

    invoice_id = stripe_object.get("id")
    if not invoice_id:
        logger.info("[STRIPE] No object id found")
        return False
    if stripe_object.get("object") != "invoice":
        logger.info("[STRIPE] Not an invoice")
        return False

    invoice = await medplum.search_one("Invoice", {"identifier": invoice_id})
    if not invoice:
        invoice = await medplum.create_resource(build_invoice(payload.get("status"), stripe_object))
        logger.info(f"[STRIPE] Created Invoice {invoice.get('id')} for {invoice_id}")

    customer_id = stripe_object.get("customer")
    account = (
        await medplum.search_one("Account", {"identifier": customer_id}) if customer_id else None
    )
    if account:
        invoice["account"] = create_reference(account)
        await medplum.update_resource(invoice)
        logger.info(f"[STRIPE] Linked Invoice {invoice.get('id')} to Account {account.get('id')}")

    return True
