"""
Contract Variable Resolver
Replaces {{placeholder}} tokens in a contract template with business, client and quote data.

Pure and deterministic: same inputs, same output. No I/O, no clock
(current_date comes from the reference_date argument).

Rules:
- Only the fixed vocabulary below is substituted.
- Unknown tokens, and known tokens with no value, are left verbatim so missing data
  is visible in the contract instead of silently blank.
- Templates are rich-text HTML, so every substituted value is HTML-escaped.
"""
import html
import os
import re
from datetime import date
from decimal import Decimal
from typing import Dict, Optional

from models import BusinessSnapshot, ClientSnapshot, LeadSnapshot, DownPaymentMode
from services.installment_scheduler import describe_terms, to_money

CURRENCY_SYMBOL = os.getenv("CONTRACT_CURRENCY_SYMBOL", "R$")
THOUSANDS_SEPARATOR = os.getenv("CONTRACT_THOUSANDS_SEPARATOR", ".")
DECIMAL_SEPARATOR = os.getenv("CONTRACT_DECIMAL_SEPARATOR", ",")
DATE_FORMAT = "%d/%m/%Y"

NO_ITEMS_MARKER = '<p class="contract-no-items"><em>No items selected.</em></p>'

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

BUSINESS_VARIABLES = (
    "business_name",
    "business_tax_id",
    "business_person_type",
    "business_email",
    "business_phone",
    "business_address",
    "business_city",
    "business_state",
    "business_zip_code",
    "business_full_address",
    "pix_key",
    "bank_name",
    "bank_agency",
    "bank_account",
    "bank_account_type",
)

CLIENT_VARIABLES = (
    "client_name",
    "client_tax_id",
    "client_email",
    "client_phone",
    "client_address",
)

QUOTE_VARIABLES = (
    "event_type",
    "event_date",
    "event_city",
    "products_list",
    "subtotal",
    "coupon_discount",
    "payment_surcharge",
    "seasonal_adjustment",
    "geographic_adjustment",
    "total_value",
    "payment_method",
    "payment_terms",
    "current_date",
)

# Intermediate price figures hidden when the quote asks for it
INTERMEDIATE_VARIABLES = {
    "subtotal",
    "coupon_discount",
    "payment_surcharge",
    "seasonal_adjustment",
    "geographic_adjustment",
}

# ============================================================================
# FORMATTING
# ============================================================================

def format_currency(value) -> str:
    """R$ 1.234,56 (symbol and separators configurable)."""
    amount = to_money(value)
    sign = "-" if amount < 0 else ""
    whole, cents = f"{abs(amount):.2f}".split(".")
    whole = f"{int(whole):,}".replace(",", THOUSANDS_SEPARATOR)
    return f"{sign}{CURRENCY_SYMBOL} {whole}{DECIMAL_SEPARATOR}{cents}"


def format_percent(value) -> str:
    amount = Decimal(str(value)).normalize()
    text = f"{amount:f}"
    return f"{text.replace('.', DECIMAL_SEPARATOR)}%"


def format_date(value: Optional[date]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime(DATE_FORMAT)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    return html.escape(value)


# ============================================================================
# NAMESPACE VALUES
# ============================================================================

def _business_values(business: BusinessSnapshot) -> Dict[str, Optional[str]]:
    locality = " - ".join(p for p in (business.city, business.state) if p)
    full_address = ", ".join(p for p in (business.address, locality, business.zip_code) if p)
    return {
        "business_name": _text(business.business_name),
        "business_tax_id": _text(business.tax_id),
        "business_person_type": _text(business.person_type.value),
        "business_email": _text(business.email),
        "business_phone": _text(business.phone),
        "business_address": _text(business.address),
        "business_city": _text(business.city),
        "business_state": _text(business.state),
        "business_zip_code": _text(business.zip_code),
        "business_full_address": _text(full_address),
        "pix_key": _text(business.pix_key),
        "bank_name": _text(business.bank_name),
        "bank_agency": _text(business.bank_agency),
        "bank_account": _text(business.bank_account),
        "bank_account_type": _text(business.bank_account_type),
    }


def _client_values(client: ClientSnapshot, quote: LeadSnapshot) -> Dict[str, Optional[str]]:
    # Before signing only the quote knows who the client is
    return {
        "client_name": _text(client.full_name or quote.client_name),
        "client_tax_id": _text(client.tax_id),
        "client_email": _text(client.email or quote.client_email),
        "client_phone": _text(client.phone or quote.client_phone),
        "client_address": _text(client.address),
    }


def render_products(quote: LeadSnapshot) -> str:
    if not quote.products:
        return NO_ITEMS_MARKER
    items = []
    for product in quote.products:
        name = html.escape(product.name)
        if quote.hide_intermediate_values:
            items.append(f"<li>{name} (x{product.quantity})</li>")
        else:
            items.append(
                f"<li>{name} - {product.quantity} x {format_currency(product.unit_price)}"
                f" = {format_currency(product.line_total)}</li>"
            )
    return '<ul class="contract-products">' + "".join(items) + "</ul>"


def render_payment_terms(quote: LeadSnapshot) -> Optional[str]:
    terms = quote.payment_details
    if terms is None:
        return None
    figures = describe_terms(quote.total_value, terms)
    parts = []
    if figures["down_payment"] > 0:
        down = f"Down payment of {format_currency(figures['down_payment'])}"
        if terms.down_payment_mode == DownPaymentMode.PERCENT:
            down += f" ({format_percent(terms.down_payment_amount)})"
        parts.append(down + " on signing")
    count = figures["installment_count"]
    if count:
        plural = "installment" if count == 1 else "installments"
        installments = f"{count} monthly {plural} of {format_currency(figures['installment_amount'])}"
        if figures["last_installment_amount"] != figures["installment_amount"]:
            installments += f", the last one {format_currency(figures['last_installment_amount'])}"
        parts.append(installments)
    if not parts:
        return None
    return html.escape(", plus ".join(parts))


def _quote_values(quote: LeadSnapshot, reference_date: Optional[date]) -> Dict[str, Optional[str]]:
    values = {
        "event_type": _text(quote.event_type),
        "event_date": format_date(quote.event_date),
        "event_city": _text(quote.event_city),
        "products_list": render_products(quote),
        "subtotal": format_currency(quote.subtotal),
        "coupon_discount": format_currency(quote.coupon_discount),
        "payment_surcharge": format_percent(quote.payment_surcharge_percent),
        "seasonal_adjustment": format_currency(quote.seasonal_adjustment),
        "geographic_adjustment": format_percent(quote.geographic_adjustment_percent),
        "total_value": format_currency(quote.total_value),
        "payment_method": _text(
            quote.payment_method_name or (quote.payment_details.name if quote.payment_details else None)
        ),
        "payment_terms": render_payment_terms(quote),
        "current_date": format_date(reference_date),
    }
    if quote.hide_intermediate_values:
        values.update({name: "" for name in INTERMEDIATE_VARIABLES})
    return values


# ============================================================================
# RESOLVER
# ============================================================================

def build_variables(
    business: BusinessSnapshot,
    client: ClientSnapshot,
    quote: LeadSnapshot,
    reference_date: Optional[date] = None,
) -> Dict[str, Optional[str]]:
    """All vocabulary values; None marks an unbound token."""
    values: Dict[str, Optional[str]] = {}
    values.update(_business_values(business))
    values.update(_client_values(client, quote))
    values.update(_quote_values(quote, reference_date))
    return values


def resolve(
    template: str,
    business: BusinessSnapshot,
    client: Optional[ClientSnapshot],
    quote: LeadSnapshot,
    reference_date: Optional[date] = None,
) -> str:
    """Resolve every known placeholder in template; leave the rest untouched."""
    values = build_variables(business, client or ClientSnapshot(), quote, reference_date)

    def _substitute(match: "re.Match") -> str:
        value = values.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return PLACEHOLDER_PATTERN.sub(_substitute, template or "")


def find_unresolved(text: str) -> list:
    """Placeholder names still present after resolution (unknown or missing data)."""
    return sorted({m.group(1) for m in PLACEHOLDER_PATTERN.finditer(text or "")})
