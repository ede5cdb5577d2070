"""
Installment Scheduler
Turns a signed contract's total value and payment terms into dated receivables.

Pure: no I/O, no clock. The caller supplies the anchor date (signing day).

Rounding policy: every amount is quantised to the minimal currency unit (0.01, half-up).
Installments split the remainder in whole cents; the trailing installments carry the
leftover cents, so the receivables sum to the total exactly and differ by at most 0.01.
"""
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Union

from dateutil.relativedelta import relativedelta

from models import PaymentTerms, DownPaymentMode, ReceivableRecord, ReceivableKind

CENT = Decimal("0.01")
# Remainders at or below this are treated as fully paid by the down payment
REMAINDER_EPSILON = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Quantise to cents. Floats go through str() so 0.1 stays 0.10."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_down_payment(total_value: Number, terms: PaymentTerms) -> Decimal:
    """Percent of the total or a fixed amount, never more than the total."""
    total = to_money(total_value)
    if terms.down_payment_mode == DownPaymentMode.PERCENT:
        down_payment = to_money(total * Decimal(terms.down_payment_amount) / Decimal(100))
    else:
        down_payment = to_money(terms.down_payment_amount)
    return min(down_payment, total)


def split_evenly(amount: Decimal, count: int) -> List[Decimal]:
    """
    Split into cent shares that differ by at most one cent, the trailing shares
    taking the leftover cents. Never yields a zero share: fewer than count shares
    come back when the amount has fewer cents than count.
    """
    cents = int(to_money(amount) / CENT)
    count = min(count, cents)
    if count <= 0:
        return []
    base, extra = divmod(cents, count)
    return [(base + (1 if i >= count - extra else 0)) * CENT for i in range(count)]


def schedule(
    total_value: Number,
    payment_terms: PaymentTerms,
    anchor_date: date,
    client_name: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> List[ReceivableRecord]:
    """
    Build the receivable schedule.

    - Down payment (if > 0): sequence 1, due on anchor_date.
    - Installments (if installment_count > 0 and remainder > epsilon): due on
      anchor_date + i months, i = 1..installment_count, sequenced after the down payment.
    - installment_count == 0 leaves the remainder unscheduled.
    - A remainder with fewer cents than installment_count yields one installment
      per cent, so no receivable is ever zero.
    - total_count on every record equals the number of records produced.
    """
    total = to_money(total_value)
    if total <= 0:
        return []

    down_payment = compute_down_payment(total, payment_terms)
    remaining = total - down_payment
    installment_count = payment_terms.installment_count
    label = client_name or "client"
    method = payment_method or payment_terms.name

    planned = []
    if down_payment > 0:
        planned.append((
            ReceivableKind.DOWN_PAYMENT,
            down_payment,
            anchor_date,
            f"Down payment - Contract {label}",
        ))

    if installment_count > 0 and remaining > REMAINDER_EPSILON:
        shares = split_evenly(remaining, installment_count)
        for i, amount in enumerate(shares, start=1):
            planned.append((
                ReceivableKind.INSTALLMENT,
                amount,
                anchor_date + relativedelta(months=i),
                f"Installment {i}/{len(shares)} - Contract {label}",
            ))

    total_count = len(planned)
    return [
        ReceivableRecord(
            sequence_number=sequence,
            total_count=total_count,
            amount=amount,
            due_date=due_date,
            description=description,
            kind=kind,
            payment_method=method,
        )
        for sequence, (kind, amount, due_date, description) in enumerate(planned, start=1)
    ]


def describe_terms(total_value: Number, payment_terms: PaymentTerms) -> dict:
    """Down payment and per-installment figures, for contract prose."""
    total = to_money(total_value)
    down_payment = compute_down_payment(total, payment_terms)
    remaining = total - down_payment
    shares = []
    if payment_terms.installment_count > 0 and remaining > REMAINDER_EPSILON:
        shares = split_evenly(remaining, payment_terms.installment_count)
    return {
        "down_payment": down_payment,
        "remaining": remaining,
        "installment_count": len(shares),
        "installment_amount": shares[0] if shares else Decimal("0.00"),
        "last_installment_amount": shares[-1] if shares else Decimal("0.00"),
    }
