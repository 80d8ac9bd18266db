"""Billing cycle arithmetic.

A cycle is defined purely by day-of-month numbers. Month lengths are ignored
on purpose: day 31 is followed by day 1 even in 30-day months, and labels and
archival timing are all defined relative to that approximation.
"""

from dataclasses import asdict, dataclass
from datetime import date
from typing import Iterable, Optional, Protocol

from models import ItemType

MONTH_ABBR = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)
LAST_DAY = 31


class ScheduledItem(Protocol):
    type: object
    day_of_month: int


class LedgerItem(Protocol):
    type: object
    amount_cents: int
    is_paid: bool


@dataclass(frozen=True)
class CycleDays:
    start_day: Optional[int]
    end_day: Optional[int]


@dataclass(frozen=True)
class BalanceCards:
    current_balance: int
    expected_balance: int
    deficit_excess: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def is_income(item_type: object) -> bool:
    return getattr(item_type, "value", item_type) == ItemType.income.value


def _next_month(month: int) -> int:
    return month % 12 + 1


def calculate_cycle_days(items: Iterable[ScheduledItem]) -> CycleDays:
    income_days: list[int] = []
    payment_days: list[int] = []
    for item in items:
        if is_income(item.type):
            income_days.append(item.day_of_month)
        else:
            payment_days.append(item.day_of_month)

    if not income_days and not payment_days:
        return CycleDays(None, None)

    start_day = min(income_days) if income_days else min(payment_days)
    if not payment_days:
        return CycleDays(start_day, start_day)

    last_payment_day = max(payment_days)
    end_day = 1 if last_payment_day >= LAST_DAY else last_payment_day + 1
    return CycleDays(start_day, end_day)


def calculate_balance_cards(balance: int, items: Iterable[LedgerItem]) -> BalanceCards:
    """Project the balance forward.

    ``expected_balance`` only moves by unpaid items, since paid ones are
    already part of the real bank balance. ``deficit_excess`` compares all
    income with all payments for the cycle regardless of progress.
    """
    unpaid_income = unpaid_payments = 0
    total_income = total_payments = 0
    for item in items:
        amount = int(item.amount_cents)
        if is_income(item.type):
            total_income += amount
            if not item.is_paid:
                unpaid_income += amount
        else:
            total_payments += amount
            if not item.is_paid:
                unpaid_payments += amount

    return BalanceCards(
        current_balance=balance,
        expected_balance=balance + unpaid_income - unpaid_payments,
        deficit_excess=total_income - total_payments,
    )


def cycle_wraps(start_day: int, end_day: int) -> bool:
    return end_day <= start_day


def build_cycle_label(start_day: int, end_day: int, reference: date) -> str:
    """Label the cycle the reference date falls in, e.g. ``"Jan 25 - Feb 16"``."""
    month = reference.month
    day = reference.day
    if cycle_wraps(start_day, end_day):
        # Only the gap between end and the next start belongs to a later cycle.
        advance = end_day < day < start_day
    else:
        advance = day > end_day
    if advance:
        month = _next_month(month)

    end_month = month if end_day > start_day else _next_month(month)
    return (
        f"{MONTH_ABBR[month - 1]} {start_day} - {MONTH_ABBR[end_month - 1]} {end_day}"
    )


def is_past_cycle_end(start_day: int, end_day: int, today: date) -> bool:
    day = today.day
    if cycle_wraps(start_day, end_day):
        return end_day <= day < start_day
    return day >= end_day


def build_archive_label(today: date) -> str:
    return f"{today.year}-{today.month:02d}"
