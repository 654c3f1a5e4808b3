"""Dashboard figures derived from a list of transactions.

Everything here is a pure function of its input: nothing touches the
database, and the same list always yields the same result. Inputs only
need `amount` (signed), `date` and `category` attributes, so ORM rows
and plain records work alike.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Sequence

from models import TransactionKind

ZERO = Decimal("0")


@dataclass(frozen=True)
class Totals:
    income: Decimal
    expenses: Decimal
    balance: Decimal


@dataclass(frozen=True)
class CategorySlice:
    category: str
    amount: Decimal
    count: int
    percentage: float


@dataclass(frozen=True)
class BalancePoint:
    date: date
    amount: Decimal
    balance: Decimal
    kind: TransactionKind


@dataclass(frozen=True)
class HealthScore:
    score: int
    level: str


@dataclass(frozen=True)
class DashboardSummary:
    totals: Totals
    savings_rate: float
    health: HealthScore
    categories: tuple[CategorySlice, ...]
    trend: tuple[BalancePoint, ...]
    top: tuple[Any, ...]


def _amount(txn: Any) -> Decimal:
    value = txn.amount
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def totals(transactions: Sequence[Any]) -> Totals:
    income = sum((a for a in map(_amount, transactions) if a > 0), ZERO)
    expenses = sum((a for a in map(_amount, transactions) if a < 0), ZERO)
    return Totals(income=income, expenses=expenses, balance=income + expenses)


def category_breakdown(transactions: Sequence[Any]) -> list[CategorySlice]:
    sums: dict[str, Decimal] = {}
    counts: dict[str, int] = {}
    for txn in transactions:
        amount = _amount(txn)
        if amount >= 0:
            continue
        sums[txn.category] = sums.get(txn.category, ZERO) + abs(amount)
        counts[txn.category] = counts.get(txn.category, 0) + 1

    total = sum(sums.values(), ZERO)
    slices = [
        CategorySlice(
            category=name,
            amount=amount,
            count=counts[name],
            percentage=float(amount / total * 100) if total else 0.0,
        )
        for name, amount in sums.items()
    ]
    slices.sort(key=lambda s: (-s.amount, s.category))
    return slices


def running_balance(transactions: Sequence[Any]) -> list[BalancePoint]:
    points: list[BalancePoint] = []
    balance = ZERO
    for txn in sorted(transactions, key=lambda t: t.date):
        amount = _amount(txn)
        balance += amount
        points.append(
            BalancePoint(
                date=txn.date,
                amount=amount,
                balance=balance,
                kind=TransactionKind.income if amount >= 0 else TransactionKind.expense,
            )
        )
    return points


def top_transactions(transactions: Sequence[Any], n: int = 5) -> list[Any]:
    if n <= 0:
        return []
    return sorted(transactions, key=lambda t: abs(_amount(t)), reverse=True)[:n]


def savings_rate(figures: Totals) -> float:
    if figures.income <= 0:
        return 0.0
    return float((figures.income + figures.expenses) / figures.income * 100)


def health_score(figures: Totals) -> HealthScore:
    rate = savings_rate(figures)
    score = 50
    if rate > 20:
        score += 25
    elif rate > 10:
        score += 15
    elif rate > 0:
        score += 5
    if figures.income > abs(figures.expenses) * 3:
        score += 15
    score = min(100, max(0, score))

    if score >= 80:
        level = "Excellent"
    elif score >= 60:
        level = "Good"
    elif score >= 40:
        level = "Fair"
    else:
        level = "Needs Work"
    return HealthScore(score=score, level=level)


def summarize(transactions: Sequence[Any], top_n: int = 5) -> DashboardSummary:
    figures = totals(transactions)
    return DashboardSummary(
        totals=figures,
        savings_rate=savings_rate(figures),
        health=health_score(figures),
        categories=tuple(category_breakdown(transactions)),
        trend=tuple(running_balance(transactions)),
        top=tuple(top_transactions(transactions, top_n)),
    )
