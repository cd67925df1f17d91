from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional

MONEY_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class InvestmentLevel:
    level: int
    name: str
    min_amount: Decimal
    max_amount: Decimal
    rate: Decimal  # percent per day

    def contains(self, amount: Decimal) -> bool:
        return self.min_amount <= amount <= self.max_amount


INVESTMENT_LEVELS = (
    InvestmentLevel(1, "Starter Plan", Decimal("100"), Decimal("1000"), Decimal("0.3")),
    InvestmentLevel(2, "Growth Plan", Decimal("1001"), Decimal("3000"), Decimal("0.4")),
    InvestmentLevel(3, "Professional Plan", Decimal("3001"), Decimal("6000"), Decimal("0.5")),
    InvestmentLevel(4, "Premium Plan", Decimal("6001"), Decimal("10000"), Decimal("0.6")),
    InvestmentLevel(5, "Elite Plan", Decimal("10001"), Decimal("999999999"), Decimal("0.7")),
)


def quantize_money(amount: Decimal) -> Decimal:
    # Round down so a credit never exceeds what the rate earns
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_DOWN)


def daily_profit(principal: Decimal, rate: Decimal) -> Decimal:
    return quantize_money(principal * rate / Decimal("100"))


def get_investment_level(amount: Decimal) -> Optional[InvestmentLevel]:
    for level in INVESTMENT_LEVELS:
        if level.contains(amount):
            return level
    return None


def calculate_potential_profit(amount: Decimal) -> tuple[Optional[InvestmentLevel], Decimal]:
    level = get_investment_level(amount)
    if level is None:
        return None, Decimal("0")
    return level, daily_profit(amount, level.rate)
