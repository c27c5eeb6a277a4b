"""
Alert message templates.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from nexus_monitor.database.models import AlertLevel

Number = Union[Decimal, float, int]


def format_currency(amount: Optional[Number]) -> str:
    """Whole-dollar USD formatting, e.g. ``$100,000``."""
    if amount is None:
        return "n/a"
    value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.0f}"


def format_percentage(percentage: Number) -> str:
    return f"{Decimal(str(percentage)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)}%"


def alert_message(
    state_name: str,
    level: AlertLevel,
    sales: Number,
    threshold: Optional[Number],
    percentage: Number,
) -> str:
    sales_text = format_currency(sales)
    threshold_text = format_currency(threshold)
    pct_text = format_percentage(percentage)

    if level == AlertLevel.EXCEEDED:
        return (
            f"Your sales in {state_name} have reached {sales_text}, exceeding the "
            f"{threshold_text} economic nexus threshold. You need to register and "
            f"start collecting sales tax."
        )
    if level == AlertLevel.WARNING:
        return (
            f"Your sales in {state_name} have reached {sales_text}, that's {pct_text} "
            f"of the {threshold_text} nexus threshold. You may need to register soon."
        )
    return (
        f"Your sales in {state_name} have reached {sales_text}, that's {pct_text} "
        f"of the {threshold_text} nexus threshold. Keep an eye on this."
    )


def alert_subject(state_name: str, level: AlertLevel, percentage: Number) -> str:
    """Short notification subject line."""
    urgency = {
        AlertLevel.EXCEEDED: "Action Required",
        AlertLevel.WARNING: "Warning",
        AlertLevel.APPROACHING: "Heads Up",
    }[level]
    return f"{urgency}: {state_name} nexus threshold at {format_percentage(percentage)}"
