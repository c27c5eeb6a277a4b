"""
Alerts Module
"""
from .engine import AlertEngine, NewAlert, required_levels
from .messages import alert_message, alert_subject, format_currency

__all__ = [
    "AlertEngine",
    "NewAlert",
    "required_levels",
    "alert_message",
    "alert_subject",
    "format_currency",
]
