"""
Nexus Monitor

Economic nexus exposure tracking for multi-channel sellers: monthly sales
aggregation per state, rolling and calendar-year exposure windows, and
deduplicated threshold alerts.
"""

__version__ = "1.0.0"
