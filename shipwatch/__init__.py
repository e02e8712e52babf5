"""
Shipwatch
=========

SLA-risk scoring and escalation ladder engine for shipment operations.
"""

__version__ = "1.0.0"
