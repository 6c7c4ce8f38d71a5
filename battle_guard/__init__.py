"""
Battle Guard: autonomous sales-negotiation battles under a hard daily budget.
"""

__version__ = "0.1.0"
