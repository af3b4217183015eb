"""
Trust & Risk Decision Engine

Decides how marketplace claims are compensated, keeps bounded trust
scores per customer/merchant/rider, detects coordinated abuse across
accounts and arms the food-safety circuit breaker for merchants.
"""

__version__ = "1.0.0"
