"""
Onchain Gateway - prepaid, rate-limited API billing on a ledger.

A gateway operator publishes pricing and limiting rules; consumers register
an API key and prepay lamports; the operator's backend charges each call
through a single atomic Consume that enforces a token bucket, a quota
window and a utilization-based price.
"""

__version__ = "0.1.0"
__author__ = "Onchain Gateway Team"
