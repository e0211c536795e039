"""
Clearhouse

Settlement engine for tokenized receivables:
- Claim auctions with payment fallback across bidders
- Custody return for unsold claims
- Maturity payments with overdue escalation
- Periodic schedulers driving both forward
"""

__version__ = "0.1.0"
