"""
Meterline - Usage Metering & Overage Billing

Counts outbound email and SMS per tenant per calendar month, invoices the
overage once per period and settles invoices from Stripe notifications.
"""

__version__ = "1.0.0"
