"""Provider catalog reconciliation and member entitlement projection.

Keeps the local tier/offer/member catalog mirrored on an external payment
provider and projects provider webhooks back onto member state.
"""

__version__ = "0.1.0"
