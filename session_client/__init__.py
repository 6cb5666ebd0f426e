"""
Profile Session client.

Client-side credential lifecycle, cross-instance session sync and
reconciliation of local measurements with the remote profile.
"""

__version__ = "1.0.0"
