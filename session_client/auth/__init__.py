"""
Authentication package for the Profile Session client.

This package contains credential storage, cross-instance change propagation
and automatic token refresh.
"""
