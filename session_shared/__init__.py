"""
Shared models, interfaces, exceptions and logging for the Profile Session client.
"""
