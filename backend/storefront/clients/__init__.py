"""
HTTP clients for sibling services.

The order, payment and stock services never share a database transaction;
every cross-service read or write goes through these clients.
"""
