"""
Inventory services.

- repository: compare-and-swap stock writes and ledger queries
- ledger: stock mutation with conflict retry, history and statistics
- reconciler: restoring stock after refunds and cancellations
"""
