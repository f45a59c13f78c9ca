"""Order orchestrator: checkout from cart and order lifecycle."""
