"""Payment orchestrator and gateway strategies."""
