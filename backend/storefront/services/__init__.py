"""Business services: order, payment and inventory orchestration."""
