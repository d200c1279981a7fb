"""Decision, risk and order-lifecycle services."""
