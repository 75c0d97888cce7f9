"""Service layer for the billing lifecycle engine."""
