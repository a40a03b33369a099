"""Persistence sink for reconciled readings and risk index results."""
