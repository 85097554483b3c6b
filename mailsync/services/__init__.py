"""Sync engine services: repositories, dedup, orchestration and subscriptions."""
