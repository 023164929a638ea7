"""Logward: multi-tenant security log ingestion, normalization and alerting."""
