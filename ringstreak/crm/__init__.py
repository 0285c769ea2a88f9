"""Streak CRM access: HTTP client, entity mapping and enrichment."""
