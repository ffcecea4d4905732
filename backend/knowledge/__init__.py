"""Hybrid (vector + keyword) retrieval over per-tenant knowledge bases."""
