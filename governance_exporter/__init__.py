"""Tenant governance report exporter."""
