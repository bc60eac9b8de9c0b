"""Prometheus collectors shared by the converter CLI and HTTP service."""
