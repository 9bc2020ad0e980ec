"""Metric ingestion and background scheduling."""
