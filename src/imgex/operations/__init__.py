"""Manifest, layer and export job operations."""
