"""Shared helpers for the streamrelay package."""
