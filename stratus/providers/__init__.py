"""Compute backends for Stratus."""
