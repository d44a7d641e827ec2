"""Google Compute Engine backend for Stratus.

Environment Variables:
    GOOGLE_CLOUD_PROJECT: GCP project ID (used when a cloud sets none)
    GOOGLE_APPLICATION_CREDENTIALS: Path to service account key (optional)
"""

from __future__ import annotations

from .client import ComputeClient, resolve_project

__all__ = [
    "ComputeClient",
    "resolve_project",
]
