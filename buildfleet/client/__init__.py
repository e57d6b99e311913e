"""Compute Engine client boundary.

NOTE: only the protocol is imported at package level. For the real
client, import explicitly:

    from buildfleet.client.gce import GCEClient
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import ComputeClient

if TYPE_CHECKING:
    from .gce import GCEClient

__all__ = ["ComputeClient"]
