# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Lifeline - connection resilience and restart supervision for messaging bots.

Keeps a single long-lived protocol connection alive:
  - classifies every close and reconnects with a per-category backoff
  - wipes credentials after repeated stream resets
  - contains per-peer session errors and skips stale messages on startup
  - detects crash loops and stops the process before the supervisor
    restarts it forever

CLI entry point: ``lifeline``
"""

__version__ = "0.1.0"

from .connection import ResilientConnection
from .core.exceptions import ExitCode

__all__ = ["ExitCode", "ResilientConnection", "__version__"]
