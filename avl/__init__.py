"""Avalanche node launcher (avalauncher).

Single-writer manager for validator-style nodes, each backed by a Docker container:
 - lifecycle operations (create / start / stop / delete / logs) behind per-node locks
 - an append-only event trail for every transition
 - a background reconciler that corrects drift between stored and live status

Containers are labeled with the owning node id so they can be re-discovered after restarts.
"""

__version__ = "0.1.0"
