"""
Dayframe sync -- local-first mirroring to a remote store.

Local writes land on the device first and are pushed in the background.
Sensitive fields leave the device only as AES-GCM ciphertext under a
key derived from the account password. Failed pushes wait in a durable
retry queue; sign-in pulls the remote snapshot and merges it locally.
"""

from .engine import SyncEngine, configure_logging
from .entities import EntitySync
from .keycache import KeyCache
from .queue import RetryQueue
from .reconcile import Reconciler

__all__ = [
    "EntitySync",
    "KeyCache",
    "Reconciler",
    "RetryQueue",
    "SyncEngine",
    "configure_logging",
]
