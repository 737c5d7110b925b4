"""
Vault sync -- keeping every replica on the newest ciphertext.

Remote: last-writer-wins reconciliation against an object store
(SyncReconciler + a Transport). Local: newest-mtime mirroring across
replica directories (DirectoryMirror), with an optional watch mode.
"""

from .engine import SyncReconciler
from .mirror import DirectoryMirror, ReplicaCopyFailure
from .transport import DirectoryTransport, HttpTransport, TransferFailure, Transport

__all__ = [
    "DirectoryMirror",
    "DirectoryTransport",
    "HttpTransport",
    "ReplicaCopyFailure",
    "SyncReconciler",
    "TransferFailure",
    "Transport",
]
