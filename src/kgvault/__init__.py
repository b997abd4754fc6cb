"""kgvault: durable checkpoints, version-chain integrity and backup storage
for code knowledge graphs.

    kgvault.storage      StorageProvider backends + StorageRegistry
    kgvault.jobs         durable checkpoint job store + coordinator
    kgvault.temporal     version-chain validator
    kgvault.checkpoints  checkpoint artifacts on storage
    kgvault.history      graph-store contract + in-memory reference
"""

__version__ = "0.1.0"
