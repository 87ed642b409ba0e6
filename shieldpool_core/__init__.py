"""
ShieldPool - a shielded multi-token privacy-pool ledger.

Key features:
- Incremental MiMC Merkle accumulator with a bounded root history
- Exactly-once spending through nullifier and commitment registries
- Proof-gated shield / transfer / unshield / swap, batches and multi-input transfers
- Per-token balance accounting with an irreversible ever-supported set
- Relayer fee settlement with atomic payouts
- SQLite persistence, event indexer and an aiohttp REST API
"""

__version__ = "0.4.0"
__all__ = [
    "field",
    "merkle",
    "registry",
    "verifier",
    "ledger",
    "tokens",
    "settlement",
    "custody",
    "events",
    "indexer",
    "storage",
    "api",
]
