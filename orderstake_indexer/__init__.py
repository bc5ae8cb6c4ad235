"""OrderStake event indexer.

Ingests staking-factory and NFT-launch events into restart-safe JSON streams,
discovers child contracts from creation events and keeps pool/collection
snapshots up to date.
"""

__version__ = "0.1.0"
