"""
HTLC (Hash Time-Locked Contract) clients for each chain family.

- EVM: single SwapSageHTLC contract, HTLCs keyed by bytes32 id
- Cosmos: one CosmWasm contract instance per HTLC (instantiate2)

Both expose the HTLCClient interface used by the resolver engine. The
concrete clients are imported lazily by the service so web3 is only
loaded when an EVM chain is configured.
"""

from .base import HTLCClient, HTLCDetails, HTLCState, TxReceipt

__all__ = ["HTLCClient", "HTLCDetails", "HTLCState", "TxReceipt"]
