"""
Node clients for chains whose HTLCs are not driven through web3.
"""

from .cosmos import CosmosClient

__all__ = ["CosmosClient"]
