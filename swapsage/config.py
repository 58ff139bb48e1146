"""
Resolver configuration.

Loaded from a JSON file (see config.example.json). Secrets never live in
the file: EVM pool keys come from SWAPSAGE_POOL_KEY_<CHAIN> (or the shared
POOL_PRIVATE_KEY), Cosmos pool keys stay in the node keyring.
"""

import json
import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, replace

from .errors import ConfigError

log = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "~/.swapsage"

CHAIN_FAMILIES = ("evm", "cosmos")


@dataclass
class ChainConfig:
    """One chain the resolver operates on."""
    name: str                               # e.g. "sepolia", "cosmos-testnet"
    family: str                             # evm | cosmos
    rpc_url: str                            # EVM JSON-RPC, or Cosmos tendermint RPC
    htlc_address: str = ""                  # EVM HTLC contract
    chain_id: Any = None                    # int for EVM, str for Cosmos
    tokens: Dict[str, str] = field(default_factory=dict)  # SYMBOL -> address/denom

    # Cosmos
    lcd_url: str = ""
    code_id: Optional[int] = None
    code_hash: str = ""
    address_prefix: str = "wasm"
    native_denom: str = "stake"
    gas_prices: str = ""                    # e.g. "0.025stake"
    cli_path: Optional[str] = None          # wasmd / gaiad binary
    key_name: str = "pool"
    keyring_backend: str = "test"
    pool_address: str = ""

    # EVM
    private_key: Optional[str] = field(default=None, repr=False)
    log_lookback_blocks: int = 50_000

    # Per-chain ResolverConfig overrides, e.g. {"max_retries": 5, "gas_limit": 800000}
    resolver: Dict[str, Any] = field(default_factory=dict)

    def validate(self):
        if self.family not in CHAIN_FAMILIES:
            raise ConfigError(f"Chain {self.name}: unknown family '{self.family}'")
        if not self.rpc_url:
            raise ConfigError(f"Chain {self.name}: rpc_url is required")
        if self.family == "evm":
            if not self.htlc_address:
                raise ConfigError(f"Chain {self.name}: htlc_address is required for evm chains")
            if not self.private_key:
                raise ConfigError(f"Chain {self.name}: no pool key (set {key_env_var(self.name)})")
        else:
            if not self.lcd_url:
                raise ConfigError(f"Chain {self.name}: lcd_url is required for cosmos chains")
            if self.code_id is None or not self.code_hash:
                raise ConfigError(f"Chain {self.name}: code_id and code_hash are required for cosmos chains")


@dataclass
class ResolverConfig:
    """Engine tuning shared by all chains."""
    processing_interval: float = 10.0       # seconds between cycles
    max_batch_size: int = 10
    max_concurrency: int = 4
    max_retries: int = 3
    retry_backoff_seconds: float = 2.0      # doubles per attempt
    gas_limit: int = 500_000
    max_gas_price: int = 20_000_000_000     # 20 gwei
    gas_price_multiplier_pct: int = 120
    rpc_timeout: float = 30.0
    tx_timeout: float = 120.0
    timelock_divisor: int = 2
    timelock_safety_margin: int = 1800
    min_destination_window: int = 600
    ambiguous_fund_max_cycles: int = 30
    ambiguous_claim_max_cycles: int = 5
    source_visibility_grace: int = 120      # seconds a new source HTLC may be invisible
    stale_operation_seconds: int = 900
    auto_refund: bool = True

    def validate(self):
        if self.processing_interval <= 0:
            raise ConfigError("processing_interval must be positive")
        if self.max_batch_size < 1 or self.max_concurrency < 1:
            raise ConfigError("max_batch_size and max_concurrency must be >= 1")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.timelock_divisor < 2:
            raise ConfigError("timelock_divisor must be >= 2")
        if self.ambiguous_fund_max_cycles < 1 or self.ambiguous_claim_max_cycles < 1:
            raise ConfigError("ambiguous_fund_max_cycles and ambiguous_claim_max_cycles must be >= 1")


@dataclass
class ServiceConfig:
    """Top-level service configuration."""
    chains: List[ChainConfig] = field(default_factory=list)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    swaps_db_path: Optional[str] = None
    liquidity_db_path: Optional[str] = None
    liquidity: List[Dict[str, Any]] = field(default_factory=list)  # bootstrap entries
    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8090
    log_level: str = "INFO"

    def chain(self, name: str) -> ChainConfig:
        for c in self.chains:
            if c.name == name:
                return c
        raise ConfigError(f"Unknown chain: {name}")

    def resolver_for(self, chain_name: str) -> ResolverConfig:
        """Shared resolver settings with the chain's overrides applied."""
        for c in self.chains:
            if c.name == chain_name and c.resolver:
                return replace(self.resolver, **c.resolver)
        return self.resolver

    def validate(self):
        if not self.chains:
            raise ConfigError("At least one chain must be configured")
        names = [c.name for c in self.chains]
        if len(names) != len(set(names)):
            raise ConfigError(f"Duplicate chain names: {names}")
        self.resolver.validate()
        for c in self.chains:
            c.validate()
            try:
                self.resolver_for(c.name).validate()
            except ConfigError as e:
                raise ConfigError(f"Chain {c.name} resolver: {e}")


def key_env_var(chain_name: str) -> str:
    """Environment variable holding the pool key for a chain."""
    return "SWAPSAGE_POOL_KEY_" + chain_name.upper().replace("-", "_")


def _chain_from_dict(data: Dict[str, Any]) -> ChainConfig:
    known = set(ChainConfig.__dataclass_fields__)
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Chain {data.get('name', '?')}: unknown keys {sorted(unknown)}")
    try:
        chain = ChainConfig(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid chain config: {e}")
    unknown = set(chain.resolver) - set(ResolverConfig.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"Chain {chain.name}: unknown resolver keys {sorted(unknown)}")
    if chain.family == "evm" and not chain.private_key:
        chain.private_key = os.environ.get(key_env_var(chain.name)) or os.environ.get("POOL_PRIVATE_KEY")
    if chain.cli_path:
        chain.cli_path = os.path.expanduser(chain.cli_path)
    return chain


def config_from_dict(data: Dict[str, Any]) -> ServiceConfig:
    """Build a ServiceConfig from parsed JSON. Does not validate."""
    resolver_data = dict(data.get("resolver", {}))
    unknown = set(resolver_data) - set(ResolverConfig.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"Unknown resolver keys: {sorted(unknown)}")

    state_dir = os.path.expanduser(data.get("state_dir", DEFAULT_STATE_DIR))
    cfg = ServiceConfig(
        chains=[_chain_from_dict(c) for c in data.get("chains", [])],
        resolver=ResolverConfig(**resolver_data),
        swaps_db_path=data.get("swaps_db_path", os.path.join(state_dir, "swaps.json")),
        liquidity_db_path=data.get("liquidity_db_path", os.path.join(state_dir, "liquidity.json")),
        liquidity=list(data.get("liquidity", [])),
        api_enabled=data.get("api_enabled", True),
        api_host=data.get("api_host", "127.0.0.1"),
        api_port=int(data.get("api_port", 8090)),
        log_level=data.get("log_level", "INFO"),
    )

    # Environment overrides
    if os.environ.get("SWAPSAGE_SWAPS_DB"):
        cfg.swaps_db_path = os.environ["SWAPSAGE_SWAPS_DB"]
    if os.environ.get("SWAPSAGE_LIQUIDITY_DB"):
        cfg.liquidity_db_path = os.environ["SWAPSAGE_LIQUIDITY_DB"]
    if os.environ.get("SWAPSAGE_API_PORT"):
        cfg.api_port = int(os.environ["SWAPSAGE_API_PORT"])
    if os.environ.get("SWAPSAGE_LOG_LEVEL"):
        cfg.log_level = os.environ["SWAPSAGE_LOG_LEVEL"]
    return cfg


def load_config(path: Optional[str] = None) -> ServiceConfig:
    """
    Load and validate service configuration.

    Args:
        path: JSON config file. Defaults to $SWAPSAGE_CONFIG, then
              ~/.swapsage/config.json.

    Raises:
        ConfigError: file missing, unparsable or invalid
    """
    path = path or os.environ.get("SWAPSAGE_CONFIG") or os.path.join(DEFAULT_STATE_DIR, "config.json")
    config_path = Path(os.path.expanduser(path))
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}")

    cfg = config_from_dict(data)
    cfg.validate()
    log.info(f"Loaded config from {config_path}: chains={[c.name for c in cfg.chains]}")
    return cfg
