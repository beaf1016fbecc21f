"""
Network Configuration

Supported EVM networks with primary/fallback RPC endpoints, explorer APIs
and default gas prices. Endpoints can be overridden from the environment
(<NETWORK>_RPC_URL, <NETWORK>_RPC_URL2) or from the YAML config.
"""

import os
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from loguru import logger

# Multicall3 is deployed at the same address on every supported chain
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"


@dataclass
class NetworkConfig:
    """Static description of one EVM network"""
    id: str
    name: str
    chain_id: int
    rpc_url: str
    rpc_url_fallback: Optional[str]
    block_explorer: str
    explorer_api_url: Optional[str]
    indexer_chain: str
    native_symbol: str = "ETH"
    native_decimals: int = 18
    default_gas_price_wei: int = 20_000_000_000
    is_testnet: bool = False
    multicall_address: str = MULTICALL3_ADDRESS
    extra_tokens: List[str] = field(default_factory=list)

    def rpc_urls(self) -> List[str]:
        """Primary then fallback endpoint"""
        urls = [self.rpc_url]
        if self.rpc_url_fallback and self.rpc_url_fallback != self.rpc_url:
            urls.append(self.rpc_url_fallback)
        return urls

    def to_dict(self) -> Dict:
        return asdict(self)

    def __repr__(self):
        return f"NetworkConfig({self.id}: chain {self.chain_id}, {self.native_symbol})"


DEFAULT_NETWORKS: Dict[str, Dict] = {
    'mainnet': {
        'name': 'Ethereum Mainnet',
        'chain_id': 0x1,
        'rpc_url': 'https://eth.llamarpc.com',
        'rpc_url_fallback': 'https://eth-mainnet.public.blastapi.io',
        'block_explorer': 'https://etherscan.io',
        'explorer_api_url': 'https://api.etherscan.io/api',
        'indexer_chain': 'eth',
        'default_gas_price_wei': 20_000_000_000,  # 20 gwei
    },
    'base': {
        'name': 'Base Mainnet',
        'chain_id': 0x2105,
        'rpc_url': 'https://mainnet.base.org',
        'rpc_url_fallback': 'https://base.blockpi.network/v1/rpc/public',
        'block_explorer': 'https://basescan.org',
        'explorer_api_url': 'https://api.basescan.org/api',
        'indexer_chain': 'base',
        'default_gas_price_wei': 1_000_000,  # 0.001 gwei
    },
    'polygon': {
        'name': 'Polygon',
        'chain_id': 0x89,
        'rpc_url': 'https://polygon-rpc.com',
        'rpc_url_fallback': 'https://polygon.llamarpc.com',
        'block_explorer': 'https://polygonscan.com',
        'explorer_api_url': 'https://api.polygonscan.com/api',
        'indexer_chain': 'polygon',
        'native_symbol': 'MATIC',
        'default_gas_price_wei': 30_000_000_000,  # 30 gwei
    },
    'linea': {
        'name': 'Linea Mainnet',
        'chain_id': 0xe708,
        'rpc_url': 'https://rpc.linea.build',
        'rpc_url_fallback': 'https://linea.drpc.org',
        'block_explorer': 'https://lineascan.build',
        'explorer_api_url': 'https://api.lineascan.build/api',
        'indexer_chain': 'linea',
        'default_gas_price_wei': 5_000_000,  # 0.005 gwei
    },
    'arbitrum': {
        'name': 'Arbitrum Mainnet',
        'chain_id': 0xa4b1,
        'rpc_url': 'https://arb1.arbitrum.io/rpc',
        'rpc_url_fallback': 'https://arbitrum-one.public.blastapi.io',
        'block_explorer': 'https://arbiscan.io',
        'explorer_api_url': 'https://api.arbiscan.io/api',
        'indexer_chain': 'arbitrum',
        'default_gas_price_wei': 100_000_000,  # 0.1 gwei
    },
    'optimism': {
        'name': 'Optimism Mainnet',
        'chain_id': 0xa,
        'rpc_url': 'https://mainnet.optimism.io',
        'rpc_url_fallback': 'https://optimism.public.blastapi.io',
        'block_explorer': 'https://optimistic.etherscan.io',
        'explorer_api_url': 'https://api-optimistic.etherscan.io/api',
        'indexer_chain': 'optimism',
        'default_gas_price_wei': 1_000_000,  # 0.001 gwei
    },
    'goerli': {
        'name': 'Goerli Testnet',
        'chain_id': 0x5,
        'rpc_url': 'https://eth-goerli.public.blastapi.io',
        'rpc_url_fallback': None,
        'block_explorer': 'https://goerli.etherscan.io',
        'explorer_api_url': 'https://api-goerli.etherscan.io/api',
        'indexer_chain': 'goerli',
        'default_gas_price_wei': 20_000_000_000,
        'is_testnet': True,
    },
}


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, '')
    return [item.strip() for item in raw.split(',') if item.strip()]


class NetworkRegistry:
    """
    Resolved network table

    Priority for each field:
    1. Environment (<NETWORK>_RPC_URL / _RPC_URL2 / _EXTRA_TOKENS)
    2. YAML overrides (networks section)
    3. Built-in defaults
    """

    def __init__(self, overrides: Optional[Dict[str, Dict]] = None):
        self.networks: Dict[str, NetworkConfig] = {}
        overrides = overrides or {}

        for network_id in list(DEFAULT_NETWORKS) + [n for n in overrides if n not in DEFAULT_NETWORKS]:
            data = dict(DEFAULT_NETWORKS.get(network_id, {}))
            custom = overrides.get(network_id) or {}
            data.update({k: v for k, v in custom.items() if k in NetworkConfig.__dataclass_fields__})

            prefix = network_id.upper()
            data['rpc_url'] = os.getenv(f"{prefix}_RPC_URL") or data.get('rpc_url')
            data['rpc_url_fallback'] = os.getenv(f"{prefix}_RPC_URL2") or data.get('rpc_url_fallback')
            data['extra_tokens'] = list(data.get('extra_tokens') or []) + _env_list(f"{prefix}_EXTRA_TOKENS")

            if not data.get('rpc_url') or 'chain_id' not in data:
                logger.warning(f"Network {network_id} is missing rpc_url/chain_id, skipping")
                continue

            data.setdefault('name', network_id)
            data.setdefault('block_explorer', '')
            data.setdefault('explorer_api_url', None)
            data.setdefault('indexer_chain', network_id)
            data.setdefault('rpc_url_fallback', None)
            self.networks[network_id] = NetworkConfig(id=network_id, **data)

        logger.debug(f"Network registry loaded: {', '.join(self.networks)}")

    def get(self, network_id: str) -> Optional[NetworkConfig]:
        return self.networks.get(network_id)

    def require(self, network_id: str) -> NetworkConfig:
        config = self.networks.get(network_id)
        if config is None:
            raise KeyError(f"Unsupported network: {network_id}")
        return config

    def is_supported(self, network_id: str) -> bool:
        return network_id in self.networks

    def all_ids(self) -> List[str]:
        return list(self.networks)

    def mainnet_ids(self) -> List[str]:
        return [n for n, cfg in self.networks.items() if not cfg.is_testnet]

    def get_rpc_url(self, network_id: str, use_fallback: bool = False) -> str:
        config = self.require(network_id)
        if use_fallback and config.rpc_url_fallback:
            return config.rpc_url_fallback
        return config.rpc_url
