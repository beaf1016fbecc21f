"""
Rescue Configuration

Loads rescue_config.yaml on top of built-in defaults and pulls secrets from
the environment (.env supported through python-dotenv).
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

DEFAULT_CONFIG: Dict[str, Any] = {
    'networks': {},
    'discovery': {
        'sufficient_record_count': 25,
        'erc1155_scan_limit': 1000,
        'log_backfill_window_blocks': 500,
        'log_backfill_max_contracts': 50,
        'log_backfill_windows': {
            'default': 30,
            'linea': 200,
            'arbitrum': 300,
            'optimism': 500,
        },
    },
    'fees': {
        'bump_percent': {'default': 120, 'linea': 150},
        'cache_ttl_seconds': 15,
        'gas_limits': {},
    },
    'transfer': {
        'native_reserve_wei': 10 ** 15,  # 0.001 ETH
        'send_timeout_seconds': 30,
        'confirmation_timeout_seconds': 60,
        'sweep_native_last': True,
    },
    'sessions': {
        'inter_network_delay_seconds': 2,
        'min_interval_seconds': 10,
        'max_session_age_hours': 24,
        'janitor_interval_seconds': 3600,
    },
    'solana': {
        'rpc_url': None,
        'cu_limit': 400_000,
        'buffer_lamports': 50_000,
        'retention_threshold_lamports': 10_000_000,  # 0.01 SOL
        'simulation_decrement_lamports': 20_000,
        'max_simulation_attempts': 5,
        'fee_safety_lamports': 10_000,
        'priority_fee_percent': 0.03,
    },
    'scam_filter': {},
    'indexer': {
        'base_url': 'https://deep-index.moralis.io/api/v2.2',
        'rate_limit_seconds': 30,
        'price_cache_ttl_seconds': 300,
    },
    'storage': {
        'db_path': 'rescue_history.db',
        'lock_ttl_seconds': 25,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}


def _deep_merge(base: Dict, custom: Dict) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in (custom or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class RescueConfig:
    """
    Resolved configuration

    Features:
    - YAML overrides merged over defaults
    - Dotted lookups: config.get('solana.cu_limit')
    - API keys and RPC overrides from environment
    """

    def __init__(self, data: Optional[Dict] = None, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else None
        self.data = _deep_merge(DEFAULT_CONFIG, data or {})

        self.moralis_api_key = os.getenv('MORALIS_API_KEY') or None
        self.etherscan_api_key = os.getenv('ETHERSCAN_API_KEY') or None
        self.solana_rpc_url = os.getenv('SOLANA_RPC_URL') or self.get('solana.rpc_url')

    def get(self, path: str, default: Any = None) -> Any:
        node: Any = self.data
        for part in path.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def section(self, name: str) -> Dict:
        return dict(self.data.get(name) or {})

    def per_network(self, path: str, network: str, default: Any = None) -> Any:
        """Look up a {network: value, default: value} table"""
        table = self.get(path) or {}
        if network in table:
            return table[network]
        return table.get('default', default)


def load_config(config_path: str = "rescue_config.yaml", env_file: Optional[str] = None) -> RescueConfig:
    """
    Load configuration from YAML with defaults

    Args:
        config_path: Path to YAML config
        env_file: Optional .env path (defaults to python-dotenv's lookup)

    Returns:
        RescueConfig
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    data: Dict = {}
    try:
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            logger.info(f"Loaded rescue config from {config_file}")
        else:
            logger.warning(f"Config file {config_file} not found, using defaults")
    except Exception as e:
        logger.warning(f"Failed to load config {config_path}: {e}, using defaults")
        data = {}

    return RescueConfig(data, config_path=config_path)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure loguru sinks (stderr + optional rotating file)"""
    logger.remove()
    logger.add(sys.stderr, level=level)
    if log_file:
        logger.add(
            log_file, level=level, rotation="10 MB", retention="10 days",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"
        )
    logger.debug(f"Logging configured (level={level}, file={log_file})")
