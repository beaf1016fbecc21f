"""
Fee Strategy

Per-network fee overrides, Solana priority fee rate and gas limits.

Features:
- Bumped EIP-1559 fees (linea 150%, everything else 120%)
- Short-lived per-network fee cache
- Static gas limit table with dynamic estimation on top
- Never blocks a transfer: failures degrade to "no override"
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Dict, Optional

from loguru import logger

DEFAULT_BUMP_PERCENT = 120
NETWORK_BUMP_PERCENT = {'linea': 150}

GAS_ESTIMATE_TIMEOUT_SECONDS = 10
GAS_BUFFER_PERCENT = 120
MIN_REAL_GAS_ESTIMATE = 21000

# Static gas limits per network and operation
DEFAULT_GAS_LIMITS: Dict[str, Dict[str, int]] = {
    'mainnet': {
        'erc20_transfer': 100_000, 'erc721_transfer': 250_000, 'erc1155_transfer': 300_000,
        'native_transfer': 30_000, 'approve': 70_000, 'default': 150_000,
    },
    'arbitrum': {
        'erc20_transfer': 800_000, 'erc721_transfer': 1_200_000, 'erc1155_transfer': 1_500_000,
        'native_transfer': 200_000, 'approve': 600_000, 'default': 1_000_000,
    },
    'optimism': {
        'erc20_transfer': 500_000, 'erc721_transfer': 700_000, 'erc1155_transfer': 900_000,
        'native_transfer': 150_000, 'approve': 350_000, 'default': 600_000,
    },
    'base': {
        'erc20_transfer': 350_000, 'erc721_transfer': 500_000, 'erc1155_transfer': 650_000,
        'native_transfer': 100_000, 'approve': 250_000, 'default': 400_000,
    },
    'linea': {
        'erc20_transfer': 250_000, 'erc721_transfer': 400_000, 'erc1155_transfer': 550_000,
        'native_transfer': 80_000, 'approve': 200_000, 'default': 300_000,
    },
    'polygon': {
        'erc20_transfer': 200_000, 'erc721_transfer': 350_000, 'erc1155_transfer': 500_000,
        'native_transfer': 60_000, 'approve': 150_000, 'default': 250_000,
    },
    'default': {
        'erc20_transfer': 200_000, 'erc721_transfer': 400_000, 'erc1155_transfer': 550_000,
        'native_transfer': 60_000, 'approve': 150_000, 'default': 300_000,
    },
}

# Solana compute budget bounds
MIN_COMPUTE_UNITS = 50_000
MAX_COMPUTE_UNITS = 600_000
DEFAULT_COMPUTE_UNITS = 400_000
MIN_PRIORITY_PERCENT = 0.02
MAX_PRIORITY_PERCENT = 0.05


@dataclass
class FeeEstimate:
    """Raw fee data read from a node"""
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None and self.max_priority_fee_per_gas is not None


@dataclass
class FeeOverrides:
    """Fee fields to merge into a transaction (empty means node defaults)"""
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.max_fee_per_gas is None and self.gas_price is None

    @property
    def per_gas_cost(self) -> int:
        """Worst-case cost of one gas unit"""
        return self.max_fee_per_gas or self.gas_price or 0

    def apply(self, tx: Dict) -> Dict:
        """Return a copy of tx with the override fields set"""
        updated = dict(tx)
        if self.max_fee_per_gas is not None:
            updated['maxFeePerGas'] = self.max_fee_per_gas
            updated['maxPriorityFeePerGas'] = self.max_priority_fee_per_gas or 0
        elif self.gas_price is not None:
            updated['gasPrice'] = self.gas_price
        return updated

    def to_dict(self) -> Dict:
        return {
            'max_fee_per_gas': self.max_fee_per_gas,
            'max_priority_fee_per_gas': self.max_priority_fee_per_gas,
            'gas_price': self.gas_price,
        }


def bump(value: Optional[int], percent: int) -> Optional[int]:
    if value is None:
        return None
    return value * percent // 100


class FeeStrategy:
    """
    Fee overrides with a short TTL cache per network

    Features:
    - Per-network bump percent (configurable)
    - EIP-1559 and legacy gas price support
    - Warning + empty override on any failure
    """

    def __init__(
        self,
        bump_percent: Optional[Dict[str, int]] = None,
        cache_ttl_seconds: float = 15.0,
        gas_limits: Optional[Dict[str, Dict[str, int]]] = None
    ):
        """
        Initialize fee strategy

        Args:
            bump_percent: {network: percent, 'default': percent}
            cache_ttl_seconds: How long a fee estimate is reused
            gas_limits: Per-network overrides merged over DEFAULT_GAS_LIMITS
        """
        self.bump_percent = {'default': DEFAULT_BUMP_PERCENT, **NETWORK_BUMP_PERCENT}
        self.bump_percent.update(bump_percent or {})
        self.cache_ttl = cache_ttl_seconds
        self.cache: Dict[str, tuple] = {}

        self.gas_limits = {net: dict(ops) for net, ops in DEFAULT_GAS_LIMITS.items()}
        for network, ops in (gas_limits or {}).items():
            self.gas_limits.setdefault(network, dict(DEFAULT_GAS_LIMITS['default'])).update(ops)

        logger.info(f"💰 Fee Strategy initialized (cache TTL: {cache_ttl_seconds}s)")

    def bump_for(self, network: str) -> int:
        return self.bump_percent.get(network, self.bump_percent['default'])

    def _get_cached(self, network: str) -> Optional[FeeOverrides]:
        entry = self.cache.get(network)
        if entry is None:
            return None
        cached_at, overrides = entry
        if time.monotonic() - cached_at < self.cache_ttl:
            logger.debug(f"💾 Fee cache HIT: {network}")
            return overrides
        return None

    async def overrides(self, network: str, gateway) -> FeeOverrides:
        """
        Build fee overrides for the next transaction on a network

        Args:
            network: Network id
            gateway: EvmGateway (anything with an async get_fee_estimate())

        Returns:
            FeeOverrides (empty when the node gave nothing usable)
        """
        cached = self._get_cached(network)
        if cached is not None:
            return cached

        try:
            estimate = await gateway.get_fee_estimate()
        except Exception as e:
            logger.warning(f"⚠ Fee estimate failed on {network}: {e}, using node defaults")
            return FeeOverrides()

        percent = self.bump_for(network)
        if estimate.is_eip1559:
            result = FeeOverrides(
                max_fee_per_gas=bump(estimate.max_fee_per_gas, percent),
                max_priority_fee_per_gas=bump(estimate.max_priority_fee_per_gas, percent),
            )
        elif estimate.gas_price is not None:
            result = FeeOverrides(gas_price=bump(estimate.gas_price, percent))
        else:
            logger.warning(f"⚠ No fee data returned on {network}, using node defaults")
            return FeeOverrides()

        self.cache[network] = (time.monotonic(), result)
        logger.debug(f"Fee overrides for {network} (+{percent - 100}%): {result.to_dict()}")
        return result

    def default_gas_limit(self, network: str, operation: str) -> int:
        table = self.gas_limits.get(network) or self.gas_limits['default']
        return table.get(operation) or table.get('default') or DEFAULT_GAS_LIMITS['default']['default']

    async def estimate_gas_limit(self, gateway, tx: Dict, network: str, operation: str) -> int:
        """
        Pick a gas limit for one transaction

        Dynamic estimate +20%, never below the static default. Estimates at or
        under 21000 for contract calls are not trusted.

        Args:
            gateway: EvmGateway
            tx: Transaction dict (to/from/data/value)
            network: Network id
            operation: Key into the gas limit table

        Returns:
            Gas limit
        """
        default = self.default_gas_limit(network, operation)
        try:
            estimated = await asyncio.wait_for(gateway.estimate_gas(tx), timeout=GAS_ESTIMATE_TIMEOUT_SECONDS)
        except Exception as e:
            fallback = default * GAS_BUFFER_PERCENT // 100
            logger.debug(f"Gas estimation failed for {operation} on {network}: {e}, using {fallback}")
            return fallback

        if operation != 'native_transfer' and estimated <= MIN_REAL_GAS_ESTIMATE:
            logger.debug(f"Gas estimate {estimated} too low for {operation}, using default {default}")
            return default

        return max(estimated * GAS_BUFFER_PERCENT // 100, default)


def priority_fee_rate(base_fee_lamports: int, compute_unit_budget: Optional[float] = None,
                      percent: float = 0.03) -> int:
    """
    Compute-unit price (micro-lamports per CU) that adds ~percent of the base fee

    Args:
        base_fee_lamports: Fee of a plain transaction
        compute_unit_budget: Compute unit limit (clamped to [50k, 600k])
        percent: Target extra fee share (clamped to [2%, 5%])

    Returns:
        Micro-lamports per compute unit, at least 1
    """
    if compute_unit_budget is None or not math.isfinite(compute_unit_budget):
        budget = DEFAULT_COMPUTE_UNITS
    else:
        budget = int(min(max(compute_unit_budget, MIN_COMPUTE_UNITS), MAX_COMPUTE_UNITS))

    pct = min(max(percent, MIN_PRIORITY_PERCENT), MAX_PRIORITY_PERCENT)
    desired_extra = max(1, math.floor(max(base_fee_lamports, 0) * pct))
    rate = math.ceil(desired_extra * 1_000_000 / budget)
    return max(1, rate)
