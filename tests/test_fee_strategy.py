"""Fee overrides, gas limits and the Solana priority fee rate"""

import pytest

from asset_rescue.fee_strategy import FeeEstimate, FeeOverrides, FeeStrategy, priority_fee_rate


class FeeSource:
    def __init__(self, estimate=None, error=None, gas=None, gas_error=None):
        self.estimate = estimate
        self.error = error
        self.gas = gas
        self.gas_error = gas_error
        self.fee_reads = 0

    async def get_fee_estimate(self):
        self.fee_reads += 1
        if self.error:
            raise self.error
        return self.estimate

    async def estimate_gas(self, tx):
        if self.gas_error:
            raise self.gas_error
        return self.gas


async def test_eip1559_fees_bumped_by_network_percent():
    source = FeeSource(FeeEstimate(max_fee_per_gas=1000, max_priority_fee_per_gas=10))
    strategy = FeeStrategy()

    assert (await strategy.overrides('base', source)).max_fee_per_gas == 1200
    linea = await strategy.overrides('linea', source)
    assert (linea.max_fee_per_gas, linea.max_priority_fee_per_gas) == (1500, 15)


async def test_legacy_gas_price():
    overrides = await FeeStrategy().overrides('polygon', FeeSource(FeeEstimate(gas_price=50)))
    assert overrides.gas_price == 60
    assert overrides.apply({'to': '0x1'}) == {'to': '0x1', 'gasPrice': 60}


async def test_overrides_are_cached():
    source = FeeSource(FeeEstimate(max_fee_per_gas=100, max_priority_fee_per_gas=1))
    strategy = FeeStrategy(cache_ttl_seconds=60)
    await strategy.overrides('base', source)
    await strategy.overrides('base', source)
    assert source.fee_reads == 1


async def test_estimate_failure_means_node_defaults():
    overrides = await FeeStrategy().overrides('base', FeeSource(error=ConnectionError("down")))
    assert overrides.is_empty
    assert overrides.apply({'value': 1}) == {'value': 1}


async def test_no_fee_data_means_node_defaults():
    assert (await FeeStrategy().overrides('base', FeeSource(FeeEstimate()))).is_empty


def test_configured_bump_percent():
    assert FeeStrategy(bump_percent={'base': 200}).bump_for('base') == 200
    assert FeeStrategy().bump_for('mainnet') == 120


async def test_gas_limit_buffers_estimate_above_default():
    strategy = FeeStrategy()
    assert await strategy.estimate_gas_limit(FeeSource(gas=500_000), {}, 'mainnet', 'erc20_transfer') == 600_000
    assert await strategy.estimate_gas_limit(FeeSource(gas=30_000), {}, 'mainnet', 'erc20_transfer') == 100_000


async def test_gas_limit_fallbacks():
    strategy = FeeStrategy()
    failing = FeeSource(gas_error=ValueError("execution reverted"))
    assert await strategy.estimate_gas_limit(failing, {}, 'base', 'approve') == 300_000
    # 21000 is not a believable contract call
    assert await strategy.estimate_gas_limit(FeeSource(gas=21_000), {}, 'base', 'approve') == 250_000


def test_custom_gas_limits_merge_over_defaults():
    strategy = FeeStrategy(gas_limits={'mainnet': {'approve': 90_000}, 'zora': {'erc20_transfer': 123}})
    assert strategy.default_gas_limit('mainnet', 'approve') == 90_000
    assert strategy.default_gas_limit('mainnet', 'erc20_transfer') == 100_000
    assert strategy.default_gas_limit('zora', 'erc20_transfer') == 123
    assert strategy.default_gas_limit('unknown', 'native_transfer') == 60_000


def test_per_gas_cost():
    assert FeeOverrides(max_fee_per_gas=7, max_priority_fee_per_gas=1).per_gas_cost == 7
    assert FeeOverrides(gas_price=3).per_gas_cost == 3
    assert FeeOverrides().per_gas_cost == 0


@pytest.mark.parametrize('base_fee, budget, percent, expected', [
    (5000, 400_000, 0.03, 375),
    (5000, 10, 0.03, 3000),
    (5000, 10 ** 7, 0.03, 250),
    (5000, 400_000, 0.5, 625),
    (0, None, 0.03, 3),
])
def test_priority_fee_rate(base_fee, budget, percent, expected):
    assert priority_fee_rate(base_fee, budget, percent) == expected
