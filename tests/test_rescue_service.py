"""End-to-end rescue runs against a fake network"""

import pytest

from asset_rescue.cancellation import CancellationToken
from asset_rescue.config import RescueConfig
from asset_rescue.models import RescueRequest
from asset_rescue.networks import NetworkRegistry
from asset_rescue.rescue_service import CANCELLED_MESSAGE, NO_GAS_ERROR, RescueService

from conftest import (
    PRIVATE_KEY, SAFE_WALLET, TEST_NETWORK, TOKEN_A, TOKEN_B, TOKEN_C, FakeEvmGateway, FakeExplorer,
    FakeIndexer,
)


class Recorder:
    def __init__(self):
        self.reports = []

    def record(self, report):
        self.reports.append(report)
        return True


class CancellingGateway(FakeEvmGateway):
    """Cancels the operation as soon as the first transaction goes out"""

    def __init__(self, token, **kwargs):
        super().__init__(**kwargs)
        self.token = token

    async def send_transaction(self, private_key, tx):
        tx_hash = await super().send_transaction(private_key, tx)
        self.token.cancel()
        return tx_hash


def _service(config, evm, indexer=None, history=None, extra_tokens=()):
    networks = NetworkRegistry({TEST_NETWORK: {
        'name': 'Test Chain', 'chain_id': 31337, 'rpc_url': 'http://127.0.0.1:8545',
        'extra_tokens': list(extra_tokens),
    }})
    return RescueService(
        config, networks=networks, gateway_factory=lambda network: evm,
        indexer=indexer or FakeIndexer(enabled=False), explorer=FakeExplorer(), history=history,
    )


def _request(**overrides):
    data = dict(private_key=PRIVATE_KEY, safe_wallet=SAFE_WALLET, network=TEST_NETWORK)
    data.update(overrides)
    return RescueRequest(**data)


async def test_zero_native_balance_sends_nothing(config):
    evm = FakeEvmGateway(native=0)

    report = await _service(config, evm).perform_auto_rescue(_request())

    assert not report.success
    assert report.error == NO_GAS_ERROR
    assert f"Warning: {NO_GAS_ERROR}" in report.summary
    assert evm.sent == []


async def test_priority_tiers_then_value_then_native(config, evm):
    evm.add_token(TOKEN_A, 10 ** 18, symbol='AAA')
    evm.add_token(TOKEN_B, 10 * 10 ** 18, symbol='BBB')
    evm.add_token(TOKEN_C, 10 ** 18, symbol='CCC')
    indexer = FakeIndexer(prices={TOKEN_A: 1.0, TOKEN_B: 0.01, TOKEN_C: 500.0}, native_price=3000.0)
    request = _request(priority_tokens=[
        {'contract_address': TOKEN_A, 'tier': 'maximum'},
        {'contract_address': TOKEN_B, 'tier': 'normal'},
    ])

    report = await _service(config, evm, indexer=indexer, extra_tokens=[TOKEN_A, TOKEN_B, TOKEN_C]) \
        .perform_auto_rescue(request)

    assert report.success
    assert evm.sent_calls() == [
        ('transfer', TOKEN_A), ('transfer', TOKEN_B), ('transfer', TOKEN_C), ('native', SAFE_WALLET),
    ]
    assert report.rescued_tokens == 3
    assert report.rescued_native
    assert report.tokens_found == 4
    assert 'Current nonce: 7, Target nonce: 7' in report.summary


async def test_native_sweep_uses_bumped_fee(config, evm):
    report = await _service(config, evm).perform_auto_rescue(_request())

    native_tx = evm.sent[-1]
    assert report.rescued_native
    assert native_tx['maxFeePerGas'] == 120
    assert native_tx['value'] == 10 ** 18 - 10 ** 15 - 60_000 * 120


async def test_explicit_nonce_is_reported(config, evm):
    report = await _service(config, evm).perform_auto_rescue(_request(nonce=12))
    assert 'Current nonce: 7, Target nonce: 12' in report.summary


async def test_invalid_request_is_reported_not_raised(config, evm):
    report = await _service(config, evm).perform_auto_rescue(_request(safe_wallet='0x1234'))
    assert not report.success
    assert report.error == 'Invalid Ethereum address format'
    assert evm.sent == []


async def test_cancelled_before_start(config, evm):
    token = CancellationToken()
    token.cancel()

    report = await _service(config, evm).perform_auto_rescue(_request(), token)

    assert report.cancelled
    assert report.message == CANCELLED_MESSAGE
    assert evm.sent == []


async def test_cancellation_stops_after_current_transaction(config):
    token = CancellationToken()
    evm = CancellingGateway(token, native=10 ** 18)
    evm.add_token(TOKEN_A, 10 ** 18)
    evm.add_token(TOKEN_B, 10 ** 18)

    report = await _service(config, evm, extra_tokens=[TOKEN_A, TOKEN_B]).perform_auto_rescue(_request(), token)

    assert report.cancelled
    assert len(evm.sent) == 1


async def test_unsupported_maximum_network_is_noted(config, evm):
    request = _request(priority_tokens=[{'contract_address': TOKEN_A, 'network': 'nowhere', 'tier': 'maximum'}])
    report = await _service(config, evm).perform_auto_rescue(request)
    assert report.success
    assert any('unsupported network' in line for line in report.summary)


async def test_history_receives_every_report(config, evm):
    history = Recorder()
    service = _service(config, evm, history=history)

    await service.perform_auto_rescue(_request())
    await service.perform_auto_rescue(_request(safe_wallet=''))

    assert [r.success for r in history.reports] == [True, False]
    assert service.operations.active_count == 0


async def test_rescue_network_summarizes_the_pass(config, evm):
    evm.add_token(TOKEN_A, 10 ** 18)
    result = await _service(config, evm, extra_tokens=[TOKEN_A]).rescue_network(_request(network='mainnet'),
                                                                                TEST_NETWORK)
    assert result.network == TEST_NETWORK
    assert result.success
    assert result.tokens_transferred == 2


async def test_check_balance(config, evm):
    result = await _service(config, evm).check_balance(PRIVATE_KEY, TEST_NETWORK)
    assert result['success']
    assert result['formatted_balance'] == '1'
    assert result['symbol'] == 'ETH'


async def test_check_balance_on_unknown_network(config, evm):
    result = await _service(config, evm).check_balance(PRIVATE_KEY, 'nowhere')
    assert not result['success']


async def test_close_releases_gateways(config, evm):
    service = _service(config, evm)
    await service.check_balance(PRIVATE_KEY, TEST_NETWORK)
    await service.close()
    assert evm.closed
    assert service.gateways == {}


@pytest.mark.parametrize('sweep_last', [True, False])
async def test_native_position_follows_config(evm, sweep_last):
    evm.add_token(TOKEN_A, 10 ** 18)
    config = RescueConfig({'transfer': {'sweep_native_last': sweep_last}})
    indexer = FakeIndexer(prices={TOKEN_A: 1.0}, native_price=3000.0)

    await _service(config, evm, indexer=indexer, extra_tokens=[TOKEN_A]).perform_auto_rescue(_request())

    order = [fn for fn, _ in evm.sent_calls()]
    assert order == (['transfer', 'native'] if sweep_last else ['native', 'transfer'])
