"""Layered token discovery over a fake chain"""

import pytest

from asset_rescue.abis import TRANSFER_TOPIC, address_topic
from asset_rescue.cancellation import CancellationToken
from asset_rescue.errors import Cancelled
from asset_rescue.models import UNKNOWN_TOKEN_ID, AssetRecord
from asset_rescue.networks import NetworkRegistry
from asset_rescue.token_discovery import TokenDiscoveryEngine, merge_records, sort_records

from conftest import (
    NFT_721, OWNER, TEST_NETWORK, TOKEN_A, TOKEN_B, TOKEN_C, FakeEvmGateway, FakeExplorer, FakeIndexer,
)

STRANGER = "0x2222222222222222222222222222222222222222"


def _registry(extra_tokens=()):
    return NetworkRegistry({TEST_NETWORK: {
        'name': 'Test Chain', 'chain_id': 31337, 'rpc_url': 'http://127.0.0.1:8545',
        'extra_tokens': list(extra_tokens),
    }})


def _engine(evm, extra_tokens=(), indexer=None, explorer=None):
    return TokenDiscoveryEngine(
        _registry(extra_tokens), lambda network: evm,
        indexer=indexer or FakeIndexer(enabled=False),
        explorer=explorer or FakeExplorer(),
    )


def _incoming_log(contract, block, token_id=None):
    topics = [TRANSFER_TOPIC, address_topic(STRANGER), address_topic(OWNER)]
    if token_id is not None:
        topics.append(f"0x{token_id:064x}")
    return {'address': contract, 'topics': topics, 'block_number': block}


def _by_address(records):
    return {r.address.lower(): r for r in records}


async def test_known_tokens_found_by_multicall_skip_fallback_tiers(evm):
    evm.add_token(TOKEN_A, 5 * 10 ** 18, symbol='AAA')
    evm.add_token(TOKEN_B, 0, symbol='BBB')
    explorer = FakeExplorer()

    records = await _engine(evm, [TOKEN_A, TOKEN_B], explorer=explorer).discover(OWNER, TEST_NETWORK)

    found = _by_address(records)
    assert found[TOKEN_A].discovery_source == 'multicall'
    assert TOKEN_B not in found
    assert any(r.is_native for r in records)
    assert explorer.queries == 0


async def test_failed_multicall_falls_back_to_direct_reads(evm):
    evm.add_token(TOKEN_A, 10 ** 6, decimals=6)
    evm.multicall_fails = True

    records = await _engine(evm, [TOKEN_A]).discover(OWNER, TEST_NETWORK)

    token = _by_address(records)[TOKEN_A]
    assert token.discovery_source == 'direct'
    assert token.decimals == 6


async def test_log_backfill_finds_tokens_received_by_the_account(evm):
    evm.add_token(TOKEN_C, 3 * 10 ** 18)
    evm.logs.append(_incoming_log(TOKEN_C, block=9_000))
    explorer = FakeExplorer()

    records = await _engine(evm, explorer=explorer).discover(OWNER, TEST_NETWORK)

    assert _by_address(records)[TOKEN_C].discovery_source == 'log_backfill'
    assert explorer.queries == 0


async def test_log_backfill_shrinks_window_and_counts_windows(evm):
    evm.range_limit = 100
    evm.add_token(TOKEN_A, 10 ** 18)
    evm.add_token(TOKEN_B, 10 ** 18)
    evm.logs.append(_incoming_log(TOKEN_A, block=9_950))
    # Far outside 30 windows of 62 blocks
    evm.logs.append(_incoming_log(TOKEN_B, block=100))

    found = _by_address(await _engine(evm).discover(OWNER, TEST_NETWORK))

    assert TOKEN_A in found
    assert TOKEN_B not in found


async def test_log_backfill_resolves_nft_transfers(evm):
    evm.erc721[NFT_721] = {'owners': {5: OWNER, 6: STRANGER}, 'enumerable': True,
                           'name': 'Apes', 'symbol': 'APE'}
    evm.logs.append(_incoming_log(NFT_721, block=9_990, token_id=5))

    nft = _by_address(await _engine(evm).discover(OWNER, TEST_NETWORK))[NFT_721]

    assert nft.kind.value == 'ERC721'
    assert nft.token_ids == ['5']
    assert nft.symbol == 'APE'


async def test_explorer_is_last_resort(evm):
    evm.add_token(TOKEN_B, 2 * 10 ** 18, name='Unknown Token', symbol='UNKNOWN')
    explorer = FakeExplorer([{'address': TOKEN_B, 'name': 'Bee', 'symbol': 'BEE', 'decimals': 18}])

    records = await _engine(evm, explorer=explorer).discover(OWNER, TEST_NETWORK)

    token = _by_address(records)[TOKEN_B]
    assert token.discovery_source == 'explorer'
    assert token.symbol == 'BEE'


async def test_chain_balance_outranks_indexer_and_indexer_prices(evm):
    evm.add_token(TOKEN_A, 4 * 10 ** 18, symbol='AAA')
    indexer = FakeIndexer(
        erc20=[AssetRecord(address=TOKEN_A, network=TEST_NETWORK, kind='ERC20', balance=9 * 10 ** 18,
                           decimals=18, name='Token', symbol='AAA', discovery_source='indexer')],
        prices={TOKEN_A: 2.5}, native_price=3000.0,
    )

    records = await _engine(evm, [TOKEN_A], indexer=indexer).discover(OWNER, TEST_NETWORK)

    token = _by_address(records)[TOKEN_A]
    assert token.balance == 4 * 10 ** 18
    assert token.value_usd == pytest.approx(10.0)
    # Native (1 ETH @ 3000) sorts ahead of the token
    assert records[0].is_native


async def test_cancelled_token_stops_discovery(evm):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(Cancelled):
        await _engine(evm).discover(OWNER, TEST_NETWORK, token)


async def test_unknown_network_returns_nothing(evm):
    assert await _engine(evm).discover(OWNER, 'nowhere') == []


def _all_keys(records):
    return [key for record in records for key in record.dedup_keys()]


async def test_same_assets_from_several_tiers_appear_once(evm):
    evm.add_token(TOKEN_A, 4 * 10 ** 18, symbol='AAA')
    evm.erc721[NFT_721] = {'owners': {5: OWNER, 6: OWNER}, 'name': 'Apes', 'symbol': 'APE'}
    indexed_token = AssetRecord(address=TOKEN_A, network=TEST_NETWORK, kind='ERC20', balance=9 * 10 ** 18,
                                decimals=18, name='Token', symbol='AAA', discovery_source='indexer')
    indexer = FakeIndexer(
        erc20=[indexed_token, indexed_token],
        nfts=[
            AssetRecord(address=NFT_721, network=TEST_NETWORK, kind='ERC721', balance=1, token_ids=['5'],
                        discovery_source='indexer'),
            AssetRecord(address=NFT_721, network=TEST_NETWORK, kind='ERC721', balance=2,
                        token_ids=['5', '6'], discovery_source='indexer'),
        ],
    )

    records = await _engine(evm, [TOKEN_A], indexer=indexer).discover(OWNER, TEST_NETWORK)

    keys = _all_keys(records)
    assert len(keys) == len(set(keys))
    assert [r.address.lower() for r in records].count(TOKEN_A) == 1
    assert [r.address.lower() for r in records].count(NFT_721) == 1
    assert sorted(_by_address(records)[NFT_721].token_ids) == ['5', '6']
    assert _by_address(records)[TOKEN_A].balance == 4 * 10 ** 18


async def test_repeated_transfer_logs_yield_one_record_per_asset(evm):
    evm.add_token(TOKEN_C, 3 * 10 ** 18)
    evm.erc721[NFT_721] = {'owners': {5: OWNER, 6: OWNER}, 'enumerable': True,
                           'name': 'Apes', 'symbol': 'APE'}
    evm.logs += [
        _incoming_log(TOKEN_C, block=9_990),
        _incoming_log(TOKEN_C, block=9_995),
        {'address': TOKEN_C, 'topics': [TRANSFER_TOPIC, address_topic(OWNER), address_topic(STRANGER)],
         'block_number': 9_996},
        _incoming_log(NFT_721, block=9_991, token_id=5),
        _incoming_log(NFT_721, block=9_992, token_id=6),
    ]

    records = await _engine(evm).discover(OWNER, TEST_NETWORK)

    keys = _all_keys(records)
    assert len(keys) == len(set(keys))
    found = _by_address(records)
    assert found[TOKEN_C].discovery_source == 'log_backfill'
    assert sorted(found[NFT_721].token_ids) == ['5', '6']


async def test_fewer_balances_never_yield_more_records(evm):
    for address in (TOKEN_A, TOKEN_B, TOKEN_C):
        evm.add_token(address, 10 ** 18)
    tokens = [TOKEN_A, TOKEN_B, TOKEN_C]

    def non_native(records):
        return {r.address.lower() for r in records if not r.is_native}

    before = non_native(await _engine(evm, tokens).discover(OWNER, TEST_NETWORK))
    evm.tokens[TOKEN_B]['balance'] = 0
    after = non_native(await _engine(evm, tokens).discover(OWNER, TEST_NETWORK))
    evm.tokens[TOKEN_A]['balance'] = 0
    evm.tokens[TOKEN_C]['balance'] = 0
    last = non_native(await _engine(evm, tokens).discover(OWNER, TEST_NETWORK))

    assert before == {TOKEN_A, TOKEN_B, TOKEN_C}
    assert after <= before and len(after) == 2
    assert last <= after


def test_merge_unions_nft_ids_and_drops_unknown_marker():
    first = AssetRecord(address=NFT_721, network='x', kind='ERC721', balance=1, token_ids=['1'],
                        discovery_source='multicall')
    second = AssetRecord(address=NFT_721, network='x', kind='ERC721', balance=2,
                         token_ids=[UNKNOWN_TOKEN_ID, '2'], discovery_source='indexer')
    merged = merge_records([first, second])
    assert len(merged) == 1
    assert merged[0].token_ids == ['1', '2']
    assert merged[0].balance == 2


def test_merge_prefers_chain_balance_and_keeps_first_metadata():
    indexed = AssetRecord(address=TOKEN_A, network='x', kind='ERC20', balance=100, decimals=18,
                          name='Alpha', symbol='ALP', discovery_source='indexer', price_usd=1.0)
    read = AssetRecord(address=TOKEN_A, network='x', kind='ERC20', balance=40, decimals=18,
                       name='Other', symbol='OTH', discovery_source='multicall')
    merged = merge_records([indexed, read])[0]
    assert merged.balance == 40
    assert merged.symbol == 'ALP'
    assert merged.discovery_source == 'multicall'
    assert merged.price_usd == 1.0


def test_merge_does_not_mutate_inputs():
    a = AssetRecord(address=TOKEN_A, network='x', kind='ERC20', balance=1, discovery_source='indexer')
    b = AssetRecord(address=TOKEN_A, network='x', kind='ERC20', balance=2, discovery_source='multicall')
    merge_records([a, b])
    assert a.balance == 1


def test_sort_by_value_then_kind():
    nft = AssetRecord(address=NFT_721, network='x', kind='ERC721', balance=1, token_ids=['1'])
    cheap = AssetRecord(address=TOKEN_A, network='x', kind='ERC20', balance=1, value_usd=0.5)
    rich = AssetRecord(address=TOKEN_B, network='x', kind='ERC20', balance=1, value_usd=10.0)
    unpriced = AssetRecord(address=TOKEN_C, network='x', kind='ERC20', balance=1)
    ordered = sort_records([nft, cheap, unpriced, rich])
    assert ordered[:2] == [rich, cheap]
    assert ordered[2] is unpriced
    assert ordered[3] is nft
