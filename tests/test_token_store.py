"""SQLite stores for saved tokens and rescue history"""

import pytest

from asset_rescue.models import NATIVE_ADDRESS, AssetRecord, RescueReport
from asset_rescue.token_store import RescueHistory, SavedTokenStore

from conftest import NFT_721, TOKEN_A, TOKEN_B


@pytest.fixture
def store(tmp_path):
    store = SavedTokenStore(str(tmp_path / 'tokens.db'))
    yield store
    store.close()


@pytest.fixture
def history(tmp_path):
    history = RescueHistory(str(tmp_path / 'history.db'))
    yield history
    history.close()


def test_save_skips_native_and_lowercases(store):
    records = [
        AssetRecord(address=TOKEN_A.upper().replace('0X', '0x'), network='base', kind='ERC20', balance=1,
                    decimals=6, name='Alpha', symbol='ALP'),
        AssetRecord(address=NATIVE_ADDRESS, network='base', kind='NATIVE', balance=1, symbol='ETH'),
    ]
    assert store.save(records, 'base') == 1
    saved = store.list('base')
    assert saved[0]['address'] == TOKEN_A
    assert saved[0]['type'] == 'ERC20'
    assert saved[0]['decimals'] == 6


def test_save_upserts_per_network_and_address(store):
    store.save([{'address': TOKEN_A, 'symbol': 'OLD'}], 'base')
    store.save([{'address': TOKEN_A, 'symbol': 'NEW'}], 'base', priority='maximum')
    store.save([{'address': TOKEN_A, 'symbol': 'LIN'}], 'linea')

    base = store.list('base')
    assert len(base) == 1
    assert base[0]['symbol'] == 'NEW'
    assert base[0]['priority'] == 'maximum'
    assert len(store.list()) == 2


def test_list_puts_maximum_priority_first(store):
    store.save([{'address': TOKEN_A, 'symbol': 'AAA'}], 'base')
    store.save([{'address': TOKEN_B, 'symbol': 'BBB', 'priority': 'maximum'}], 'base')
    assert [t['symbol'] for t in store.list('base')] == ['BBB', 'AAA']


def test_search_and_delete(store):
    store.save([
        {'address': TOKEN_A, 'symbol': 'USDC', 'name': 'USD Coin'},
        {'address': NFT_721, 'type': 'erc721', 'symbol': 'APE', 'name': 'Apes'},
    ], 'mainnet')

    assert [t['symbol'] for t in store.search('coin')] == ['USDC']
    assert [t['symbol'] for t in store.search('0x7217')] == ['APE']
    assert store.delete('mainnet', NFT_721) == 1
    assert store.delete('mainnet') == 1
    assert store.list() == []


def test_statistics(store):
    store.save([{'address': TOKEN_A}, {'address': NFT_721, 'type': 'ERC721'}], 'base', priority='maximum')
    store.save([{'address': TOKEN_B}], 'linea')
    stats = store.statistics()
    assert stats['total_tokens'] == 3
    assert stats['networks'] == {'base': 2, 'linea': 1}
    assert stats['types'] == {'ERC20': 2, 'ERC721': 1}
    assert stats['maximum_priority'] == 2


def test_history_newest_first(history):
    first = RescueReport(success=True, message='one', network='base', operation_id='op_1')
    first.note('moved AAA')
    second = RescueReport(success=False, message='two', network='base', operation_id='op_2', cancelled=True)

    assert history.record(first)
    assert history.record(second)

    runs = history.list()
    assert [r['operation_id'] for r in runs] == ['op_2', 'op_1']
    assert runs[0]['cancelled'] is True
    assert runs[1]['summary'] == ['moved AAA']
    assert len(history.list(limit=1)) == 1
