"""Single-asset transfers and their fallbacks"""

import pytest

from asset_rescue.abis import ERC1155_INTERFACE_ID, ERC721_INTERFACE_ID
from asset_rescue.cancellation import CancellationToken
from asset_rescue.errors import Cancelled, UnsupportedAssetInterface
from asset_rescue.fee_strategy import FeeOverrides
from asset_rescue.models import NATIVE_ADDRESS, UNKNOWN_TOKEN_ID, AssetRecord
from asset_rescue.transfer_executor import TransferExecutor

from conftest import (
    NFT_1155, NFT_721, OWNER, PRIVATE_KEY, SAFE_WALLET, TEST_NETWORK, TOKEN_A, FakeEvmGateway,
)

STRANGER = "0x2222222222222222222222222222222222222222"
OVERRIDES = FeeOverrides(max_fee_per_gas=100, max_priority_fee_per_gas=2)


class FlakyGateway(FakeEvmGateway):
    """Rejects the first submission of each listed function"""

    def __init__(self, flaky, **kwargs):
        super().__init__(**kwargs)
        self.flaky = set(flaky)

    async def send_transaction(self, private_key, tx):
        fn_name = tx.get('fn', 'native')
        if fn_name in self.flaky:
            self.flaky.discard(fn_name)
            self.sent.append(dict(tx))
            raise ValueError("execution reverted")
        return await super().send_transaction(private_key, tx)


def _executor(gateway):
    return TransferExecutor(gateway, TEST_NETWORK, PRIVATE_KEY)


def _erc20(balance=1000, **extra):
    return AssetRecord(address=TOKEN_A, network=TEST_NETWORK, kind='ERC20', balance=balance,
                       decimals=18, name='Alpha', symbol='ALP', **extra)


def _native(balance):
    return AssetRecord(address=NATIVE_ADDRESS, network=TEST_NETWORK, kind='NATIVE', balance=balance,
                       decimals=18, name='ETH', symbol='ETH')


# ----------------------------------------------------------------------
# Native
# ----------------------------------------------------------------------

async def test_native_leaves_reserve_and_fee(evm):
    outcome = await _executor(evm).transfer(_native(evm.native), SAFE_WALLET, OVERRIDES)

    fee = 60_000 * 100
    assert outcome.success
    assert outcome.amount == 10 ** 18 - 10 ** 15 - fee
    tx = evm.sent[0]
    assert tx['to'] == SAFE_WALLET
    assert tx['value'] == outcome.amount
    assert tx['maxFeePerGas'] == 100


async def test_native_below_reserve_is_skipped(evm):
    evm.native = 10 ** 15
    outcome = await _executor(evm).transfer(_native(evm.native), SAFE_WALLET, OVERRIDES)
    assert outcome.skipped
    assert evm.sent == []


# ----------------------------------------------------------------------
# ERC20
# ----------------------------------------------------------------------

@pytest.mark.parametrize('live, expected', [(600, 600), (2000, 1000)])
async def test_erc20_amount_is_clamped_to_live_balance(evm, live, expected):
    evm.add_token(TOKEN_A, 1000, live=live)
    outcome = await _executor(evm).transfer(_erc20(1000), SAFE_WALLET, OVERRIDES)
    assert outcome.success
    assert outcome.amount == expected
    assert evm.sent[0]['args'] == (SAFE_WALLET, expected)


async def test_erc20_gas_limit_never_below_static_default(evm):
    evm.add_token(TOKEN_A, 1000)
    await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)
    assert evm.sent[0]['gas'] == 200_000


async def test_erc20_scam_token_is_skipped(evm):
    evm.add_token(TOKEN_A, 1000)
    outcome = await _executor(evm).transfer(_erc20(name='Airdrop Gift'), SAFE_WALLET, OVERRIDES)
    assert outcome.skipped
    assert 'scam' in outcome.detail
    assert evm.sent == []


async def test_erc20_zero_live_balance_is_skipped(evm):
    evm.add_token(TOKEN_A, 1000, live=0)
    outcome = await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)
    assert outcome.skipped


async def test_erc20_falls_back_to_approve_and_transfer_from(evm):
    evm.add_token(TOKEN_A, 1000)
    evm.reject = {'transfer'}

    outcome = await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)

    assert outcome.success
    assert [fn for fn, _ in evm.sent_calls()] == ['transfer', 'approve', 'transferFrom']
    assert len(outcome.tx_hashes) == 2
    assert evm.sent[-1]['args'] == (OWNER, SAFE_WALLET, 1000)


async def test_erc20_existing_allowance_skips_approve(evm):
    evm.add_token(TOKEN_A, 1000, allowance=10 ** 30)
    evm.reject = {'transfer'}
    await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)
    assert [fn for fn, _ in evm.sent_calls()] == ['transfer', 'transferFrom']


async def test_erc20_failure_names_each_stage(evm):
    evm.add_token(TOKEN_A, 1000)
    evm.reject = {'transfer', 'transferFrom'}

    outcome = await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)

    assert not outcome.success and not outcome.skipped
    assert 'direct transfer failed' in outcome.detail
    assert 'transferFrom failed' in outcome.detail


async def test_missing_gas_money_skips_the_asset(evm):
    evm.add_token(TOKEN_A, 1000)
    evm.send_errors = {'transfer': ValueError("insufficient funds for gas * price + value")}

    outcome = await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)

    assert outcome.skipped
    assert 'Insufficient funds' in outcome.detail
    assert [fn for fn, _ in evm.sent_calls()] == ['transfer']


async def test_missing_gas_money_at_approve_also_skips(evm):
    evm.add_token(TOKEN_A, 1000)
    evm.reject = {'transfer'}
    evm.send_errors = {'approve': ValueError("insufficient funds for gas * price + value")}

    outcome = await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)

    assert outcome.skipped
    assert 'Insufficient funds' in outcome.detail
    assert [fn for fn, _ in evm.sent_calls()] == ['transfer', 'approve']


async def test_receipt_timeout_counts_as_sent(evm):
    evm.add_token(TOKEN_A, 1000)
    evm.receipt_timeout = True
    outcome = await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)
    assert outcome.success


async def test_reverted_receipt_is_a_failure(evm):
    evm.add_token(TOKEN_A, 1000)
    evm.receipt_status = 0
    outcome = await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES)
    assert not outcome.success
    assert 'approve failed' in outcome.detail


async def test_cancelled_token_raises(evm):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(Cancelled):
        await _executor(evm).transfer(_erc20(), SAFE_WALLET, OVERRIDES, token)


# ----------------------------------------------------------------------
# NFTs
# ----------------------------------------------------------------------

async def test_erc721_moves_each_id(evm):
    nft = AssetRecord(address=NFT_721, network=TEST_NETWORK, kind='ERC721', balance=2, token_ids=['5', '6'],
                      symbol='APE')
    outcome = await _executor(evm).transfer(nft, SAFE_WALLET, OVERRIDES)
    assert outcome.success
    assert outcome.amount == 2
    assert [tx['args'][2] for tx in evm.sent] == [5, 6]


async def test_erc721_unknown_ids_are_resolved_by_ownership_scan(evm):
    evm.erc721[NFT_721] = {'owners': {3: OWNER, 4: STRANGER}}
    nft = AssetRecord(address=NFT_721, network=TEST_NETWORK, kind='ERC721', balance=1,
                      token_ids=[UNKNOWN_TOKEN_ID], symbol='APE')

    outcome = await _executor(evm).transfer(nft, SAFE_WALLET, OVERRIDES)

    assert outcome.success
    assert evm.sent_calls() == [('transferFrom', NFT_721)]
    assert evm.sent[0]['args'] == (OWNER, SAFE_WALLET, 3)


async def test_erc721_approves_after_rejected_transfer():
    gateway = FlakyGateway(['transferFrom'], native=10 ** 18)
    nft = AssetRecord(address=NFT_721, network=TEST_NETWORK, kind='ERC721', balance=1, token_ids=['8'])

    outcome = await _executor(gateway).transfer(nft, SAFE_WALLET, OVERRIDES)

    assert outcome.success
    assert [fn for fn, _ in gateway.sent_calls()] == ['transferFrom', 'approve', 'transferFrom']


async def test_erc1155_moves_every_held_id(evm):
    evm.erc1155[NFT_1155] = {1: 2, 9: 5}
    nft =AssetRecord(address=NFT_1155, network=TEST_NETWORK, kind='ERC1155', balance=7,
                      token_amounts={'1': 2, '9': 5})
    outcome = await _executor(evm).transfer(nft, SAFE_WALLET, OVERRIDES)
    assert outcome.success
    assert outcome.amount == 7
    assert [tx['args'][2:4] for tx in evm.sent] == [(1, 2), (9, 5)]


async def test_erc1155_approves_once_for_all_ids():
    gateway = FlakyGateway(['safeTransferFrom'], native=10 ** 18)
    gateway.erc1155[NFT_1155] = {1: 1, 2: 2}
    nft = AssetRecord(address=NFT_1155, network=TEST_NETWORK, kind='ERC1155', balance=3,
                      token_amounts={'1': 1, '2': 2})

    outcome = await _executor(gateway).transfer(nft, SAFE_WALLET, OVERRIDES)

    assert outcome.success
    assert [fn for fn, _ in gateway.sent_calls()] == [
        'safeTransferFrom', 'setApprovalForAll', 'safeTransferFrom', 'safeTransferFrom',
    ]


async def test_erc1155_amount_clamped_to_live_balance(evm):
    evm.erc1155[NFT_1155] = {5: 1, 6: 0}
    nft = AssetRecord(address=NFT_1155, network=TEST_NETWORK, kind='ERC1155', balance=14,
                      token_amounts={'5': 10, '6': 4})

    outcome = await _executor(evm).transfer(nft, SAFE_WALLET, OVERRIDES)

    assert outcome.success
    assert outcome.amount == 1
    assert [tx['args'][2:4] for tx in evm.sent] == [(5, 1)]


async def test_erc1155_with_no_live_balance_is_skipped(evm):
    evm.erc1155[NFT_1155] = {}
    nft = AssetRecord(address=NFT_1155, network=TEST_NETWORK, kind='ERC1155', balance=3,
                      token_amounts={'2': 3})

    outcome = await _executor(evm).transfer(nft, SAFE_WALLET, OVERRIDES)

    assert outcome.skipped
    assert evm.sent == []


# ----------------------------------------------------------------------
# Priority contracts read directly
# ----------------------------------------------------------------------

async def test_priority_contract_read_as_erc20(evm):
    evm.add_token(TOKEN_A, 42, decimals=0, symbol='ALP')
    record = await _executor(evm).resolve_priority_token(TOKEN_A)
    assert record.kind.value == 'ERC20'
    assert record.balance == 42
    assert record.discovery_source == 'priority_direct'


async def test_priority_contract_with_zero_balance(evm):
    evm.add_token(TOKEN_A, 0)
    assert await _executor(evm).resolve_priority_token(TOKEN_A) is None


async def test_priority_contract_read_as_erc721(evm):
    evm.interfaces[NFT_721] = {ERC721_INTERFACE_ID}
    evm.erc721[NFT_721] = {'owners': {0: STRANGER, 2: OWNER}, 'name': 'Apes', 'symbol': 'APE'}

    record = await _executor(evm).resolve_priority_token(NFT_721)

    assert record.kind.value == 'ERC721'
    assert record.token_ids == ['2']
    assert record.symbol == 'APE'


async def test_priority_contract_read_as_erc1155(evm):
    evm.interfaces[NFT_1155] = {ERC1155_INTERFACE_ID}
    evm.erc1155[NFT_1155] = {3: 4}

    record = await _executor(evm).resolve_priority_token(NFT_1155)

    assert record.kind.value == 'ERC1155'
    assert record.token_amounts == {'3': 4}


async def test_priority_contract_without_known_interface(evm):
    with pytest.raises(UnsupportedAssetInterface):
        await _executor(evm).resolve_priority_token(TOKEN_A)
