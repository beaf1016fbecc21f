"""In-memory stand-ins for the RPC gateways, the indexer and the explorer"""

import asyncio
import json

import pytest
from eth_account import Account
from solders.keypair import Keypair
from solders.system_program import ID as SYS_PROGRAM_ID

from asset_rescue.config import RescueConfig
from asset_rescue.errors import BlockRangeLimitError, TransientNetworkError
from asset_rescue.fee_strategy import FeeEstimate
from asset_rescue.networks import NetworkRegistry

PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OWNER = Account.from_key(PRIVATE_KEY).address
SAFE_WALLET = "0x1111111111111111111111111111111111111111"

TOKEN_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
TOKEN_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
TOKEN_C = "0xcccccccccccccccccccccccccccccccccccccccc"
NFT_721 = "0x7217217217217217217217217217217217217217"
NFT_1155 = "0x1155115511551155115511551155115511551155"

TEST_NETWORK = "testchain"


class FakeEvmGateway:
    """EvmGateway with chain state held in dicts"""

    def __init__(self, native: int = 0):
        self.native = native
        # address -> balance/decimals/name/symbol (+ optional 'live', 'allowance')
        self.tokens = {}
        # contract -> {'owners': {id: owner}, 'enumerable': bool, 'name', 'symbol'}
        self.erc721 = {}
        # contract -> {id: amount}
        self.erc1155 = {}
        self.interfaces = {}
        self.logs = []
        self.range_limit = None
        self.multicall_fails = False
        self.fee = FeeEstimate(max_fee_per_gas=100, max_priority_fee_per_gas=2)
        self.gas_estimate = 60_000
        self.block_number = 10_000
        self.nonce = 7
        self.receipt_status = 1
        self.receipt_timeout = False
        self.reject = set()
        self.send_errors = {}
        self.sent = []
        self.calls = []
        self.closed = False

    def add_token(self, address, balance, decimals=18, name="Token", symbol="TKN", **extra):
        self.tokens[address.lower()] = dict(balance=balance, decimals=decimals, name=name, symbol=symbol, **extra)

    async def get_balance(self, address):
        return self.native

    async def get_block_number(self):
        return self.block_number

    async def get_transaction_count(self, address):
        return self.nonce

    async def get_logs(self, from_block, to_block, topics, address=None):
        if self.range_limit and to_block - from_block + 1 > self.range_limit:
            raise BlockRangeLimitError("query returned more than 10000 results", from_block, to_block)
        matched = []
        for log in self.logs:
            if address and log['address'].lower() != address.lower():
                continue
            if not from_block <= log.get('block_number', 0) <= to_block:
                continue
            if all(t is None or (i < len(log['topics']) and log['topics'][i] == t) for i, t in enumerate(topics)):
                matched.append(log)
        return matched

    async def get_fee_estimate(self):
        return self.fee

    async def estimate_gas(self, tx):
        if self.gas_estimate is None:
            raise ValueError("execution reverted")
        return self.gas_estimate

    async def call(self, contract, abi_name, fn_name, *args):
        key = contract.lower()
        self.calls.append((key, abi_name, fn_name, args))

        if abi_name in ('erc20', 'erc20_bytes32'):
            info = self.tokens.get(key)
            if info is None:
                raise ValueError("execution reverted")
            if fn_name == 'balanceOf':
                return info.get('live', info['balance'])
            if fn_name == 'allowance':
                return info.get('allowance', 0)
            if fn_name in ('decimals', 'name', 'symbol'):
                return info[fn_name]

        if abi_name == 'erc721' and key in self.erc721:
            collection = self.erc721[key]
            owners = collection['owners']
            if fn_name == 'balanceOf':
                return sum(1 for o in owners.values() if o.lower() == args[0].lower())
            if fn_name == 'ownerOf' and args[0] in owners:
                return owners[args[0]]
            if fn_name == 'tokenOfOwnerByIndex' and collection.get('enumerable'):
                owned = sorted(i for i, o in owners.items() if o.lower() == args[0].lower())
                return owned[args[1]]
            if fn_name == 'totalSupply':
                return collection.get('total_supply', max(owners) + 1 if owners else 0)
            if fn_name in ('name', 'symbol'):
                return collection.get(fn_name, 'Collection')

        if abi_name == 'erc1155' and key in self.erc1155:
            if fn_name == 'balanceOf':
                return self.erc1155[key].get(int(args[1]), 0)

        raise ValueError(f"execution reverted: {fn_name}")

    async def supports_interface(self, contract, interface_id):
        return interface_id in self.interfaces.get(contract.lower(), set())

    async def read_token(self, token, owner):
        info = self.tokens.get(token.lower())
        if info is None:
            raise ValueError("execution reverted")
        return {'address': token, 'balance': info['balance'], 'decimals': info['decimals'],
                'name': info['name'], 'symbol': info['symbol']}

    async def read_token_batch(self, tokens, owner):
        if self.multicall_fails:
            raise TransientNetworkError("multicall tryAggregate failed")
        return [await self.read_token(t, owner) for t in tokens if t.lower() in self.tokens]

    def build_call(self, contract, abi_name, fn_name, *args, sender=None):
        return {'to': contract, 'abi': abi_name, 'fn': fn_name, 'args': args, 'from': sender, 'value': 0}

    async def send_transaction(self, private_key, tx):
        fn_name = tx.get('fn', 'native')
        self.sent.append(dict(tx))
        if fn_name in self.send_errors:
            raise self.send_errors[fn_name]
        if fn_name in self.reject:
            raise ValueError("execution reverted")
        return f"0x{len(self.sent):064x}"

    async def wait_for_receipt(self, tx_hash, timeout):
        if self.receipt_timeout:
            raise asyncio.TimeoutError("receipt timeout")
        return {'status': self.receipt_status, 'block_number': self.block_number, 'gas_used': 21000}

    async def close(self):
        self.closed = True

    def sent_calls(self, fn_name=None):
        """(fn, to) of every submitted transaction"""
        return [(tx.get('fn', 'native'), tx['to']) for tx in self.sent
                if fn_name is None or tx.get('fn', 'native') == fn_name]


class FakeIndexer:
    def __init__(self, enabled=True, erc20=None, nfts=None, prices=None, native_price=None):
        self.enabled = enabled
        self.erc20 = erc20 or []
        self.nfts = nfts or []
        self.prices = {k.lower(): v for k, v in (prices or {}).items()}
        self.native_price = native_price
        self.solana_prices = {}

    async def fetch_erc20_holdings(self, account, network):
        return list(self.erc20)

    async def fetch_nft_holdings(self, account, network):
        return list(self.nfts)

    async def token_price_usd(self, network, token):
        return self.prices.get(token.lower())

    async def native_price_usd(self, network):
        return self.native_price

    async def solana_token_price_usd(self, mint):
        return self.solana_prices.get(mint)

    async def close(self):
        pass


class FakeExplorer:
    def __init__(self, contracts=None):
        self.contracts = contracts or []
        self.queries = 0

    async def token_contracts(self, account, network_config):
        self.queries += 1
        return list(self.contracts)

    async def close(self):
        pass


def _system_transfer_lamports(instruction):
    data = bytes(instruction.data)
    if instruction.program_id == SYS_PROGRAM_ID and data[:4] == (2).to_bytes(4, 'little'):
        return int.from_bytes(data[4:12], 'little')
    return 0


class FakeSolanaGateway:
    """SolanaGateway with one wallet balance and scripted simulation results"""

    def __init__(self, rpc_url="http://solana.test", balance=0, healthy=True):
        self.rpc_url = rpc_url
        self.balance = balance
        self.healthy = healthy
        self.fee = 5000
        self.rent = 2_039_280
        # str(program_id) -> [token account dicts]
        self.token_accounts = {}
        self.existing = set()
        # Simulation errors to return before passing; -1 fails forever
        self.simulation_failures = 0
        self.simulated_amounts = []
        self.sent = []
        self.token_reads = 0
        self.closed = False

    async def is_reachable(self):
        return self.healthy

    async def get_balance(self, pubkey):
        return self.balance

    async def rent_exemption(self, size=165):
        return self.rent

    async def account_exists(self, pubkey):
        return pubkey in self.existing

    async def get_token_accounts(self, owner, program_id):
        return [dict(a) for a in self.token_accounts.get(str(program_id), [])]

    async def get_token_account(self, address, program_id):
        self.token_reads += 1
        for account in self.token_accounts.get(str(program_id), []):
            if account['address'] == address:
                return dict(account)
        return None

    async def fee_for(self, instructions, payer):
        return self.fee

    async def simulate(self, instructions, signer):
        self.simulated_amounts.append(sum(_system_transfer_lamports(ix) for ix in instructions))
        if self.simulation_failures:
            if self.simulation_failures > 0:
                self.simulation_failures -= 1
            return "InsufficientFundsForRent"
        return None

    async def send(self, instructions, signer):
        lamports = sum(_system_transfer_lamports(ix) for ix in instructions)
        self.balance -= lamports + self.fee
        self.sent.append(list(instructions))
        return f"sig{len(self.sent)}"

    async def close(self):
        self.closed = True


@pytest.fixture
def networks():
    return NetworkRegistry({TEST_NETWORK: {
        'name': 'Test Chain', 'chain_id': 31337, 'rpc_url': 'http://127.0.0.1:8545',
    }})


@pytest.fixture
def evm():
    return FakeEvmGateway(native=10 ** 18)


@pytest.fixture
def config():
    return RescueConfig()


@pytest.fixture
def solana_keypair():
    return Keypair()


@pytest.fixture
def solana_secret(solana_keypair):
    return json.dumps(list(bytes(solana_keypair)))


@pytest.fixture
def solana_destination():
    return str(Keypair().pubkey())
