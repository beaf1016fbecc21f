"""
Token Discovery Engine

Builds the list of assets an account holds on one network without a
reliable enumeration API.

Tiers (accumulated, merged, sorted):
1. Multicall read of well-known tokens and NFT collections
2. Native balance
3. Indexer holdings (needs an API key)
4. Transfer log backfill (only when nothing non-native was found)
5. Explorer token history (only when nothing non-native was found)
"""

import copy
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from .abis import TRANSFER_TOPIC, address_topic
from .cancellation import CancellationToken, check_cancelled
from .errors import BlockRangeLimitError, Cancelled
from .evm_gateway import short
from .models import (
    KIND_SORT_RANK, NATIVE_ADDRESS, UNKNOWN_TOKEN_ID, AssetKind, AssetRecord,
)
from .networks import NetworkConfig, NetworkRegistry
from .nft_discovery import NftIdDiscovery
from .scam_filter import ScamFilter
from .strategy_runner import Strategy, StrategyResult, run_strategies

SUFFICIENT_RECORD_COUNT = 25
LOG_BACKFILL_WINDOW_BLOCKS = 500
LOG_BACKFILL_MIN_WINDOW = 50
LOG_BACKFILL_MAX_CONTRACTS = 50

# Number of windows scanned backwards from the head
LOG_BACKFILL_WINDOWS = {
    'default': 30,
    'linea': 200,
    'arbitrum': 300,
    'optimism': 500,
}

# On-chain reads outrank indexer balances
SOURCE_AUTHORITY = {
    'multicall': 3,
    'direct': 3,
    'native_check': 3,
    'log_backfill': 3,
    'explorer': 3,
    'priority_direct': 3,
    'indexer': 1,
    'unknown': 0,
}

COMMON_TOKENS: Dict[str, List[str]] = {
    'mainnet': [
        '0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48',  # USDC
        '0xdAC17F958D2ee523a2206206994597C13D831ec7',  # USDT
        '0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599',  # WBTC
        '0x6B175474E89094C44Da98b954EedeAC495271d0F',  # DAI
        '0x514910771AF9Ca656af840dff83E8264EcF986CA',  # LINK
        '0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984',  # UNI
        '0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9',  # AAVE
        '0x9f8F72aA9304c8B593d555F12eF6589cC3A579A2',  # MKR
        '0x0D8775F648430679A709E98d2b0Cb6250d2887EF',  # BAT
        '0x4d224452801ACEd8B2F0aebE155379bb5D594381',  # APE
        '0x95aD61b0a150d79219dCF64E1E6Cc01f0B64C4cE',  # SHIB
        '0x75231F58b43240C9718Dd58B4967c5114342a86c',  # OKB
    ],
    'linea': [
        '0x176211869cA2b568f2A7D4EE941E073a821EE1ff',  # USDC
        '0x4AF15ec2A0BD43Db75dd04E62FAA3B8EF36b00d5',  # WBTC
        '0xe5D7C2a44FfDDf6b295A15c148167daaAf5Cf34f',  # WETH
    ],
    'base': [
        '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913',  # USDC
        '0x4200000000000000000000000000000000000006',  # WETH
        '0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22',  # cbETH
        '0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb',  # DAI
    ],
    'polygon': [
        '0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174',  # USDC.e
        '0xc2132D05D31c914a87C6611C10748AEb04B58e8F',  # USDT
        '0x1BFD67037B42Cf73acF2047067bd4F2C47D9BfD6',  # WBTC
        '0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063',  # DAI
        '0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270',  # WMATIC
        '0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359',  # USDC
    ],
    'arbitrum': [
        '0xaf88d065e77c8cC2239327C5EDb3A432268e5831',  # USDC
        '0xFF970A61A04b1cA14834A43f5dE4533eBDDB5CC8',  # USDC.e
        '0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9',  # USDT
        '0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f',  # WBTC
        '0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1',  # DAI
        '0x82aF49447D8a07e3bd95BD0d56f35241523fBab1',  # WETH
        '0x912CE59144191C1204E64559FE8253a0e49E6548',  # ARB
        '0xfc5A1A6EB076a2C7aD06eD22C90d7E710E35ad0a',  # GMX
    ],
    'optimism': [
        '0x7F5c764cBc14f9669B88837ca1490cCa17c31607',  # USDC.e
        '0x94b008aA00579c1307B0EF2c499aD98a8ce58e58',  # USDT
        '0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1',  # DAI
        '0x68f180fcCe6836688e9084f035309E29Bf0A2095',  # WBTC
        '0x4200000000000000000000000000000000000006',  # WETH
        '0x4200000000000000000000000000000000000042',  # OP
        '0x8700dAec35aF8Ff88c16BdF0418774CB3D7599B4',  # SNX
        '0x1F32b1c2345538c0c6f582fCB022739c4A194Ebb',  # wstETH
    ],
}

KNOWN_NFT_CONTRACTS: Dict[str, Dict[str, List[str]]] = {
    'mainnet': {
        'ERC721': [
            '0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D',  # BAYC
            '0x60E4d786628Fea6478F785A6d7e704777c86a7c6',  # MAYC
            '0xED5AF388653567Af7F388Ed23Dd0Fc5C8A8C2b78',  # Azuki
            '0x8a90CAb2b38dba80c64b7734e58Ee1dB38B8992e',  # Doodles
            '0x7Bd29408f11D2bFC23c34f18275bBf23bB716Bc7',  # Meebits
        ],
        'ERC1155': [
            '0x495f947276749Ce646f68AC8c248420045cb7b5e',  # OpenSea Shared Storefront
        ],
    },
    'linea': {
        'ERC721': ['0x0841479e87Ed8cC7374d3E49fF677f0e62f91fa1'],
    },
}


def _is_default_metadata(record: AssetRecord) -> bool:
    return record.name == 'Unknown Token' and record.symbol == 'UNKNOWN'


def _merge_key(record: AssetRecord) -> Tuple:
    if record.kind.is_non_fungible:
        return (record.address.lower(), record.kind)
    return (record.address.lower(),)


def _merge_into(target: AssetRecord, other: AssetRecord):
    if _is_default_metadata(target) and not _is_default_metadata(other):
        target.name, target.symbol = other.name, other.symbol
        if not target.kind.is_non_fungible:
            target.decimals = other.decimals

    other_wins = SOURCE_AUTHORITY.get(other.discovery_source, 0) > SOURCE_AUTHORITY.get(target.discovery_source, 0)

    if target.kind == AssetKind.NON_FUNGIBLE_MULTI:
        for token_id, amount in other.token_amounts.items():
            if token_id not in target.token_amounts or other_wins:
                target.token_amounts[token_id] = amount
        target.token_ids = list(target.token_amounts) or target.token_ids
        target.balance = sum(target.token_amounts.values()) or max(target.balance, other.balance)
    elif target.kind == AssetKind.NON_FUNGIBLE_UNIQUE:
        ids = [i for i in target.token_ids + other.token_ids if i != UNKNOWN_TOKEN_ID]
        target.token_ids = list(dict.fromkeys(ids)) or [UNKNOWN_TOKEN_ID]
        target.balance = max(target.balance, other.balance)
    elif other_wins:
        target.balance = other.balance

    if other_wins:
        target.discovery_source = other.discovery_source
    if target.price_usd is None and other.price_usd is not None:
        target.price_usd = other.price_usd
    if other.suspected and not target.suspected:
        target.suspected, target.suspected_reason = other.suspected, other.suspected_reason


def merge_records(records: List[AssetRecord]) -> List[AssetRecord]:
    """
    Merge duplicates so each dedup key appears once

    Earliest metadata is kept; balance comes from the most authoritative
    source; NFT ids are unioned.
    """
    merged: Dict[Tuple, AssetRecord] = {}
    for record in records:
        key = _merge_key(record)
        if key in merged:
            _merge_into(merged[key], record)
        else:
            merged[key] = copy.deepcopy(record)
    return list(merged.values())


def sort_records(records: List[AssetRecord]) -> List[AssetRecord]:
    """USD value desc, then fungible < ERC721 < ERC1155, then balance desc"""
    return sorted(
        records,
        key=lambda r: (-(r.value_usd or 0.0), KIND_SORT_RANK[r.kind], -r.balance_float),
    )


def _non_native_count(values: List[List[AssetRecord]]) -> int:
    return sum(1 for batch in values for r in batch if not r.is_native)


def _record_count(values: List[List[AssetRecord]]) -> int:
    return sum(len(batch) for batch in values)


class TokenDiscoveryEngine:
    """
    Layered token discovery across networks

    Features:
    - Declarative tier list run through run_strategies (accumulate mode)
    - Tiers skipped once enough records were found
    - USD pricing and scam flags on the merged result
    - Partial failures logged, never raised
    """

    def __init__(
        self,
        networks: NetworkRegistry,
        gateway_for: Callable[[str], object],
        indexer=None,
        explorer=None,
        scam_filter: Optional[ScamFilter] = None,
        sufficient_record_count: int = SUFFICIENT_RECORD_COUNT,
        log_backfill_windows: Optional[Dict[str, int]] = None,
        log_backfill_window_blocks: int = LOG_BACKFILL_WINDOW_BLOCKS,
        log_backfill_max_contracts: int = LOG_BACKFILL_MAX_CONTRACTS,
        erc1155_scan_limit: int = 1000
    ):
        """
        Initialize discovery engine

        Args:
            networks: Network registry
            gateway_for: network id -> EvmGateway
            indexer: Optional IndexerClient
            explorer: Optional ExplorerClient
            scam_filter: ScamFilter (default rules when None)
            sufficient_record_count: Skip remaining tiers past this many records
            log_backfill_windows: {network: windows, 'default': windows}
            log_backfill_window_blocks: Initial window size in blocks
            log_backfill_max_contracts: Stop collecting contracts past this count
            erc1155_scan_limit: Upper bound of the ERC1155 id scan
        """
        self.networks = networks
        self.gateway_for = gateway_for
        self.indexer = indexer
        self.explorer = explorer
        self.scam_filter = scam_filter or ScamFilter()
        self.sufficient_record_count = sufficient_record_count
        self.log_backfill_windows = {**LOG_BACKFILL_WINDOWS, **(log_backfill_windows or {})}
        self.window_blocks = log_backfill_window_blocks
        self.max_contracts = log_backfill_max_contracts
        self.erc1155_scan_limit = erc1155_scan_limit

    def _below_sufficient(self, values: List[List[AssetRecord]]) -> bool:
        return _record_count(values) < self.sufficient_record_count

    async def discover(self, account: str, network: str,
                       token: Optional[CancellationToken] = None) -> List[AssetRecord]:
        """
        Discover an account's assets on one network

        Args:
            account: Account address
            network: Network id
            token: Cancellation token

        Returns:
            Merged, priced, scam-flagged and sorted AssetRecords ([] on total failure)

        Raises:
            Cancelled: the token was cancelled
        """
        try:
            config = self.networks.require(network)
            gateway = self.gateway_for(network)
        except Exception as e:
            logger.error(f"✗ Discovery cannot start on {network}: {e}")
            return []

        nfts = NftIdDiscovery(gateway, self.erc1155_scan_limit)

        strategies = [
            Strategy('multicall', lambda _: self._multicall_tier(gateway, nfts, config, account, token)),
            Strategy('native', lambda _: self._native_tier(gateway, config, account)),
            Strategy('indexer', lambda _: self._indexer_tier(account, network),
                     should_run=self._below_sufficient),
            Strategy('log_backfill', lambda _: self._log_backfill_tier(gateway, nfts, config, account, token),
                     should_run=lambda values: _non_native_count(values) == 0),
            Strategy('explorer', lambda _: self._explorer_tier(gateway, config, account),
                     should_run=lambda values: _non_native_count(values) == 0),
        ]

        try:
            report = await run_strategies(strategies, None, mode="accumulate", token=token)
            records = merge_records([r for batch in report.values for r in batch])
            await self._price(records, network, token)
            self.scam_filter.flag(records)
            records = sort_records(records)
        except Cancelled:
            raise
        except Exception as e:
            logger.error(f"✗ Discovery failed for {short(account)} on {network}: {e}")
            return []

        for name, reason in report.reasons.items():
            logger.debug(f"Discovery tier {name} failed on {network}: {reason}")
        logger.info(f"🔍 Discovered {len(records)} asset(s) for {short(account)} on {network} "
                    f"(tiers: {', '.join(report.succeeded) or 'none'})")
        return records

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def _multicall_tier(self, gateway, nfts: NftIdDiscovery, config: NetworkConfig,
                              account: str, token) -> StrategyResult:
        tokens = list(dict.fromkeys(COMMON_TOKENS.get(config.id, []) + list(config.extra_tokens)))
        records: List[AssetRecord] = []

        if tokens:
            source = 'multicall'
            try:
                rows = await gateway.read_token_batch(tokens, account)
            except Cancelled:
                raise
            except Exception as e:
                logger.debug(f"Multicall batch failed on {config.id}: {e}, reading contracts one by one")
                source = 'direct'
                rows = []
                for address in tokens:
                    check_cancelled(token)
                    try:
                        rows.append(await gateway.read_token(address, account))
                    except Exception as read_error:
                        logger.debug(f"Read of {short(address)} failed: {read_error}")

            for row in rows:
                if row['balance'] > 0:
                    records.append(AssetRecord(
                        address=row['address'], network=config.id, kind=AssetKind.FUNGIBLE,
                        balance=row['balance'], decimals=row['decimals'], name=row['name'],
                        symbol=row['symbol'], discovery_source=source,
                    ))

        known = KNOWN_NFT_CONTRACTS.get(config.id, {})
        for contract in known.get('ERC721', []):
            check_cancelled(token)
            record = await self._read_erc721(gateway, nfts, config.id, contract, account, 'multicall', token)
            if record:
                records.append(record)
        for contract in known.get('ERC1155', []):
            check_cancelled(token)
            holdings = await nfts.discover_erc1155_holdings(contract, account, token)
            if holdings:
                records.append(AssetRecord(
                    address=contract, network=config.id, kind=AssetKind.NON_FUNGIBLE_MULTI,
                    balance=sum(holdings.values()), token_amounts=holdings,
                    name='ERC1155', symbol='ERC1155', discovery_source='multicall',
                ))

        return StrategyResult.success(records)

    async def _read_erc721(self, gateway, nfts: NftIdDiscovery, network: str, contract: str,
                            account: str, source: str, token) -> Optional[AssetRecord]:
        try:
            balance = int(await gateway.call(contract, 'erc721', 'balanceOf', account))
        except Cancelled:
            raise
        except Exception:
            return None
        if balance <= 0:
            return None

        ids = await nfts.discover_erc721_ids(contract, account, expected=balance, token=token)
        name, symbol = 'Unknown NFT', 'NFT'
        try:
            name = await gateway.call(contract, 'erc721', 'name') or name
            symbol = await gateway.call(contract, 'erc721', 'symbol') or symbol
        except Exception as e:
            logger.debug(f"No ERC721 metadata for {short(contract)}: {e}")
        return AssetRecord(
            address=contract, network=network, kind=AssetKind.NON_FUNGIBLE_UNIQUE,
            balance=balance, token_ids=ids, name=name, symbol=symbol, discovery_source=source,
        )

    async def _native_tier(self, gateway, config: NetworkConfig, account: str) -> StrategyResult:
        balance = await gateway.get_balance(account)
        if balance <= 0:
            return StrategyResult.success([])
        return StrategyResult.success([AssetRecord(
            address=NATIVE_ADDRESS, network=config.id, kind=AssetKind.NATIVE, balance=balance,
            decimals=config.native_decimals, name=config.native_symbol, symbol=config.native_symbol,
            discovery_source='native_check',
        )])

    async def _indexer_tier(self, account: str, network: str) -> StrategyResult:
        if self.indexer is None or not self.indexer.enabled:
            return StrategyResult.failure("no indexer API key")
        records = await self.indexer.fetch_erc20_holdings(account, network)
        records += await self.indexer.fetch_nft_holdings(account, network)
        return StrategyResult.success(records)

    async def _log_backfill_tier(self, gateway, nfts: NftIdDiscovery, config: NetworkConfig,
                                 account: str, token) -> StrategyResult:
        head = await gateway.get_block_number()
        windows = self.log_backfill_windows.get(config.id, self.log_backfill_windows['default'])
        window = self.window_blocks
        account_topic = address_topic(account)

        # contract -> topic count of the first Transfer seen (4 means an indexed token id)
        contracts: Dict[str, int] = {}
        end = head
        scanned = 0
        while scanned < windows and end >= 0 and len(contracts) < self.max_contracts:
            check_cancelled(token)
            start = max(0, end - window + 1)
            try:
                for topics in ([TRANSFER_TOPIC, account_topic], [TRANSFER_TOPIC, None, account_topic]):
                    for log in await gateway.get_logs(start, end, topics):
                        contracts.setdefault(log['address'].lower(), len(log['topics']))
            except BlockRangeLimitError:
                if window // 2 >= LOG_BACKFILL_MIN_WINDOW:
                    window //= 2
                    logger.debug(f"Log window too wide on {config.id}, shrinking to {window} blocks")
                    continue
                logger.warning(f"⚠ Skipping logs [{start}, {end}] on {config.id}: range limit at minimum window")
            scanned += 1
            end = start - 1

        records: List[AssetRecord] = []
        for contract, topic_count in list(contracts.items())[:self.max_contracts]:
            check_cancelled(token)
            if topic_count == 4:
                record = await self._read_erc721(gateway, nfts, config.id, contract, account,
                                                  'log_backfill', token)
                if record:
                    records.append(record)
                continue
            try:
                row = await gateway.read_token(contract, account)
            except Exception as e:
                logger.debug(f"Live balance read of {short(contract)} failed: {e}")
                continue
            if row['balance'] > 0:
                records.append(AssetRecord(
                    address=row['address'], network=config.id, kind=AssetKind.FUNGIBLE,
                    balance=row['balance'], decimals=row['decimals'], name=row['name'],
                    symbol=row['symbol'], discovery_source='log_backfill',
                ))

        logger.info(f"🔍 Log backfill on {config.id}: {len(contracts)} contract(s) seen, "
                    f"{len(records)} with balance")
        return StrategyResult.success(records)

    async def _explorer_tier(self, gateway, config: NetworkConfig, account: str) -> StrategyResult:
        if self.explorer is None:
            return StrategyResult.failure("no explorer client")
        contracts = await self.explorer.token_contracts(account, config)

        records: List[AssetRecord] = []
        for entry in contracts:
            try:
                row = await gateway.read_token(entry['address'], account)
            except Exception as e:
                logger.debug(f"Live balance read of {short(entry['address'])} failed: {e}")
                continue
            if row['balance'] <= 0:
                continue
            if row['name'] == 'Unknown Token':
                row.update(name=entry['name'], symbol=entry['symbol'], decimals=entry['decimals'])
            records.append(AssetRecord(
                address=row['address'], network=config.id, kind=AssetKind.FUNGIBLE,
                balance=row['balance'], decimals=row['decimals'], name=row['name'],
                symbol=row['symbol'], discovery_source='explorer',
            ))
        return StrategyResult.success(records)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    async def _price(self, records: List[AssetRecord], network: str, token):
        if self.indexer is None or not self.indexer.enabled:
            for record in records:
                if record.price_usd is not None:
                    record.value_usd = record.price_usd * record.balance_float
            return

        for record in records:
            if record.kind.is_non_fungible:
                continue
            check_cancelled(token)
            if record.price_usd is None:
                if record.is_native:
                    record.price_usd = await self.indexer.native_price_usd(network)
                else:
                    record.price_usd = await self.indexer.token_price_usd(network, record.address)
            if record.price_usd is not None:
                record.value_usd = record.price_usd * record.balance_float
