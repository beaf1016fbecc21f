"""
NFT token-id discovery

Finds which token ids an account holds when no indexer lists them.

ERC721 strategy chain (first success wins):
1. tokenOfOwnerByIndex enumeration
2. Transfer logs to the owner, verified with ownerOf
3. Bounded ownerOf scan over common id ranges
4. UNKNOWN marker (resolved later by a transfer-time scan)
"""

from typing import Dict, List, Optional

from eth_abi import decode
from loguru import logger

from .abis import (
    TRANSFER_BATCH_TOPIC, TRANSFER_SINGLE_TOPIC, TRANSFER_TOPIC, address_topic, topic_to_int,
)
from .cancellation import CancellationToken, check_cancelled
from .errors import Cancelled
from .evm_gateway import get_logs_paged, short
from .models import UNKNOWN_TOKEN_ID
from .strategy_runner import Strategy, StrategyResult, run_strategies

LOG_LOOKBACK_BLOCKS = 3000
LOG_STEP_BLOCKS = 450
LOG_MIN_STEP_BLOCKS = 100
COMMON_ID_RANGES = [(0, 100), (1000, 1100), (10000, 10100), (100000, 100100)]
ERC1155_SCAN_LIMIT = 1000
OWNED_SCAN_LIMIT = 1000


class NftIdDiscovery:
    """Token-id discovery for ERC721 and ERC1155 contracts on one network"""

    def __init__(self, gateway, erc1155_scan_limit: int = ERC1155_SCAN_LIMIT):
        self.gateway = gateway
        self.erc1155_scan_limit = erc1155_scan_limit

    async def _owns(self, contract: str, owner: str, token_id: int) -> bool:
        try:
            holder = await self.gateway.call(contract, 'erc721', 'ownerOf', token_id)
        except Cancelled:
            raise
        except Exception:
            return False
        return str(holder).lower() == owner.lower()

    async def _balance_of(self, contract: str, owner: str) -> Optional[int]:
        try:
            return int(await self.gateway.call(contract, 'erc721', 'balanceOf', owner))
        except Exception:
            return None

    # ------------------------------------------------------------------
    # ERC721
    # ------------------------------------------------------------------

    async def enumerate_owned(self, contract: str, owner: str, count: int) -> List[str]:
        """tokenOfOwnerByIndex(owner, 0..count-1); stops at the first failing index"""
        ids = []
        for index in range(count):
            try:
                token_id = await self.gateway.call(contract, 'erc721', 'tokenOfOwnerByIndex', owner, index)
            except Cancelled:
                raise
            except Exception as e:
                logger.debug(f"tokenOfOwnerByIndex({index}) failed on {short(contract)}: {e}")
                break
            ids.append(str(token_id))
        return ids

    async def _by_index(self, contract: str, owner: str, expected: Optional[int]) -> StrategyResult:
        count = expected if expected is not None else await self._balance_of(contract, owner)
        if not count:
            return StrategyResult.failure("no balance to enumerate")

        ids = await self.enumerate_owned(contract, owner, count)
        return StrategyResult.success(ids) if ids else StrategyResult.failure("enumeration not supported")

    async def _by_logs(self, contract: str, owner: str, token: Optional[CancellationToken]) -> StrategyResult:
        head = await self.gateway.get_block_number()
        logs = await get_logs_paged(
            self.gateway, head - LOG_LOOKBACK_BLOCKS, head,
            [TRANSFER_TOPIC, None, address_topic(owner)],
            address=contract, step=LOG_STEP_BLOCKS, min_step=LOG_MIN_STEP_BLOCKS, token=token,
        )

        candidates: List[int] = []
        for log in logs:
            # ERC721 Transfer indexes the id as the fourth topic
            if len(log['topics']) == 4:
                token_id = topic_to_int(log['topics'][3])
                if token_id not in candidates:
                    candidates.append(token_id)

        ids = []
        for token_id in candidates:
            check_cancelled(token)
            if await self._owns(contract, owner, token_id):
                ids.append(str(token_id))
        if ids:
            logger.debug(f"Found {len(ids)} owned ids via transfer logs for {short(contract)}")
            return StrategyResult.success(ids)
        return StrategyResult.failure(f"{len(candidates)} log candidates, none still owned")

    async def _by_common_ranges(self, contract: str, owner: str, expected: Optional[int],
                                token: Optional[CancellationToken]) -> StrategyResult:
        wanted = expected or 1
        ids = []
        for start, end in COMMON_ID_RANGES:
            for token_id in range(start, end):
                check_cancelled(token)
                if await self._owns(contract, owner, token_id):
                    ids.append(str(token_id))
                    if len(ids) >= wanted:
                        return StrategyResult.success(ids)
        return StrategyResult.success(ids) if ids else StrategyResult.failure("no id found in common ranges")

    async def discover_erc721_ids(self, contract: str, owner: str, expected: Optional[int] = None,
                                  token: Optional[CancellationToken] = None) -> List[str]:
        """
        Token ids of an ERC721 contract held by owner

        Args:
            contract: Collection address
            owner: Holder address
            expected: Known balance (read on demand when None)
            token: Cancellation token

        Returns:
            Owned ids, or ["UNKNOWN"] when none could be determined
        """
        async def unknown(_):
            return StrategyResult.success([UNKNOWN_TOKEN_ID])

        strategies = [
            Strategy('index_enumeration', lambda _: self._by_index(contract, owner, expected)),
            Strategy('transfer_logs', lambda _: self._by_logs(contract, owner, token)),
            Strategy('common_ranges', lambda _: self._by_common_ranges(contract, owner, expected, token)),
            Strategy('unknown_marker', unknown),
        ]
        report = await run_strategies(strategies, None, mode="first_success", token=token)
        ids = report.first or [UNKNOWN_TOKEN_ID]
        logger.info(f"🔍 ERC721 {short(contract)}: {len(ids)} id(s) via {report.succeeded[-1] if report.succeeded else 'none'}")
        return ids

    async def scan_owned_erc721(self, contract: str, owner: str, limit: int = OWNED_SCAN_LIMIT,
                                token: Optional[CancellationToken] = None) -> List[str]:
        """
        Transfer-time scan used to resolve the UNKNOWN marker

        Uses tokenByIndex(i) when the contract supports it, otherwise i itself.
        """
        try:
            supply = int(await self.gateway.call(contract, 'erc721', 'totalSupply'))
        except Exception:
            supply = limit
        upper = min(supply, limit)

        by_index = True
        ids = []
        for index in range(upper):
            check_cancelled(token)
            token_id = index
            if by_index:
                try:
                    token_id = int(await self.gateway.call(contract, 'erc721', 'tokenByIndex', index))
                except Exception:
                    by_index = False
            if await self._owns(contract, owner, token_id):
                ids.append(str(token_id))
        logger.debug(f"Ownership scan of {short(contract)} found {len(ids)} id(s) in {upper} slots")
        return ids

    # ------------------------------------------------------------------
    # ERC1155
    # ------------------------------------------------------------------

    async def _erc1155_balance(self, contract: str, owner: str, token_id: int) -> int:
        try:
            return int(await self.gateway.call(contract, 'erc1155', 'balanceOf', owner, token_id))
        except Cancelled:
            raise
        except Exception:
            return 0

    async def _erc1155_log_candidates(self, contract: str, owner: str,
                                      token: Optional[CancellationToken]) -> List[int]:
        head = await self.gateway.get_block_number()
        owner_topic = address_topic(owner)
        candidates: List[int] = []
        for topic in (TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC):
            logs = await get_logs_paged(
                self.gateway, head - LOG_LOOKBACK_BLOCKS, head, [topic, None, None, owner_topic],
                address=contract, step=LOG_STEP_BLOCKS, min_step=LOG_MIN_STEP_BLOCKS, token=token,
            )
            for log in logs:
                data = bytes.fromhex(log['data'][2:]) if log.get('data') else b''
                try:
                    if topic == TRANSFER_SINGLE_TOPIC:
                        ids = [decode(['uint256', 'uint256'], data)[0]]
                    else:
                        ids = list(decode(['uint256[]', 'uint256[]'], data)[0])
                except Exception:
                    continue
                for token_id in ids:
                    if token_id not in candidates:
                        candidates.append(token_id)
        return candidates

    async def discover_erc1155_holdings(self, contract: str, owner: str,
                                        token: Optional[CancellationToken] = None) -> Dict[str, int]:
        """
        ERC1155 ids and amounts held by owner

        Log candidates first, then a bounded id scan when the logs gave nothing.

        Returns:
            {token_id: amount}
        """
        holdings: Dict[str, int] = {}

        try:
            candidates = await self._erc1155_log_candidates(contract, owner, token)
        except Cancelled:
            raise
        except Exception as e:
            logger.debug(f"ERC1155 log scan failed for {short(contract)}: {e}")
            candidates = []

        for token_id in candidates:
            check_cancelled(token)
            amount = await self._erc1155_balance(contract, owner, token_id)
            if amount > 0:
                holdings[str(token_id)] = amount

        if not holdings:
            for token_id in range(self.erc1155_scan_limit):
                check_cancelled(token)
                amount = await self._erc1155_balance(contract, owner, token_id)
                if amount > 0:
                    holdings[str(token_id)] = amount

        if holdings:
            logger.info(f"🔍 ERC1155 {short(contract)}: {len(holdings)} id(s) held")
        return holdings
