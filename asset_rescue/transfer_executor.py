"""
Transfer Executor

Moves one discovered asset from the compromised account to the safe wallet.

Per kind:
1. NATIVE: live balance minus reserve minus estimated fee
2. ERC20: scam check, live balance clamp, direct transfer, approve + transferFrom fallback
3. ERC721: per id transferFrom, approve fallback, ownership scan for unknown ids
4. ERC1155: per id safeTransferFrom, setApprovalForAll fallback

Every transaction is submitted with a send timeout and then confirmed with a
receipt timeout. A receipt timeout is logged and the transaction counted as sent.
"""

import asyncio
from typing import Dict, List, Optional

from eth_account import Account
from loguru import logger

from .abis import ERC1155_INTERFACE_ID, ERC721_INTERFACE_ID
from .cancellation import CancellationToken, check_cancelled
from .errors import Cancelled, InsufficientFunds, RescueError, UnsupportedAssetInterface
from .evm_gateway import short
from .fee_strategy import FeeOverrides, FeeStrategy
from .models import UNKNOWN_TOKEN_ID, AssetKind, AssetRecord, TransferOutcome
from .nft_discovery import NftIdDiscovery
from .scam_filter import ScamFilter

NATIVE_RESERVE_WEI = 10 ** 15  # 0.001 ETH
SEND_TIMEOUT_SECONDS = 30
CONFIRMATION_TIMEOUT_SECONDS = 60
PRIORITY_SCAN_LIMIT = 100
PRIORITY_ERC1155_IDS = 50

_INSUFFICIENT_FUNDS_MARKERS = ('insufficient funds', 'insufficient balance for transfer')


class TransactionReverted(RescueError):
    """Receipt came back with status 0"""


class TransferExecutor:
    """
    Single-asset transfers for one account on one network

    Features:
    - Dispatch on asset kind
    - Fee overrides and buffered gas limits on every transaction
    - Approval fallbacks for tokens that reject direct transfers
    - Failing stage named in the outcome detail
    """

    def __init__(
        self,
        gateway,
        network: str,
        private_key: str,
        fee_strategy: Optional[FeeStrategy] = None,
        scam_filter: Optional[ScamFilter] = None,
        native_reserve_wei: int = NATIVE_RESERVE_WEI,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
        confirmation_timeout: float = CONFIRMATION_TIMEOUT_SECONDS,
        nft_discovery: Optional[NftIdDiscovery] = None
    ):
        """
        Initialize executor

        Args:
            gateway: EvmGateway for the network
            network: Network id
            private_key: Key of the compromised account (kept in memory only)
            fee_strategy: FeeStrategy (defaults when None)
            scam_filter: ScamFilter applied to fungible tokens
            native_reserve_wei: Native balance left behind
            send_timeout: Seconds allowed for submission
            confirmation_timeout: Seconds allowed for the receipt
            nft_discovery: NftIdDiscovery (built over gateway when None)
        """
        self.gateway = gateway
        self.network = network
        self._private_key = private_key
        self.account = Account.from_key(private_key).address
        self.fee_strategy = fee_strategy or FeeStrategy()
        self.scam_filter = scam_filter or ScamFilter()
        self.native_reserve_wei = native_reserve_wei
        self.send_timeout = send_timeout
        self.confirmation_timeout = confirmation_timeout
        self.nfts = nft_discovery or NftIdDiscovery(gateway)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, tx: Dict, operation: str, fee_overrides: FeeOverrides,
                    token: Optional[CancellationToken]) -> str:
        """
        Submit one transaction and wait for its receipt

        Returns:
            Transaction hash

        Raises:
            InsufficientFunds: node rejected for lack of gas money
            TransactionReverted: receipt status 0
        """
        check_cancelled(token)
        full_tx = fee_overrides.apply(tx)
        if 'gas' not in full_tx:
            full_tx['gas'] = await self.fee_strategy.estimate_gas_limit(
                self.gateway, full_tx, self.network, operation
            )

        try:
            tx_hash = await asyncio.wait_for(
                self.gateway.send_transaction(self._private_key, full_tx), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            raise RescueError(f"{operation} submission timed out after {self.send_timeout}s")
        except Exception as e:
            if any(marker in str(e).lower() for marker in _INSUFFICIENT_FUNDS_MARKERS):
                raise InsufficientFunds(f"Insufficient funds for gas: {e}")
            raise

        check_cancelled(token)
        try:
            receipt = await self.gateway.wait_for_receipt(tx_hash, timeout=self.confirmation_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠ No receipt for {tx_hash} after {self.confirmation_timeout}s, counting as sent")
            return tx_hash

        if receipt.get('status') == 0:
            raise TransactionReverted(f"transaction {tx_hash} reverted")
        logger.debug(f"✓ {operation} confirmed: {tx_hash}")
        return tx_hash

    def _call_tx(self, contract: str, abi_name: str, fn_name: str, *args) -> Dict:
        return self.gateway.build_call(contract, abi_name, fn_name, *args, sender=self.account)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def transfer(
        self,
        asset: AssetRecord,
        destination: str,
        fee_overrides: Optional[FeeOverrides] = None,
        token: Optional[CancellationToken] = None
    ) -> TransferOutcome:
        """
        Transfer one asset to destination

        Args:
            asset: Asset to move
            destination: Safe wallet address
            fee_overrides: Fee fields for every transaction (node defaults when None)
            token: Cancellation token

        Returns:
            TransferOutcome (skipped for scams, zero balances, missing gas money)

        Raises:
            Cancelled: the token was cancelled
        """
        check_cancelled(token)
        overrides = fee_overrides or FeeOverrides()
        handlers = {
            AssetKind.NATIVE: self._transfer_native,
            AssetKind.FUNGIBLE: self._transfer_fungible,
            AssetKind.NON_FUNGIBLE_UNIQUE: self._transfer_unique,
            AssetKind.NON_FUNGIBLE_MULTI: self._transfer_multi,
        }

        try:
            outcome = await handlers[asset.kind](asset, destination, overrides, token)
        except Cancelled:
            raise
        except (InsufficientFunds, UnsupportedAssetInterface) as e:
            outcome = TransferOutcome.skip(str(e), asset)
        except Exception as e:
            outcome = TransferOutcome.failed(f"{asset.symbol} transfer failed: {e}", asset)

        if outcome.success:
            logger.info(f"✓ {outcome.detail}")
        elif outcome.skipped:
            logger.info(f"⚠ Skipped {asset.symbol} on {self.network}: {outcome.detail}")
        else:
            logger.error(f"✗ {outcome.detail}")
        return outcome

    async def _transfer_native(self, asset: AssetRecord, destination: str,
                               overrides: FeeOverrides, token) -> TransferOutcome:
        balance = await self.gateway.get_balance(self.account)
        gas_limit = self.fee_strategy.default_gas_limit(self.network, 'native_transfer')

        per_gas = overrides.per_gas_cost
        if not per_gas:
            estimate = await self.gateway.get_fee_estimate()
            per_gas = estimate.max_fee_per_gas or estimate.gas_price or 0

        fee = gas_limit * per_gas
        amount = balance - self.native_reserve_wei - fee
        if amount <= 0:
            return TransferOutcome.skip(
                f"Native balance {balance} does not cover reserve {self.native_reserve_wei} plus fee {fee}", asset
            )

        tx = {'to': destination, 'value': amount, 'gas': gas_limit}
        tx_hash = await self._send(tx, 'native_transfer', overrides, token)
        return TransferOutcome(
            success=True, detail=f"Transferred {amount} wei of {asset.symbol} on {self.network}",
            asset=asset, tx_hashes=[tx_hash], amount=amount,
        )

    async def _transfer_fungible(self, asset: AssetRecord, destination: str,
                                 overrides: FeeOverrides, token) -> TransferOutcome:
        suspected, reason = self.scam_filter.is_suspected(asset)
        if suspected or asset.suspected:
            return TransferOutcome.skip(f"Suspected scam token ({reason or asset.suspected_reason})", asset)

        live = int(await self.gateway.call(asset.address, 'erc20', 'balanceOf', self.account))
        amount = min(live, asset.balance)
        if amount <= 0:
            return TransferOutcome.skip(f"Live balance of {asset.symbol} is zero", asset)

        try:
            tx_hash = await self._send(
                self._call_tx(asset.address, 'erc20', 'transfer', destination, amount),
                'erc20_transfer', overrides, token,
            )
            return TransferOutcome(
                success=True, detail=f"Transferred {asset.symbol} ({amount}) on {self.network}",
                asset=asset, tx_hashes=[tx_hash], amount=amount,
            )
        except (Cancelled, InsufficientFunds):
            raise
        except Exception as direct_error:
            logger.warning(f"⚠ Direct transfer of {asset.symbol} failed: {direct_error}, trying approve + transferFrom")
            stage = f"direct transfer failed: {direct_error}"

        hashes: List[str] = []
        try:
            allowance = int(await self.gateway.call(asset.address, 'erc20', 'allowance', self.account, self.account))
        except Cancelled:
            raise
        except Exception:
            allowance = 0

        if allowance < amount:
            try:
                hashes.append(await self._send(
                    self._call_tx(asset.address, 'erc20', 'approve', self.account, amount),
                    'approve', overrides, token,
                ))
            except (Cancelled, InsufficientFunds):
                raise
            except Exception as e:
                return TransferOutcome.failed(f"{asset.symbol}: {stage}; approve failed: {e}", asset)

        try:
            hashes.append(await self._send(
                self._call_tx(asset.address, 'erc20', 'transferFrom', self.account, destination, amount),
                'erc20_transfer', overrides, token,
            ))
        except (Cancelled, InsufficientFunds):
            raise
        except Exception as e:
            return TransferOutcome.failed(f"{asset.symbol}: {stage}; transferFrom failed: {e}", asset)

        return TransferOutcome(
            success=True, detail=f"Transferred {asset.symbol} ({amount}) via transferFrom on {self.network}",
            asset=asset, tx_hashes=hashes, amount=amount,
        )

    async def _unique_ids(self, asset: AssetRecord, token) -> List[str]:
        ids = [i for i in asset.token_ids if i != UNKNOWN_TOKEN_ID]
        if not asset.token_ids:
            ids = [i for i in await self.nfts.discover_erc721_ids(asset.address, self.account, token=token)
                   if i != UNKNOWN_TOKEN_ID]
        if not ids:
            logger.info(f"🔍 Token ids of {asset.symbol} unknown, scanning ownership")
            ids = await self.nfts.scan_owned_erc721(asset.address, self.account, token=token)
        return ids

    async def _transfer_unique(self, asset: AssetRecord, destination: str,
                               overrides: FeeOverrides, token) -> TransferOutcome:
        ids = await self._unique_ids(asset, token)
        if not ids:
            return TransferOutcome.skip(f"No owned token ids found for {asset.symbol}", asset)

        hashes: List[str] = []
        moved = 0
        failures: List[str] = []
        for token_id in ids:
            check_cancelled(token)
            numeric_id = int(token_id)
            try:
                hashes.append(await self._send(
                    self._call_tx(asset.address, 'erc721', 'transferFrom', self.account, destination, numeric_id),
                    'erc721_transfer', overrides, token,
                ))
                moved += 1
                continue
            except (Cancelled, InsufficientFunds):
                raise
            except Exception as direct_error:
                logger.warning(f"⚠ transferFrom of {asset.symbol} #{token_id} failed: {direct_error}, approving")

            try:
                hashes.append(await self._send(
                    self._call_tx(asset.address, 'erc721', 'approve', self.account, numeric_id),
                    'approve', overrides, token,
                ))
                hashes.append(await self._send(
                    self._call_tx(asset.address, 'erc721', 'transferFrom', self.account, destination, numeric_id),
                    'erc721_transfer', overrides, token,
                ))
                moved += 1
            except (Cancelled, InsufficientFunds):
                raise
            except Exception as e:
                failures.append(f"#{token_id}: {e}")

        if moved == 0:
            return TransferOutcome.failed(f"{asset.symbol}: no token transferred ({'; '.join(failures)})", asset)
        detail = f"Transferred {moved}/{len(ids)} {asset.symbol} NFT(s) on {self.network}"
        if failures:
            detail += f" (failed: {'; '.join(failures)})"
        return TransferOutcome(success=True, detail=detail, asset=asset, tx_hashes=hashes, amount=moved)

    async def _multi_holdings(self, asset: AssetRecord, token) -> Dict[str, int]:
        """id -> amount to send, never above the live balanceOf read just now"""
        ids = [i for i in asset.token_ids if i != UNKNOWN_TOKEN_ID]
        if not asset.token_amounts and not ids:
            return await self.nfts.discover_erc1155_holdings(asset.address, self.account, token)

        discovered = dict(asset.token_amounts) if asset.token_amounts else {i: None for i in ids}
        holdings = {}
        for token_id, expected in discovered.items():
            check_cancelled(token)
            live = int(await self.gateway.call(asset.address, 'erc1155', 'balanceOf', self.account, int(token_id)))
            amount = live if expected is None else min(live, expected)
            if amount > 0:
                holdings[token_id] = amount
            else:
                logger.debug(f"{asset.symbol} #{token_id}: live balance is zero, skipping")
        return holdings

    async def _transfer_multi(self, asset: AssetRecord, destination: str,
                              overrides: FeeOverrides, token) -> TransferOutcome:
        holdings = await self._multi_holdings(asset, token)
        if not holdings:
            return TransferOutcome.skip(f"No ERC1155 balances found for {asset.symbol}", asset)

        hashes: List[str] = []
        moved = 0
        approved = False
        failures: List[str] = []
        for token_id, amount in holdings.items():
            check_cancelled(token)
            tx = self._call_tx(asset.address, 'erc1155', 'safeTransferFrom',
                               self.account, destination, int(token_id), amount, b"")
            try:
                hashes.append(await self._send(tx, 'erc1155_transfer', overrides, token))
                moved += amount
                continue
            except (Cancelled, InsufficientFunds):
                raise
            except Exception as direct_error:
                logger.warning(f"⚠ safeTransferFrom of {asset.symbol} #{token_id} failed: {direct_error}")

            try:
                if not approved:
                    hashes.append(await self._send(
                        self._call_tx(asset.address, 'erc1155', 'setApprovalForAll', self.account, True),
                        'approve', overrides, token,
                    ))
                    approved = True
                hashes.append(await self._send(tx, 'erc1155_transfer', overrides, token))
                moved += amount
            except (Cancelled, InsufficientFunds):
                raise
            except Exception as e:
                failures.append(f"#{token_id}: {e}")

        if moved == 0:
            return TransferOutcome.failed(f"{asset.symbol}: no ERC1155 id transferred ({'; '.join(failures)})", asset)
        return TransferOutcome(
            success=True, detail=f"Transferred {moved} ERC1155 unit(s) of {asset.symbol} on {self.network}",
            asset=asset, tx_hashes=hashes, amount=moved,
        )

    # ------------------------------------------------------------------
    # Priority token check
    # ------------------------------------------------------------------

    async def resolve_priority_token(self, contract: str, owner: Optional[str] = None,
                                     token: Optional[CancellationToken] = None) -> Optional[AssetRecord]:
        """
        Read a user-named contract directly, whatever its interface

        ERC20 first (decimals answers), then ERC721, then ERC1155 ids 0..49.

        Args:
            contract: Token contract address
            owner: Holder (defaults to the executor's account)
            token: Cancellation token

        Returns:
            AssetRecord with source 'priority_direct', or None when the balance is zero

        Raises:
            UnsupportedAssetInterface: no interface answered
        """
        owner = owner or self.account
        check_cancelled(token)

        is_multi = await self.gateway.supports_interface(contract, ERC1155_INTERFACE_ID)
        is_unique = not is_multi and await self.gateway.supports_interface(contract, ERC721_INTERFACE_ID)

        if not is_multi and not is_unique:
            try:
                await self.gateway.call(contract, 'erc20', 'decimals')
                row = await self.gateway.read_token(contract, owner)
            except Cancelled:
                raise
            except Exception as e:
                logger.debug(f"{short(contract)} is not ERC20: {e}")
            else:
                if row['balance'] <= 0:
                    return None
                return AssetRecord(
                    address=row['address'], network=self.network, kind=AssetKind.FUNGIBLE,
                    balance=row['balance'], decimals=row['decimals'], name=row['name'],
                    symbol=row['symbol'], discovery_source='priority_direct',
                )

        if not is_multi:
            record = await self._priority_unique(contract, owner, token)
            if record is not False:
                return record

        return await self._priority_multi(contract, owner, token)

    async def _priority_unique(self, contract: str, owner: str, token):
        try:
            balance = int(await self.gateway.call(contract, 'erc721', 'balanceOf', owner))
        except Cancelled:
            raise
        except Exception as e:
            logger.debug(f"{short(contract)} is not ERC721: {e}")
            return False
        if balance <= 0:
            return None

        ids = await self.nfts.enumerate_owned(contract, owner, balance)
        if not ids:
            try:
                supply = int(await self.gateway.call(contract, 'erc721', 'totalSupply'))
            except Exception:
                supply = PRIORITY_SCAN_LIMIT
            ids = await self.nfts.scan_owned_erc721(contract, owner, limit=min(supply, PRIORITY_SCAN_LIMIT), token=token)

        name, symbol = 'Unknown NFT', 'NFT'
        try:
            name = await self.gateway.call(contract, 'erc721', 'name') or name
            symbol = await self.gateway.call(contract, 'erc721', 'symbol') or symbol
        except Exception as e:
            logger.debug(f"No ERC721 metadata for {short(contract)}: {e}")
        return AssetRecord(
            address=contract, network=self.network, kind=AssetKind.NON_FUNGIBLE_UNIQUE, balance=balance,
            token_ids=ids or [UNKNOWN_TOKEN_ID], name=name, symbol=symbol, discovery_source='priority_direct',
        )

    async def _priority_multi(self, contract: str, owner: str, token) -> Optional[AssetRecord]:
        holdings: Dict[str, int] = {}
        answered = False
        for token_id in range(PRIORITY_ERC1155_IDS):
            check_cancelled(token)
            try:
                amount = int(await self.gateway.call(contract, 'erc1155', 'balanceOf', owner, token_id))
            except Cancelled:
                raise
            except Exception:
                continue
            answered = True
            if amount > 0:
                holdings[str(token_id)] = amount

        if not answered:
            raise UnsupportedAssetInterface(f"{short(contract)} answers no supported token interface")
        if not holdings:
            return None
        return AssetRecord(
            address=contract, network=self.network, kind=AssetKind.NON_FUNGIBLE_MULTI,
            balance=sum(holdings.values()), token_amounts=holdings,
            name='ERC1155', symbol='ERC1155', discovery_source='priority_direct',
        )
