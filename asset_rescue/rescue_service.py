"""
Rescue Service

One-network rescue run: validation, gas check, maximum-priority directives,
discovery, scheduling and transfers.

Features:
- Maximum-tier directives handled before discovery
- Native balance swept after tokens (configurable)
- Cancellable at every asset boundary
- Structured RescueReport with a human-readable summary
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from loguru import logger

from .cancellation import CancellationToken, OperationRegistry, check_cancelled
from .config import RescueConfig
from .errors import Cancelled, ValidationError
from .evm_gateway import EvmGateway, short
from .explorer_client import ExplorerClient
from .fee_strategy import FeeStrategy
from .indexer_client import IndexerClient
from .models import (
    AssetRecord, NetworkPassResult, PriorityDirective, RescueReport, RescueRequest, format_units,
)
from .networks import NetworkRegistry
from .priority_scheduler import maximum_directives, move_native_last, schedule, without_maximum
from .scam_filter import ScamFilter
from .token_discovery import TokenDiscoveryEngine
from .transfer_executor import TransferExecutor
from .validation import address_from_key, validate_rescue_request

NO_GAS_ERROR = 'Wallet has no ETH balance for gas fees'
CANCELLED_MESSAGE = 'Operation cancelled by user'


class RescueService:
    """
    Auto rescue on one network at a time

    Features:
    - Gateways cached per network
    - Operation registry for cancellation by id
    - Optional run history sink
    """

    def __init__(
        self,
        config: Optional[RescueConfig] = None,
        networks: Optional[NetworkRegistry] = None,
        gateway_factory: Optional[Callable[[str], object]] = None,
        discovery: Optional[TokenDiscoveryEngine] = None,
        fee_strategy: Optional[FeeStrategy] = None,
        scam_filter: Optional[ScamFilter] = None,
        indexer: Optional[IndexerClient] = None,
        explorer: Optional[ExplorerClient] = None,
        operations: Optional[OperationRegistry] = None,
        history=None
    ):
        """
        Initialize rescue service

        Args:
            config: RescueConfig (defaults when None)
            networks: NetworkRegistry (built from config when None)
            gateway_factory: network id -> gateway (EvmGateway when None)
            discovery: TokenDiscoveryEngine (built from config when None)
            fee_strategy: FeeStrategy (built from config when None)
            scam_filter: ScamFilter (built from config when None)
            indexer: IndexerClient (built from config when None)
            explorer: ExplorerClient (built from config when None)
            operations: OperationRegistry shared with callers
            history: Object with record(report), e.g. RescueHistory
        """
        self.config = config or RescueConfig()
        self.networks = networks or NetworkRegistry(self.config.section('networks'))
        self.gateway_factory = gateway_factory or self._build_gateway
        self.gateways: Dict[str, object] = {}

        self.scam_filter = scam_filter or ScamFilter(self.config.section('scam_filter'))
        self.fee_strategy = fee_strategy or FeeStrategy(
            bump_percent=self.config.get('fees.bump_percent'),
            cache_ttl_seconds=self.config.get('fees.cache_ttl_seconds', 15),
            gas_limits=self.config.get('fees.gas_limits'),
        )
        self.indexer = indexer if indexer is not None else IndexerClient(
            self.config.moralis_api_key,
            base_url=self.config.get('indexer.base_url'),
            rate_limit_seconds=self.config.get('indexer.rate_limit_seconds', 30),
            price_cache_ttl=self.config.get('indexer.price_cache_ttl_seconds', 300),
        )
        self.explorer = explorer if explorer is not None else ExplorerClient(self.config.etherscan_api_key)
        self.discovery = discovery or TokenDiscoveryEngine(
            self.networks, self.gateway_for,
            indexer=self.indexer,
            explorer=self.explorer,
            scam_filter=self.scam_filter,
            sufficient_record_count=self.config.get('discovery.sufficient_record_count', 25),
            log_backfill_windows=self.config.get('discovery.log_backfill_windows'),
            log_backfill_window_blocks=self.config.get('discovery.log_backfill_window_blocks', 500),
            log_backfill_max_contracts=self.config.get('discovery.log_backfill_max_contracts', 50),
            erc1155_scan_limit=self.config.get('discovery.erc1155_scan_limit', 1000),
        )
        self.operations = operations or OperationRegistry()
        self.history = history

        logger.info(f"Rescue service initialized ({len(self.networks.all_ids())} networks)")

    def _build_gateway(self, network: str) -> EvmGateway:
        return EvmGateway(self.networks.require(network))

    def gateway_for(self, network: str):
        if network not in self.gateways:
            self.gateways[network] = self.gateway_factory(network)
        return self.gateways[network]

    def executor_for(self, network: str, private_key: str) -> TransferExecutor:
        return TransferExecutor(
            self.gateway_for(network), network, private_key,
            fee_strategy=self.fee_strategy,
            scam_filter=self.scam_filter,
            native_reserve_wei=self.config.get('transfer.native_reserve_wei', 10 ** 15),
            send_timeout=self.config.get('transfer.send_timeout_seconds', 30),
            confirmation_timeout=self.config.get('transfer.confirmation_timeout_seconds', 60),
        )

    # ------------------------------------------------------------------
    # Auto rescue
    # ------------------------------------------------------------------

    async def perform_auto_rescue(self, request: RescueRequest,
                                  token: Optional[CancellationToken] = None) -> RescueReport:
        """
        Rescue everything transferable on request.network

        Args:
            request: Rescue request (key, safe wallet, network, directives)
            token: Cancellation token (a registered one is created when None)

        Returns:
            RescueReport (never raises)
        """
        owns_token = token is None
        token = token or self.operations.create()
        report = RescueReport(success=False, message='', network=request.network,
                              operation_id=token.operation_id)

        try:
            await self._run(request, token, report)
        except ValidationError as e:
            report.message = report.error = str(e)
            logger.warning(f"⚠ Rescue request rejected ({e.field}): {e}")
        except Cancelled:
            report.cancelled = True
            report.success = False
            report.message = report.error = CANCELLED_MESSAGE
            report.note(CANCELLED_MESSAGE)
            logger.info(f"Rescue {token.operation_id} on {request.network} cancelled")
        except Exception as e:
            report.success = False
            report.message = report.error = f"Auto rescue failed: {e}"
            report.note(report.message)
            logger.error(f"✗ Rescue on {request.network} failed: {e}")
        finally:
            report.completed_at = datetime.now(timezone.utc)
            if owns_token:
                self.operations.release(token.operation_id)

        if self.history is not None:
            try:
                self.history.record(report)
            except Exception as e:
                logger.warning(f"⚠ Failed to record rescue history: {e}")
        return report

    async def _run(self, request: RescueRequest, token: CancellationToken, report: RescueReport):
        validate_rescue_request(request, self.networks.all_ids())
        network = request.network
        config = self.networks.require(network)
        report.note('Starting auto rescue operation...')
        check_cancelled(token)

        account = address_from_key(request.private_key)
        report.note(f"Connected to wallet: {account}")

        gateway = self.gateway_for(network)
        balance = await gateway.get_balance(account)
        report.note(f"Wallet balance: {format_units(balance, config.native_decimals, 6)} {config.native_symbol}")

        if balance == 0:
            report.note(f"Warning: {NO_GAS_ERROR}")
            report.note('Auto rescue cannot proceed without ETH for gas')
            report.message = report.error = NO_GAS_ERROR
            logger.warning(f"⚠ {short(account)} has no gas money on {network}, nothing sent")
            return

        handled = await self._rescue_maximum(request, token, report)

        check_cancelled(token)
        report.note(f"Starting regular token processing on {network}")
        current_nonce = await gateway.get_transaction_count(account)
        target_nonce = request.nonce if request.nonce is not None else current_nonce
        report.note(f"Current nonce: {current_nonce}, Target nonce: {target_nonce}")

        assets = await self.discovery.discover(account, network, token)
        report.tokens_found = len(assets)
        report.note(f"Found {len(assets)} tokens")

        assets = [a for a in assets if not any(d.matches(a) for d in handled)]
        ordered = schedule(assets, without_maximum(request.priority_tokens))
        if self.config.get('transfer.sweep_native_last', True):
            ordered = move_native_last(ordered)

        executor = self.executor_for(network, request.private_key)
        overrides = await self.fee_strategy.overrides(network, gateway)
        for asset in ordered:
            check_cancelled(token)
            outcome = await executor.transfer(asset, request.safe_wallet, overrides, token)
            report.outcomes.append(outcome)
            self._count(report, asset, outcome)

        report.success = True
        parts = [f"{report.rescued_tokens} token(s) rescued"]
        if report.rescued_native:
            parts.append(f"{config.native_symbol} swept")
        report.message = f"Auto rescue completed on {network}: {', '.join(parts)}"
        report.note(report.message)
        logger.info(f"✓ {report.message}")

    def _count(self, report: RescueReport, asset: AssetRecord, outcome):
        if outcome.success:
            if asset.is_native:
                report.rescued_native = True
            else:
                report.rescued_tokens += 1
            report.note(outcome.detail)
        elif outcome.skipped:
            report.note(f"Skipped {asset.symbol}: {outcome.detail}")
        else:
            report.note(f"Failed to transfer {asset.symbol}: {outcome.detail}")

    async def _rescue_maximum(self, request: RescueRequest, token: CancellationToken,
                              report: RescueReport) -> List[PriorityDirective]:
        """Probe and transfer maximum-tier directives; returns the directives handled"""
        directives = maximum_directives(request.priority_tokens)
        if not directives:
            return []

        report.note(f"Processing {len(directives)} maximum priority token(s) first")
        handled: List[PriorityDirective] = []
        transferred = 0
        for directive in directives:
            check_cancelled(token)
            network = directive.network or request.network
            label = f"{directive.contract_address} on {network}"
            if not self.networks.is_supported(network):
                report.note(f"Maximum priority token skipped, unsupported network: {label}")
                continue

            try:
                executor = self.executor_for(network, request.private_key)
                record = await executor.resolve_priority_token(directive.contract_address, token=token)
                if record is None:
                    report.note(f"Maximum priority token not found: {label}")
                    handled.append(directive)
                    continue

                overrides = await self.fee_strategy.overrides(network, self.gateway_for(network))
                outcome = await executor.transfer(record, request.safe_wallet, overrides, token)
                report.outcomes.append(outcome)
                self._count(report, record, outcome)
                handled.append(directive)
                if outcome.success:
                    transferred += 1
            except Cancelled:
                raise
            except Exception as e:
                logger.error(f"✗ Maximum priority token {label} failed: {e}")
                report.note(f"Maximum priority processing error: {label}: {e}")

        report.note(f"Maximum priority processing completed: {transferred} token(s) transferred")
        return handled

    async def rescue_network(self, request: RescueRequest, network: str,
                             token: Optional[CancellationToken] = None) -> NetworkPassResult:
        """Run perform_auto_rescue for one network of a session pass"""
        report = await self.perform_auto_rescue(replace(request, network=network), token)
        if report.cancelled:
            raise Cancelled(report.message)
        transferred = report.rescued_tokens + (1 if report.rescued_native else 0)
        return NetworkPassResult(
            network=network, success=report.success, message=report.message,
            tokens_found=report.tokens_found, tokens_transferred=transferred,
            error=report.error,
        )

    # ------------------------------------------------------------------
    # Misc operations
    # ------------------------------------------------------------------

    async def check_balance(self, private_key: str, network: str) -> Dict:
        """Native balance of the account behind private_key"""
        try:
            config = self.networks.require(network)
            account = address_from_key(private_key)
            balance = await self.gateway_for(network).get_balance(account)
        except Exception as e:
            logger.error(f"✗ Balance check on {network} failed: {e}")
            return {'success': False, 'error': str(e), 'network': network}

        logger.info(f"💰 {short(account)} holds {format_units(balance, config.native_decimals, 6)} "
                    f"{config.native_symbol} on {network}")
        return {
            'success': True,
            'address': account,
            'network': network,
            'balance': str(balance),
            'formatted_balance': format_units(balance, config.native_decimals, 6),
            'symbol': config.native_symbol,
        }

    def cancel(self, operation_id: str) -> bool:
        return self.operations.cancel(operation_id)

    def cancel_all(self) -> int:
        return self.operations.cancel_all()

    async def close(self):
        for network, gateway in self.gateways.items():
            close = getattr(gateway, 'close', None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug(f"Error closing gateway for {network}: {e}")
        self.gateways.clear()
        for client in (self.indexer, self.explorer):
            if client is not None:
                await client.close()
