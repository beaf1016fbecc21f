"""
Rescue Integration

Caller-facing surface that wires the rescue service, session loops,
Solana rescue and persistence together.

Lifecycle:
1. start_session() validates and schedules a multi-network loop
2. Each pass runs RescueService.rescue_network per network
3. stop_session() ends a loop after its current network; shutdown() also cancels in-flight work
"""

import asyncio
import sqlite3
from typing import Callable, Dict, List, Optional, Union

from loguru import logger

from .config import RescueConfig
from .job_lock import JobLock
from .models import AssetRecord, NetworkPassResult, RescueRequest
from .rescue_service import RescueService
from .session_manager import (
    RecoverySession, SessionJanitor, SessionRegistry, SessionRequest, SessionRunner,
)
from .solana_rescue import SolanaRescue
from .token_store import RescueHistory, SavedTokenStore


class RescueCoordinator:
    """
    Entry point for callers

    Features:
    - Multi-network recovery sessions with periodic cleanup
    - One-shot EVM and Solana rescues, cancellable by operation id
    - Saved token lists and rescue history in SQLite
    """

    def __init__(
        self,
        config: Optional[RescueConfig] = None,
        service: Optional[RescueService] = None,
        solana: Optional[SolanaRescue] = None,
        token_store: Optional[SavedTokenStore] = None,
        history: Optional[RescueHistory] = None,
        job_lock: Optional[JobLock] = None,
        sleep: Callable = asyncio.sleep
    ):
        """
        Initialize coordinator

        Args:
            config: RescueConfig (defaults when None)
            service: RescueService (built from config when None)
            solana: SolanaRescue (built from config when None)
            token_store: SavedTokenStore (storage.db_path when None)
            history: RescueHistory (storage.db_path when None)
            job_lock: Optional JobLock around each session pass
            sleep: Awaitable sleep used by session loops
        """
        self.config = config or RescueConfig()
        db_path = self.config.get('storage.db_path', 'rescue_history.db')

        self.history = history if history is not None else RescueHistory(db_path)
        self.token_store = token_store if token_store is not None else SavedTokenStore(db_path)
        self.service = service or RescueService(self.config, history=self.history)
        if self.service.history is None:
            self.service.history = self.history
        self.solana = solana or SolanaRescue(self.config, indexer=self.service.indexer)

        sessions = self.config.section('sessions')
        self.registry = SessionRegistry(
            self.service.networks.all_ids(),
            min_interval_seconds=sessions.get('min_interval_seconds', 10),
        )
        self.runner = SessionRunner(
            self.registry,
            self._rescue_session_network,
            sleep=sleep,
            inter_network_delay=sessions.get('inter_network_delay_seconds', 2),
            job_lock=job_lock,
        )
        self.janitor = SessionJanitor(
            self.registry,
            operations=self.service.operations,
            interval_seconds=sessions.get('janitor_interval_seconds', 3600),
            max_age_hours=sessions.get('max_session_age_hours', 24),
            sleep=sleep,
        )

        logger.info("Rescue coordinator initialized")

    async def _rescue_session_network(self, session: RecoverySession, network: str) -> NetworkPassResult:
        return await self.service.rescue_network(session.rescue_request(network), network, session.token)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(self, request: Union[SessionRequest, Dict]) -> Dict:
        """
        Validate and start a multi-network recovery loop

        Args:
            request: SessionRequest or a dict of its fields

        Returns:
            {'success', 'session_id', 'networks', ...} or {'success': False, 'error', 'field'}
        """
        if isinstance(request, dict):
            request = SessionRequest(**request)

        result = self.registry.start_session(request)
        if not result['success']:
            logger.warning(f"⚠ Session rejected ({result.get('field')}): {result['error']}")
            return result

        session = result.pop('session')
        self.runner.start(session)
        self.janitor.start()
        return result

    def stop_session(self, session_id: str) -> Dict:
        """Stop a session; the network in flight finishes, the next one does not start"""
        return self.runner.stop(session_id)

    def session_status(self, session_id: str) -> Dict:
        return self.registry.status(session_id)

    def active_sessions(self) -> List[Dict]:
        return [s.to_dict() for s in self.registry.active()]

    def stats(self) -> Dict:
        stats = self.registry.stats()
        stats['active_operations'] = self.service.operations.active_count
        stats['saved_tokens'] = self.token_store.statistics()['total_tokens']
        return stats

    # ------------------------------------------------------------------
    # One-shot rescues
    # ------------------------------------------------------------------

    async def rescue_once(self, request: Union[RescueRequest, Dict], operation_id: Optional[str] = None) -> Dict:
        """
        Single rescue on one network

        Args:
            request: RescueRequest or a dict of its fields
            operation_id: Id the caller can later pass to cancel_rescue

        Returns:
            RescueReport as dict
        """
        if isinstance(request, dict):
            request = RescueRequest(**request)

        token = self.service.operations.create(operation_id)
        try:
            report = await self.service.perform_auto_rescue(request, token)
        finally:
            self.service.operations.release(token.operation_id)
        return report.to_dict()

    def cancel_rescue(self, operation_id: Optional[str] = None) -> Dict:
        """Cancel one operation by id, or every running operation when id is None"""
        if operation_id is None:
            count = self.service.cancel_all()
            return {'success': True, 'cancelled': count}
        if self.service.cancel(operation_id):
            return {'success': True, 'cancelled': 1, 'operation_id': operation_id}
        return {'success': False, 'error': 'Operation not found', 'operation_id': operation_id}

    async def rescue_solana(
        self,
        secret_input: str,
        destination: str,
        operation_id: Optional[str] = None,
        **options
    ) -> Dict:
        """
        Solana rescue (SOL and SPL tokens)

        Args:
            secret_input: JSON byte array or base58 secret key
            destination: Safe wallet (base58)
            operation_id: Id the caller can later pass to cancel_rescue
            **options: rpc_url, cu_limit, cu_price_micro_lamports, buffer_lamports, sol_only

        Returns:
            SolanaRescueReport as dict
        """
        solana = self.config.section('solana')
        options.setdefault('cu_limit', solana.get('cu_limit', 400_000))
        options.setdefault('buffer_lamports', solana.get('buffer_lamports', 50_000))

        token = self.service.operations.create(operation_id)
        try:
            report = await self.solana.rescue_now(secret_input, destination, token=token, **options)
        finally:
            self.service.operations.release(token.operation_id)
        return report.to_dict()

    async def check_balance(self, private_key: str, network: str) -> Dict:
        return await self.service.check_balance(private_key, network)

    # ------------------------------------------------------------------
    # Saved tokens
    # ------------------------------------------------------------------

    def save_tokens(self, network: str, tokens: List[Union[AssetRecord, Dict]], priority: str = 'normal') -> Dict:
        if not self.service.networks.is_supported(network):
            return {'success': False, 'error': f"Network is not supported: {network}"}
        try:
            saved = self.token_store.save(tokens, network, priority=priority)
        except (sqlite3.Error, KeyError, ValueError) as e:
            logger.error(f"✗ Saving tokens for {network} failed: {e}")
            return {'success': False, 'error': str(e)}
        return {'success': True, 'saved': saved, 'network': network}

    def saved_tokens(self, network: Optional[str] = None, query: Optional[str] = None) -> Dict:
        tokens = self.token_store.search(query) if query else self.token_store.list(network)
        if query and network:
            tokens = [t for t in tokens if t['network'] == network]
        return {'success': True, 'tokens': tokens, 'count': len(tokens)}

    def delete_saved_tokens(self, network: str, address: Optional[str] = None) -> Dict:
        deleted = self.token_store.delete(network, address)
        return {'success': True, 'deleted': deleted, 'network': network}

    def rescue_history(self, limit: int = 50) -> List[Dict]:
        return self.history.list(limit)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self):
        """Stop every loop, cancel running operations and close clients"""
        logger.info("Shutting down rescue coordinator")
        self.service.cancel_all()
        await self.runner.shutdown()
        await self.janitor.stop()
        await self.service.close()
        self.history.close()
        self.token_store.close()
