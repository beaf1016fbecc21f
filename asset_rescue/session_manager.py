"""
Recovery Session Manager

Long-running multi-network recovery: repeatedly rescue on a list of
networks until stopped.

Features:
- Explicit SessionRegistry (no module-level state)
- run_one_pass step function (injected rescue function, sleep and clock)
- SessionRunner owning one asyncio task per session
- SessionJanitor removing stale sessions and operations
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from loguru import logger

from .cancellation import CancellationToken, OperationRegistry, generate_id
from .errors import Cancelled, ValidationError
from .models import NetworkPassResult, PriorityDirective, RescueRequest
from .validation import (
    ADDRESSES_MATCH, REQUIRED, address_from_key, validate_address, validate_private_key,
)

INTER_NETWORK_DELAY_SECONDS = 2
MIN_INTERVAL_SECONDS = 10
DEFAULT_INTERVAL_SECONDS = 30
MAX_SESSION_AGE_HOURS = 24
JANITOR_INTERVAL_SECONDS = 3600
# Lease name shared by every worker running recovery passes
RECOVERY_PASS_JOB = "recovery_pass"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    EXHAUSTED = "exhausted"


@dataclass
class SessionRequest:
    """Caller input for a multi-network session"""
    private_key: str
    safe_wallet: str
    primary_network: Optional[str] = None
    run_on_all_networks: bool = False
    target_networks: List[str] = field(default_factory=list)
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    priority_tokens: List[PriorityDirective] = field(default_factory=list)

    def __post_init__(self):
        self.priority_tokens = [
            d if isinstance(d, PriorityDirective) else PriorityDirective.from_dict(d)
            for d in self.priority_tokens
        ]


@dataclass
class RecoverySession:
    """State of one recovery session"""
    id: str
    request: SessionRequest
    networks: List[str]
    interval_seconds: int
    current_network_index: int = 0
    is_active: bool = True
    state: SessionState = SessionState.IDLE
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    last_run: Optional[datetime] = None
    results: List[NetworkPassResult] = field(default_factory=list)
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    def rescue_request(self, network: str) -> RescueRequest:
        return RescueRequest(
            private_key=self.request.private_key,
            safe_wallet=self.request.safe_wallet,
            network=network,
            priority_tokens=list(self.request.priority_tokens),
        )

    def record(self, result: NetworkPassResult):
        self.results.append(result)
        self.total_attempts += 1
        if result.success:
            self.successful_attempts += 1
        else:
            self.failed_attempts += 1

    def summary(self) -> Dict:
        return {
            'id': self.id,
            'start_time': self.start_time.isoformat(),
            'networks': list(self.networks),
            'primary_network': self.request.primary_network,
            'total_attempts': self.total_attempts,
            'successful_attempts': self.successful_attempts,
            'failed_attempts': self.failed_attempts,
        }

    def to_dict(self) -> Dict:
        data = self.summary()
        data.update({
            'is_active': self.is_active,
            'state': self.state.value,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'current_network_index': self.current_network_index,
            'interval_seconds': self.interval_seconds,
            'safe_wallet': self.request.safe_wallet,
            'private_key': '[HIDDEN]',
            'results': [r.to_dict() for r in self.results],
        })
        return data


def resolve_networks(request: SessionRequest, supported: Iterable[str]) -> List[str]:
    """all networks -> target list -> primary network, de-duplicated, unknown ones dropped"""
    supported = list(supported)
    if request.run_on_all_networks:
        candidates = supported
    elif request.target_networks:
        candidates = list(request.target_networks)
    else:
        candidates = [request.primary_network] if request.primary_network else []
    return [n for n in dict.fromkeys(candidates) if n in supported]


class SessionRegistry:
    """
    In-memory session table

    Features:
    - Input validation on start
    - Stop with duration summary
    - Age-based cleanup of finished sessions
    - Aggregate statistics
    """

    def __init__(self, supported_networks: Iterable[str], min_interval_seconds: int = MIN_INTERVAL_SECONDS,
                 clock: Callable[[], datetime] = _utcnow):
        """
        Initialize registry

        Args:
            supported_networks: Network ids sessions may target
            min_interval_seconds: Lower bound for interval_seconds
            clock: Returns the current UTC datetime (injected in tests)
        """
        self.supported_networks = list(supported_networks)
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock
        self.sessions: Dict[str, RecoverySession] = {}

    def _validate(self, request: SessionRequest) -> List[str]:
        error = validate_private_key(request.private_key)
        if error:
            raise ValidationError(error, field='private_key')
        error = validate_address(request.safe_wallet)
        if error:
            raise ValidationError(error, field='safe_wallet')
        if address_from_key(request.private_key).lower() == request.safe_wallet.lower():
            raise ValidationError(ADDRESSES_MATCH, field='safe_wallet')
        if not request.primary_network and not request.target_networks and not request.run_on_all_networks:
            raise ValidationError(REQUIRED, field='primary_network')
        try:
            interval = int(request.interval_seconds)
        except (TypeError, ValueError):
            raise ValidationError('Interval must be a number of seconds', field='interval_seconds')
        if interval < self.min_interval_seconds:
            raise ValidationError(f"Interval must be at least {self.min_interval_seconds} seconds",
                                  field='interval_seconds')

        networks = resolve_networks(request, self.supported_networks)
        if not networks:
            raise ValidationError('No valid networks specified for recovery', field='networks')
        return networks

    def create(self, request: SessionRequest) -> RecoverySession:
        """
        Validate and register a new session

        Raises:
            ValidationError: invalid key, wallet, interval or networks
        """
        networks = self._validate(request)
        session = RecoverySession(
            id=generate_id('recovery'),
            request=request,
            networks=networks,
            interval_seconds=int(request.interval_seconds),
            start_time=self.clock(),
        )
        self.sessions[session.id] = session
        logger.info(f"Recovery session {session.id} created on {len(networks)} network(s): {', '.join(networks)}")
        return session

    def start_session(self, request: SessionRequest) -> Dict:
        """create() with a dict result for callers"""
        try:
            session = self.create(request)
        except ValidationError as e:
            return {'success': False, 'error': str(e), 'field': e.field}
        return {
            'success': True,
            'session_id': session.id,
            'message': f"Multi-network auto recovery started on {len(session.networks)} networks",
            'networks': list(session.networks),
            'interval_seconds': session.interval_seconds,
            'session': session,
        }

    def get(self, session_id: str) -> Optional[RecoverySession]:
        return self.sessions.get(session_id)

    def active(self) -> List[RecoverySession]:
        return [s for s in self.sessions.values() if s.is_active]

    def all(self) -> List[RecoverySession]:
        return list(self.sessions.values())

    def stop(self, session_id: str) -> Dict:
        """Request a stop; the in-flight network finishes, the next one does not start"""
        session = self.sessions.get(session_id)
        if session is None:
            return {'success': False, 'error': 'Session not found'}
        if not session.is_active:
            return {'success': False, 'error': 'Session is already stopped'}

        session.is_active = False
        session.state = SessionState.STOPPED
        session.end_time = self.clock()
        logger.info(f"Stopped recovery session {session_id}")
        return {
            'success': True,
            'message': 'Recovery session stopped successfully',
            'session_id': session_id,
            'summary': {
                'total_attempts': session.total_attempts,
                'successful_attempts': session.successful_attempts,
                'failed_attempts': session.failed_attempts,
                'duration_seconds': (session.end_time - session.start_time).total_seconds(),
            },
        }

    def status(self, session_id: str) -> Dict:
        session = self.sessions.get(session_id)
        if session is None:
            return {'success': False, 'error': 'Session not found'}
        return {'success': True, 'session': session.to_dict()}

    def cleanup_old_sessions(self, max_age_hours: float = MAX_SESSION_AGE_HOURS) -> int:
        """Remove inactive sessions that ended more than max_age_hours ago"""
        cutoff = self.clock() - timedelta(hours=max_age_hours)
        stale = [
            sid for sid, s in self.sessions.items()
            if not s.is_active and s.end_time is not None and s.end_time < cutoff
        ]
        for sid in stale:
            del self.sessions[sid]
        if stale:
            logger.info(f"Cleaned up {len(stale)} old recovery sessions")
        return len(stale)

    def stats(self) -> Dict:
        sessions = list(self.sessions.values())
        total = sum(s.total_attempts for s in sessions)
        successful = sum(s.successful_attempts for s in sessions)
        return {
            'total_sessions': len(sessions),
            'active_sessions': sum(1 for s in sessions if s.is_active),
            'total_attempts': total,
            'successful_attempts': successful,
            'failed_attempts': sum(s.failed_attempts for s in sessions),
            'success_rate': (successful / total * 100) if total else 0.0,
        }


RescueFn = Callable[[str], Awaitable[NetworkPassResult]]


async def run_one_pass(
    session: RecoverySession,
    rescue_fn: RescueFn,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
    clock: Callable[[], datetime] = _utcnow,
    inter_network_delay: float = INTER_NETWORK_DELAY_SECONDS
) -> RecoverySession:
    """
    One pass over the session's networks

    Starts at current_network_index. A stop request lets the in-flight
    network finish and prevents the next one from starting. After a full
    pass the index wraps to 0.

    Args:
        session: Session to advance
        rescue_fn: network -> NetworkPassResult
        sleep: Awaitable sleep
        clock: Current UTC datetime
        inter_network_delay: Seconds between networks (not after the last one)

    Returns:
        The same session, mutated
    """
    if not session.is_active:
        return session

    session.state = SessionState.RUNNING
    last_index = len(session.networks) - 1
    completed = True

    for index in range(session.current_network_index, len(session.networks)):
        if not session.is_active:
            completed = False
            break

        network = session.networks[index]
        session.current_network_index = index
        logger.info(f"Session {session.id}: network {network} ({index + 1}/{len(session.networks)})")

        try:
            result = await rescue_fn(network)
        except Cancelled:
            raise
        except Exception as e:
            logger.error(f"✗ Session {session.id} rescue on {network} raised: {e}")
            result = NetworkPassResult(
                network=network, success=False, message=f"auto rescue failed: {e}", error=str(e),
                timestamp=clock(),
            )

        session.record(result)
        session.last_run = clock()
        if result.success:
            logger.info(f"✓ Recovery pass on {network}: {result.message}")
        else:
            logger.warning(f"⚠ Recovery pass on {network} failed: {result.error or result.message}")

        if index < last_index and session.is_active:
            await sleep(inter_network_delay)

    if completed and session.is_active:
        session.current_network_index = 0
        session.state = SessionState.IDLE
    elif not session.is_active and session.state != SessionState.EXHAUSTED:
        session.state = SessionState.STOPPED
        if not completed:
            session.current_network_index += 1
    return session


def next_pass_delay(session: RecoverySession, inter_network_delay: float = INTER_NETWORK_DELAY_SECONDS) -> float:
    """Interval minus the delays already spent between networks"""
    spent = inter_network_delay * max(0, len(session.networks) - 1)
    return max(0.0, session.interval_seconds - spent)


class SessionRunner:
    """
    Drives sessions on the event loop

    One task per session: run_one_pass, then sleep next_pass_delay, until stopped.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        rescue_network: Callable[[RecoverySession, str], Awaitable[NetworkPassResult]],
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        inter_network_delay: float = INTER_NETWORK_DELAY_SECONDS,
        job_lock=None
    ):
        """
        Initialize runner

        Args:
            registry: Session registry
            rescue_network: (session, network) -> NetworkPassResult
            sleep: Awaitable sleep
            inter_network_delay: Seconds between networks
            job_lock: Optional JobLock guarding each pass across workers
        """
        self.registry = registry
        self.rescue_network = rescue_network
        self.sleep = sleep
        self.inter_network_delay = inter_network_delay
        self.job_lock = job_lock
        self.tasks: Dict[str, asyncio.Task] = {}

    async def run_pass(self, session: RecoverySession) -> RecoverySession:
        """One pass, under the job lock when one is configured"""
        async def rescue_fn(network: str) -> NetworkPassResult:
            return await self.rescue_network(session, network)

        async def step():
            return await run_one_pass(session, rescue_fn, sleep=self.sleep,
                                      clock=self.registry.clock, inter_network_delay=self.inter_network_delay)

        if self.job_lock is None:
            return await step()
        await self.job_lock.run_exclusive(RECOVERY_PASS_JOB, step)
        return session

    async def _loop(self, session: RecoverySession):
        try:
            while session.is_active:
                await self.run_pass(session)
                if not session.is_active:
                    break
                await self.sleep(next_pass_delay(session, self.inter_network_delay))
        except (asyncio.CancelledError, Cancelled) as e:
            logger.info(f"Session {session.id} loop cancelled")
            if session.is_active:
                network = session.networks[session.current_network_index] if session.networks else 'ALL'
                session.record(NetworkPassResult(
                    network=network, success=False, message='Recovery cancelled',
                    error=str(e) or 'cancelled', timestamp=self.registry.clock(),
                ))
                session.is_active = False
                session.state = SessionState.STOPPED
                session.end_time = self.registry.clock()
        except Exception as e:
            logger.error(f"✗ Recovery loop error for session {session.id}: {e}")
            session.is_active = False
            session.state = SessionState.EXHAUSTED
            session.end_time = self.registry.clock()
            session.results.append(NetworkPassResult(
                network='ALL', success=False, message='Recovery loop error', error=str(e),
            ))

    def start(self, session: RecoverySession) -> asyncio.Task:
        if session.id in self.tasks and not self.tasks[session.id].done():
            return self.tasks[session.id]
        task = asyncio.get_event_loop().create_task(self._loop(session))
        self.tasks[session.id] = task
        logger.info(f"Recovery loop started for session {session.id}")
        return task

    def stop(self, session_id: str) -> Dict:
        return self.registry.stop(session_id)

    async def shutdown(self):
        """Cancel every session task and its in-flight rescue"""
        for session_id, task in self.tasks.items():
            session = self.registry.get(session_id)
            if session is not None:
                session.token.cancel("Runner shutdown")
                if session.is_active:
                    self.registry.stop(session_id)
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()


class SessionJanitor:
    """Periodic cleanup of finished sessions and stale operation handles"""

    def __init__(
        self,
        registry: SessionRegistry,
        operations: Optional[OperationRegistry] = None,
        interval_seconds: float = JANITOR_INTERVAL_SECONDS,
        max_age_hours: float = MAX_SESSION_AGE_HOURS,
        sleep: Callable[[float], Awaitable] = asyncio.sleep
    ):
        self.registry = registry
        self.operations = operations
        self.interval_seconds = interval_seconds
        self.max_age_hours = max_age_hours
        self.sleep = sleep
        self.task: Optional[asyncio.Task] = None

    def run_once(self) -> Dict:
        removed_sessions = self.registry.cleanup_old_sessions(self.max_age_hours)
        removed_operations = 0
        if self.operations is not None:
            removed_operations = self.operations.cleanup(self.max_age_hours * 3600)
        return {'sessions': removed_sessions, 'operations': removed_operations}

    async def _loop(self):
        while True:
            await self.sleep(self.interval_seconds)
            try:
                self.run_once()
            except Exception as e:
                logger.warning(f"⚠ Session cleanup failed: {e}")

    def start(self) -> asyncio.Task:
        if self.task is None or self.task.done():
            self.task = asyncio.get_event_loop().create_task(self._loop())
        return self.task

    async def stop(self):
        if self.task is not None:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
            self.task = None
