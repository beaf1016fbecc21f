"""
Asset Rescue System

Moves everything of value out of a compromised wallet into a safe wallet,
on EVM networks and on Solana.

Components:
- token_discovery: Tiered holdings discovery (multicall, native, indexer, logs, explorer)
- nft_discovery: ERC721 / ERC1155 token id enumeration
- priority_scheduler: Maximum-tier directives first, then by USD value
- transfer_executor: Per-kind transfers with approve fallbacks
- fee_strategy: Bumped EIP-1559 / legacy fees and gas limit estimation
- rescue_service: One-network auto rescue with a structured report
- session_manager: Multi-network recovery loops
- solana_rescue: Fee-aware SOL and SPL token rescue
- token_store: SQLite saved tokens and rescue history
- rescue_integration: Caller-facing coordinator

Rescue Order:
1. Validate request and check gas money
2. Maximum-tier priority tokens, before discovery
3. Discover, de-duplicate and flag suspected scam tokens
4. Transfer tokens by priority and value
5. Sweep the native balance last
"""

from .cancellation import (
    CancellationToken,
    OperationRegistry,
)
from .config import (
    RescueConfig,
    load_config,
    setup_logging,
)
from .errors import (
    RescueError,
    ValidationError,
    Cancelled,
    InsufficientFunds,
)
from .models import (
    AssetKind,
    AssetRecord,
    PriorityDirective,
    PriorityTier,
    RescueReport,
    RescueRequest,
    TransferOutcome,
)
from .networks import (
    NetworkConfig,
    NetworkRegistry,
)
from .token_discovery import (
    TokenDiscoveryEngine,
)
from .transfer_executor import (
    TransferExecutor,
)
from .rescue_service import (
    RescueService,
)
from .session_manager import (
    SessionRegistry,
    SessionRequest,
    SessionRunner,
)
from .solana_rescue import (
    SolanaRescue,
    SolanaRescueReport,
)
from .token_store import (
    RescueHistory,
    SavedTokenStore,
)
from .directive_sheet import (
    DirectiveSheetParser,
    load_directives,
)
from .job_lock import (
    JobLock,
)
from .rescue_integration import (
    RescueCoordinator,
)

__all__ = [
    # Configuration
    'RescueConfig',
    'load_config',
    'setup_logging',
    'NetworkConfig',
    'NetworkRegistry',

    # Models
    'AssetKind',
    'AssetRecord',
    'PriorityDirective',
    'PriorityTier',
    'RescueReport',
    'RescueRequest',
    'TransferOutcome',

    # Errors and cancellation
    'RescueError',
    'ValidationError',
    'Cancelled',
    'InsufficientFunds',
    'CancellationToken',
    'OperationRegistry',

    # EVM rescue
    'TokenDiscoveryEngine',
    'TransferExecutor',
    'RescueService',

    # Sessions
    'SessionRegistry',
    'SessionRequest',
    'SessionRunner',

    # Solana
    'SolanaRescue',
    'SolanaRescueReport',

    # Persistence
    'RescueHistory',
    'SavedTokenStore',
    'DirectiveSheetParser',
    'load_directives',
    'JobLock',

    # Integration
    'RescueCoordinator',
]

__version__ = '1.0.0'
__author__ = 'Asset Rescue System'
__description__ = 'Automated asset rescue from compromised wallets'
