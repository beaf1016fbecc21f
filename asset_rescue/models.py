"""
Rescue Data Model

Asset records, priority directives, transfer outcomes and rescue reports.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

NATIVE_ADDRESS = "0x0000000000000000000000000000000000000000"
UNKNOWN_TOKEN_ID = "UNKNOWN"


class AssetKind(Enum):
    """Asset kind discriminant"""
    NATIVE = "NATIVE"
    FUNGIBLE = "ERC20"
    NON_FUNGIBLE_UNIQUE = "ERC721"
    NON_FUNGIBLE_MULTI = "ERC1155"

    @property
    def is_non_fungible(self) -> bool:
        return self in (AssetKind.NON_FUNGIBLE_UNIQUE, AssetKind.NON_FUNGIBLE_MULTI)

    @classmethod
    def parse(cls, value) -> 'AssetKind':
        """Parse 'ERC20' / 'erc721' / 'NATIVE' / enum member"""
        if isinstance(value, AssetKind):
            return value
        text = str(value).strip().upper()
        for kind in cls:
            if text in (kind.value, kind.name):
                return kind
        raise ValueError(f"Unknown asset kind: {value}")


# Sort rank used after USD value (fungible before unique before multi)
KIND_SORT_RANK = {
    AssetKind.NATIVE: 0,
    AssetKind.FUNGIBLE: 0,
    AssetKind.NON_FUNGIBLE_UNIQUE: 1,
    AssetKind.NON_FUNGIBLE_MULTI: 2,
}


def format_units(raw: int, decimals: int, places: int = 4) -> str:
    """Format a raw integer amount with up to `places` decimals, trailing zeros trimmed"""
    if decimals <= 0:
        return str(raw)
    value = Decimal(raw) / (Decimal(10) ** decimals)
    quantum = Decimal(1).scaleb(-places)
    text = format(value.quantize(quantum), 'f')
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return text or '0'


@dataclass
class AssetRecord:
    """One discovered holding (unit of discovery and transfer)"""
    address: str
    network: str
    kind: AssetKind
    balance: int
    decimals: int = 0
    name: str = "Unknown Token"
    symbol: str = "UNKNOWN"
    token_ids: List[str] = field(default_factory=list)
    token_amounts: Dict[str, int] = field(default_factory=dict)
    price_usd: Optional[float] = None
    value_usd: Optional[float] = None
    discovery_source: str = "unknown"
    suspected: bool = False
    suspected_reason: Optional[str] = None

    def __post_init__(self):
        self.kind = AssetKind.parse(self.kind)
        self.balance = int(self.balance)
        self.token_ids = [str(t) for t in self.token_ids]
        self.token_amounts = {str(k): int(v) for k, v in self.token_amounts.items()}

        if self.kind.is_non_fungible:
            self.decimals = 0
        elif self.token_ids or self.token_amounts:
            raise ValueError(f"{self.kind.value} record {self.address} cannot carry token ids")

        if self.kind == AssetKind.NON_FUNGIBLE_MULTI and self.token_amounts:
            # ids and amounts describe the same holdings
            for token_id in self.token_amounts:
                if token_id not in self.token_ids:
                    self.token_ids.append(token_id)

    @property
    def is_native(self) -> bool:
        return self.kind == AssetKind.NATIVE

    @property
    def formatted_balance(self) -> str:
        return format_units(self.balance, self.decimals)

    @property
    def balance_float(self) -> float:
        return float(Decimal(self.balance) / (Decimal(10) ** self.decimals)) if self.decimals else float(self.balance)

    def dedup_keys(self) -> List[Tuple[str, ...]]:
        """Merge keys: (address) for fungible/native, (address, id) per id otherwise"""
        address = self.address.lower()
        if not self.kind.is_non_fungible:
            return [(address,)]
        ids = self.token_ids or [UNKNOWN_TOKEN_ID]
        return [(address, token_id) for token_id in ids]

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['kind'] = self.kind.value
        data['balance'] = str(self.balance)
        data['formatted_balance'] = self.formatted_balance
        data['token_amounts'] = {k: str(v) for k, v in self.token_amounts.items()}
        return data

    def __repr__(self):
        return (f"AssetRecord({self.network}/{self.symbol} {self.kind.value} "
                f"{self.formatted_balance} @ {self.address[:10]}...)")


class PriorityTier(Enum):
    MAXIMUM = "maximum"
    NORMAL = "normal"


@dataclass
class PriorityDirective:
    """User-declared override: rescue this contract ahead of value order"""
    contract_address: str
    network: Optional[str] = None
    tier: PriorityTier = PriorityTier.NORMAL

    def __post_init__(self):
        if not isinstance(self.tier, PriorityTier):
            self.tier = PriorityTier(str(self.tier).strip().lower())

    @property
    def is_maximum(self) -> bool:
        return self.tier == PriorityTier.MAXIMUM

    def matches(self, asset: AssetRecord) -> bool:
        if asset.address.lower() != self.contract_address.lower():
            return False
        return self.network is None or self.network == asset.network

    @classmethod
    def from_dict(cls, data: Dict) -> 'PriorityDirective':
        """Accepts both snake_case and the camelCase request shape"""
        address = data.get('contract_address') or data.get('contractAddress') or data.get('address')
        if not address:
            raise ValueError("Priority directive requires a contract address")
        tier = data.get('tier') or data.get('priority') or 'normal'
        return cls(contract_address=address, network=data.get('network'), tier=tier)

    def to_dict(self) -> Dict:
        return {
            'contract_address': self.contract_address,
            'network': self.network,
            'tier': self.tier.value,
        }


@dataclass
class TransferOutcome:
    """Result of moving a single asset"""
    success: bool
    detail: str
    asset: Optional[AssetRecord] = None
    tx_hashes: List[str] = field(default_factory=list)
    amount: int = 0
    skipped: bool = False

    @classmethod
    def skip(cls, detail: str, asset: Optional[AssetRecord] = None) -> 'TransferOutcome':
        return cls(success=False, detail=detail, asset=asset, skipped=True)

    @classmethod
    def failed(cls, detail: str, asset: Optional[AssetRecord] = None) -> 'TransferOutcome':
        return cls(success=False, detail=detail, asset=asset)

    def to_dict(self) -> Dict:
        return {
            'success': self.success,
            'detail': self.detail,
            'skipped': self.skipped,
            'amount': str(self.amount),
            'tx_hashes': list(self.tx_hashes),
            'asset': self.asset.to_dict() if self.asset else None,
        }


@dataclass
class NetworkPassResult:
    """Per-network outcome recorded by a recovery session pass"""
    network: str
    success: bool
    message: str
    tokens_found: int = 0
    tokens_transferred: int = 0
    error: Optional[str] = None
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


@dataclass
class RescueRequest:
    """Single-network rescue request"""
    private_key: str
    safe_wallet: str
    network: str
    nonce: Optional[int] = None
    priority_tokens: List[PriorityDirective] = field(default_factory=list)

    def __post_init__(self):
        self.priority_tokens = [
            d if isinstance(d, PriorityDirective) else PriorityDirective.from_dict(d)
            for d in self.priority_tokens
        ]

    def to_dict(self) -> Dict:
        return {
            'private_key': '[HIDDEN]',
            'safe_wallet': self.safe_wallet,
            'network': self.network,
            'nonce': self.nonce,
            'priority_tokens': [d.to_dict() for d in self.priority_tokens],
        }


@dataclass
class RescueReport:
    """Structured result of one rescue run"""
    success: bool
    message: str
    network: Optional[str] = None
    operation_id: Optional[str] = None
    error: Optional[str] = None
    summary: List[str] = field(default_factory=list)
    outcomes: List[TransferOutcome] = field(default_factory=list)
    tokens_found: int = 0
    rescued_tokens: int = 0
    rescued_native: bool = False
    cancelled: bool = False
    completed_at: Optional[datetime] = None

    def note(self, line: str):
        """Append a human-readable summary line"""
        self.summary.append(line)

    def to_dict(self) -> Dict:
        return {
            'success': self.success,
            'message': self.message,
            'network': self.network,
            'operation_id': self.operation_id,
            'error': self.error,
            'summary': list(self.summary),
            'outcomes': [o.to_dict() for o in self.outcomes],
            'tokens_found': self.tokens_found,
            'rescued_tokens': self.rescued_tokens,
            'rescued_native': self.rescued_native,
            'cancelled': self.cancelled,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
