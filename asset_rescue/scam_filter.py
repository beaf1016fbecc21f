"""
Scam Filter

Heuristic spam/scam detection for fungible tokens. Thresholds and word lists
come from the `scam_filter` config section, with per-network overrides.
"""

from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .models import AssetKind, AssetRecord

DEFAULT_INDICATORS = [
    'airdrop', 'claim', 'free', 'visit', 'telegram', 't.me',
    'twitter.com', 'discord', 'join', 'click', 'website',
    'https://', 'http://', '.com', '.io', '.org', '.net',
    '*visit', '*claim', 'reward', 'bonus', 'gift', 'promo',
    'giveaway', 'scam', 'fake', 'phishing', 'spam', 'bot',
    'urgent', 'limited', 'exclusive', 'offer', 'prize',
]

INDEXER_SPAM_REASON = 'indexer spam flag'

DEFAULT_URL_MARKERS = ['http', 'www.', 't.me', '.com', '.io', '.org', '@']

# Optimism: many legitimate tokens have no price data yet
DEFAULT_NETWORK_OVERRIDES = {
    'optimism': {
        'min_value_usd': 0.001,
        'flag_unpriced': False,
        'honor_indexer_flag': False,
    },
}


@dataclass
class ScamRules:
    indicators: List[str] = field(default_factory=lambda: list(DEFAULT_INDICATORS))
    url_markers: List[str] = field(default_factory=lambda: list(DEFAULT_URL_MARKERS))
    max_symbol_length: int = 15
    min_value_usd: float = 0.01
    flag_unpriced: bool = True
    # Indexer spam flags count on their own, unless the value is known and above dust
    honor_indexer_flag: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScamRules':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class ScamFilter:
    """
    Flags likely scam tokens

    Features:
    - Indicator words in name or symbol
    - URL-like symbols and overlong symbols
    - Dust value and missing price (indexer tokens only)
    - Network overrides merged over the base rules
    """

    def __init__(self, config: Optional[Dict] = None):
        config = dict(config or {})
        overrides = dict(DEFAULT_NETWORK_OVERRIDES)
        for network, custom in (config.pop('network_overrides', None) or {}).items():
            overrides[network] = {**overrides.get(network, {}), **custom}

        self.base = ScamRules.from_dict(config)
        self.network_rules: Dict[str, ScamRules] = {
            network: ScamRules.from_dict({**config, **custom})
            for network, custom in overrides.items()
        }

    def rules_for(self, network: str) -> ScamRules:
        return self.network_rules.get(network, self.base)

    def is_suspected(self, asset: AssetRecord) -> Tuple[bool, Optional[str]]:
        """
        Check one asset

        Returns:
            (suspected, reason)
        """
        if asset.kind != AssetKind.FUNGIBLE:
            return False, None

        rules = self.rules_for(asset.network)
        value = asset.value_usd
        is_dust = value is not None and value < rules.min_value_usd

        if asset.suspected and asset.suspected_reason == INDEXER_SPAM_REASON:
            if rules.honor_indexer_flag or is_dust:
                return True, INDEXER_SPAM_REASON

        if is_dust:
            return True, f'dust value (${value:.4f})'

        if rules.flag_unpriced and asset.discovery_source == 'indexer' and asset.price_usd is None:
            return True, 'no price data'

        symbol = (asset.symbol or '').lower()
        name = (asset.name or '').lower()

        for indicator in rules.indicators:
            if indicator in symbol or indicator in name:
                return True, f"suspicious word '{indicator}'"

        for marker in rules.url_markers:
            if marker in symbol:
                return True, f"link in symbol '{marker}'"

        if rules.max_symbol_length and len(symbol) > rules.max_symbol_length:
            return True, 'symbol too long'

        return False, None

    def flag(self, assets: List[AssetRecord]) -> List[AssetRecord]:
        """Set suspected/suspected_reason on each asset in place"""
        flagged = 0
        for asset in assets:
            asset.suspected, asset.suspected_reason = self.is_suspected(asset)
            flagged += asset.suspected
        if flagged:
            logger.info(f"⚠ {flagged} token(s) flagged as likely scam")
        return assets
