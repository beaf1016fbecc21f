"""
Priority Scheduler

Orders discovered assets for transfer:
1. Maximum: assets matching a MAXIMUM directive (directive order)
2. Normal: assets matching a NORMAL directive (directive order)
3. Rest: USD value desc, ties by raw balance desc

Pure functions only; no I/O.
"""

from typing import List, Optional

from .models import AssetRecord, PriorityDirective, PriorityTier


def _directive_index(asset: AssetRecord, directives: List[PriorityDirective]) -> Optional[int]:
    for index, directive in enumerate(directives):
        if directive.matches(asset):
            return index
    return None


def maximum_directives(directives: List[PriorityDirective]) -> List[PriorityDirective]:
    return [d for d in directives if d.tier == PriorityTier.MAXIMUM]


def without_maximum(directives: List[PriorityDirective]) -> List[PriorityDirective]:
    """Directives for the regular pass (maximum ones were already handled)"""
    return [d for d in directives if d.tier != PriorityTier.MAXIMUM]


def schedule(assets: List[AssetRecord], directives: Optional[List[PriorityDirective]] = None) -> List[AssetRecord]:
    """
    Transfer order for a set of assets

    Args:
        assets: Discovered assets
        directives: User priority directives

    Returns:
        New list, maximum tier first, then normal, then by value
    """
    directives = directives or []
    maximum = maximum_directives(directives)
    normal = without_maximum(directives)

    tiers = {'maximum': [], 'normal': [], 'rest': []}
    for position, asset in enumerate(assets):
        index = _directive_index(asset, maximum)
        if index is not None:
            tiers['maximum'].append((index, position, asset))
            continue
        index = _directive_index(asset, normal)
        if index is not None:
            tiers['normal'].append((index, position, asset))
            continue
        tiers['rest'].append((-(asset.value_usd or 0.0), -asset.balance, position, asset))

    # sorted() is stable and position breaks remaining ties
    ordered = [entry[-1] for entry in sorted(tiers['maximum'], key=lambda e: e[:2])]
    ordered += [entry[-1] for entry in sorted(tiers['normal'], key=lambda e: e[:2])]
    ordered += [entry[-1] for entry in sorted(tiers['rest'], key=lambda e: e[:3])]
    return ordered


def move_native_last(ordered: List[AssetRecord]) -> List[AssetRecord]:
    """Keep token order, send the native balance after everything else"""
    return [a for a in ordered if not a.is_native] + [a for a in ordered if a.is_native]
