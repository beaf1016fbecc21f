"""
Strategy Runner

Runs an ordered list of fallback strategies with a uniform
(input) -> StrategyResult signature.

Modes:
- first_success: stop at the first strategy that succeeds
- accumulate: run every strategy and collect all successful outputs
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from loguru import logger

from .cancellation import CancellationToken, check_cancelled
from .errors import Cancelled, RescueError


@dataclass
class StrategyResult:
    """Output of one strategy: a value on success, a reason otherwise"""
    ok: bool
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> 'StrategyResult':
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> 'StrategyResult':
        return cls(ok=False, reason=reason)


@dataclass
class Strategy:
    """Named async strategy with an optional guard"""
    name: str
    run: Callable[[Any], Awaitable[StrategyResult]]
    # Called with the accumulated values; return False to skip this tier
    should_run: Optional[Callable[[List[Any]], bool]] = None


@dataclass
class RunnerReport:
    """What each strategy did during a run"""
    values: List[Any] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    reasons: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.succeeded)

    @property
    def first(self) -> Any:
        return self.values[0] if self.values else None


async def run_strategies(
    strategies: List[Strategy],
    arg: Any,
    mode: str = "first_success",
    token: Optional[CancellationToken] = None
) -> RunnerReport:
    """
    Iterate strategies in order

    Args:
        strategies: Ordered strategy list
        arg: Input passed to every strategy
        mode: 'first_success' or 'accumulate'
        token: Cancellation token checked before each strategy

    Returns:
        RunnerReport with collected values
    """
    if mode not in ("first_success", "accumulate"):
        raise ValueError(f"Unknown runner mode: {mode}")

    report = RunnerReport()

    for strategy in strategies:
        check_cancelled(token)

        if strategy.should_run is not None and not strategy.should_run(report.values):
            report.skipped.append(strategy.name)
            logger.debug(f"Strategy {strategy.name} skipped")
            continue

        try:
            result = await strategy.run(arg)
        except Cancelled:
            raise
        except RescueError as e:
            result = StrategyResult.failure(f"{type(e).__name__}: {e}")
        except Exception as e:
            result = StrategyResult.failure(f"unexpected error: {e}")

        if result.ok:
            report.succeeded.append(strategy.name)
            report.values.append(result.value)
            if mode == "first_success":
                break
        else:
            report.failed.append(strategy.name)
            report.reasons[strategy.name] = result.reason
            logger.debug(f"Strategy {strategy.name} failed: {result.reason}")

    return report
