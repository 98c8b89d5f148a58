"""Decision engine: turn a ranking snapshot into CandidateFound or Cooldown."""
from datetime import datetime
from typing import Sequence

from .config import StrategyConfig
from .models import Decision, DecisionKind, RankingRow


def _cooldown(now: datetime, strategy: StrategyConfig, note: str) -> Decision:
    return Decision(DecisionKind.COOLDOWN, now, next_check=now + strategy.cooldown, note=note)


def decide(
    rows: Sequence[RankingRow],
    strategy: StrategyConfig,
    now: datetime,
    *,
    window_label: str = "3h",
) -> Decision:
    """Pick the worst performer if it dropped at least the configured threshold.

    Rows must already be sorted (see ranking.sort_rows), so the first row
    with a return is the most negative one. The threshold is inclusive: a
    return equal to min_drop_pct is a candidate.

    Args:
        rows: Sorted ranking snapshot
        strategy: Thresholds; min_drop_pct is negative
        now: Decision time, also the base for next_check
        window_label: Lookback label used in notes

    Returns:
        CandidateFound with no next_check, or Cooldown with next_check = now + cooldown
    """
    if not rows:
        return _cooldown(now, strategy, "No symbols available.")

    top = next((r for r in rows if r.has_return), None)
    if top is None:
        return _cooldown(now, strategy, f"No data rows with {window_label} return.")

    ret = top.trailing_return
    if ret <= strategy.min_drop_pct:
        return Decision(
            DecisionKind.CANDIDATE_FOUND,
            now,
            symbol=top.symbol,
            trailing_return=ret,
            note=f"Candidate: {top.symbol} ({window_label} {ret * 100:.2f}%).",
        )

    minutes = strategy.cooldown.total_seconds() / 60
    return _cooldown(
        now,
        strategy,
        f"No token <= {strategy.min_drop_pct * 100:.2f}% {window_label} "
        f"(best {top.symbol} {ret * 100:.2f}%). Cooling down {minutes:g} min.",
    )
