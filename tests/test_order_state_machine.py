import pytest

from torra_trade.order_state import (
    UNMANAGED_PREFIX,
    TradeCycle,
    TradeOutcome,
    TradeState,
)


HAPPY_PATH = [
    TradeState.SIZING,
    TradeState.BUYING,
    TradeState.AWAITING_SETTLE,
    TradeState.SIZING_SELL,
    TradeState.PLACING_EXIT,
]


def test_happy_path_reaches_done():
    cycle = TradeCycle("SOLUSDT")
    for state in HAPPY_PATH:
        cycle.advance(state)
    result = cycle.complete("Entered SOLUSDT")

    assert cycle.finished
    assert result.state is TradeState.DONE
    assert result.outcome is TradeOutcome.ENTERED
    assert result.entered
    assert cycle.history == [TradeState.IDLE] + HAPPY_PATH + [TradeState.DONE]


def test_skipping_a_state_is_rejected():
    cycle = TradeCycle("SOLUSDT")
    cycle.advance(TradeState.SIZING)
    with pytest.raises(ValueError, match="Illegal transition SIZING -> DONE for SOLUSDT"):
        cycle.advance(TradeState.DONE)
    assert cycle.state is TradeState.SIZING


def test_moving_backwards_is_rejected():
    cycle = TradeCycle("SOLUSDT")
    cycle.advance(TradeState.SIZING)
    cycle.advance(TradeState.BUYING)
    with pytest.raises(ValueError):
        cycle.advance(TradeState.SIZING)


@pytest.mark.parametrize("stop_after", range(len(HAPPY_PATH) + 1))
def test_failed_is_reachable_from_any_live_state(stop_after):
    cycle = TradeCycle("SOLUSDT")
    for state in HAPPY_PATH[:stop_after]:
        cycle.advance(state)
    result = cycle.fail("boom")
    assert result.state is TradeState.FAILED
    assert result.outcome is TradeOutcome.FAILED


def test_terminal_states_are_final():
    done = TradeCycle("SOLUSDT")
    for state in HAPPY_PATH:
        done.advance(state)
    done.advance(TradeState.DONE)
    with pytest.raises(ValueError):
        done.advance(TradeState.FAILED)

    failed = TradeCycle("SOLUSDT")
    failed.skip("nothing to do")
    with pytest.raises(ValueError):
        failed.advance(TradeState.SIZING)


def test_unmanaged_note_is_prefixed_once():
    cycle = TradeCycle("SOLUSDT")
    for state in HAPPY_PATH[:3]:
        cycle.advance(state)
    result = cycle.fail_unmanaged("exit order failed", quantity=1)
    assert result.unmanaged
    assert result.note == f"{UNMANAGED_PREFIX} exit order failed"

    again = TradeCycle("SOLUSDT")
    already = again.fail_unmanaged(f"{UNMANAGED_PREFIX} already flagged")
    assert already.note.count(UNMANAGED_PREFIX) == 1


def test_warnings_are_copied_into_the_result():
    cycle = TradeCycle("SOLUSDT")
    cycle.warn("settlement slow")
    result = cycle.skip("read-only")
    cycle.warn("late warning")
    assert result.outcome is TradeOutcome.SKIPPED
    assert result.warnings == ["settlement slow"]
