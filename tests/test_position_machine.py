import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from strategy.position_machine import PositionStateMachine, format_quantity
from strategy.position_state import Phase, PositionState
from tests.fakes import FakeGateway, make_settings


def run_prices(machine, prices):
    async def _run():
        transitions = []
        for price in prices:
            transitions.extend(await machine.on_tick(price))
        return transitions
    return asyncio.run(_run())


def open_machine(is_long=True, phase=Phase.PRIMARY_ENTRY, entry=100.0, size=100.0, current=None, gateway=None):
    state = PositionState(
        is_long=is_long,
        phase=phase,
        entry_price=entry,
        entry_size=size,
        current_size=size if current is None else current,
    )
    gateway = gateway or FakeGateway()
    return PositionStateMachine(make_settings(is_long=is_long), gateway, state=state), gateway


@pytest.mark.parametrize("quantity,expected", [
    (1.0, '1'),
    (0.25, '0.25'),
    (1 / 3, '0.33333333'),
    (123.456, '123.456'),
    (0.0, '0'),
])
def test_format_quantity(quantity, expected):
    assert format_quantity(quantity) == expected


def test_market_entry_opens_primary_position():
    gateway = FakeGateway()
    machine = PositionStateMachine(make_settings(), gateway)

    transitions = run_prices(machine, [100.0])

    assert gateway.orders == [('BUY', '1')]
    assert machine.phase is Phase.PRIMARY_ENTRY
    assert machine.state.entry_price == 100.0
    assert machine.state.entry_size == 100.0
    assert machine.state.current_size == 100.0
    assert [t.action for t in transitions] == ['enter_long']


def test_short_market_entry_sells():
    gateway = FakeGateway()
    machine = PositionStateMachine(make_settings(is_long=False), gateway)

    run_prices(machine, [200.0])

    assert gateway.orders == [('SELL', '0.5')]
    assert machine.state.is_long is False


def test_limit_entry_waits_for_price_long():
    gateway = FakeGateway()
    machine = PositionStateMachine(make_settings(entry_signal='95'), gateway)

    run_prices(machine, [100.0, 96.0])
    assert gateway.orders == []
    assert machine.phase is Phase.IDLE

    run_prices(machine, [95.0])
    assert machine.phase is Phase.PRIMARY_ENTRY
    assert machine.state.entry_price == 95.0


def test_limit_entry_waits_for_price_short():
    gateway = FakeGateway()
    machine = PositionStateMachine(make_settings(entry_signal='105', is_long=False), gateway)

    run_prices(machine, [104.0])
    assert gateway.orders == []

    run_prices(machine, [105.5])
    assert gateway.orders[0][0] == 'SELL'
    assert machine.phase is Phase.PRIMARY_ENTRY


def test_primary_reductions_never_exceed_entry():
    machine, gateway = open_machine()

    run_prices(machine, [104.0])
    assert gateway.orders == [('SELL', '0.25')]
    assert machine.state.current_size == 75.0

    run_prices(machine, [101.0, 103.0])
    assert len(gateway.orders) == 3
    assert machine.state.current_size == 25.0

    run_prices(machine, [104.0])
    assert machine.state.current_size == 0.0
    assert machine.phase is Phase.IDLE

    reduced = sum(float(qty) for _, qty in gateway.orders) * 100.0
    assert reduced == pytest.approx(100.0)


def test_scale_out_then_pivot_scenario():
    gateway = FakeGateway()
    machine = PositionStateMachine(make_settings(), gateway)

    run_prices(machine, [100.0, 101.0, 102.0, 103.0])
    assert machine.state.current_size == pytest.approx(25.0)
    assert [side for side, _ in gateway.orders] == ['BUY', 'SELL', 'SELL', 'SELL']

    transitions = run_prices(machine, [99.0])

    assert gateway.orders[-2] == ('SELL', '0.25')
    assert gateway.orders[-1] == ('SELL', '1.01010101')
    assert [t.action for t in transitions] == ['close', 'enter_short']
    assert machine.phase is Phase.SECONDARY_ENTRY
    assert machine.state.is_long is False
    assert machine.state.entry_price == 99.0
    assert machine.state.current_size == 100.0


def test_adverse_move_pivots_once():
    gateway = FakeGateway()
    machine = PositionStateMachine(make_settings(), gateway)

    run_prices(machine, [100.0, 99.0])

    assert gateway.orders == [('BUY', '1'), ('SELL', '1'), ('SELL', '1.01010101')]
    assert machine.phase is Phase.SECONDARY_ENTRY
    assert machine.state.direction == 'short'

    run_prices(machine, [99.0, 99.0, 99.0])
    assert len(gateway.orders) == 3
    assert machine.phase is Phase.SECONDARY_ENTRY


def test_short_primary_reduces_on_price_drop():
    machine, gateway = open_machine(is_long=False)

    run_prices(machine, [96.0])

    assert gateway.orders == [('BUY', '0.25')]
    assert machine.state.current_size == 75.0


def test_secondary_ladder_and_exit():
    machine, gateway = open_machine(is_long=False, phase=Phase.SECONDARY_ENTRY)

    run_prices(machine, [99.0])
    assert gateway.orders == [('BUY', '0.5')]
    assert machine.state.current_size == 50.0

    run_prices(machine, [98.0])
    assert machine.state.current_size == 25.0

    run_prices(machine, [97.0])
    assert machine.state.current_size == 0.0
    assert machine.phase is Phase.IDLE


def test_secondary_adverse_move_goes_idle():
    machine, gateway = open_machine(is_long=False, phase=Phase.SECONDARY_ENTRY)

    transitions = run_prices(machine, [101.0])

    assert gateway.orders == [('BUY', '1')]
    assert machine.phase is Phase.IDLE
    assert machine.state.current_size == 0.0
    assert transitions[0].to_phase == 'idle'


def test_reduction_is_clamped_to_remaining_size():
    machine, gateway = open_machine(current=10.0)

    asyncio.run(machine.reduce_position(0.25, 101.0))

    assert gateway.orders == [('SELL', '0.1')]
    assert machine.state.current_size == 0.0
    assert machine.phase is Phase.IDLE


def test_failed_entry_leaves_state_idle():
    gateway = FakeGateway(fail_on={1})
    machine = PositionStateMachine(make_settings(), gateway)

    assert run_prices(machine, [100.0]) == []
    assert machine.phase is Phase.IDLE

    run_prices(machine, [100.0])
    assert machine.phase is Phase.PRIMARY_ENTRY


def test_failed_reduction_keeps_size_and_retries():
    machine, gateway = open_machine(gateway=FakeGateway(fail_on={1}))

    run_prices(machine, [102.0])
    assert machine.state.current_size == 100.0
    assert machine.phase is Phase.PRIMARY_ENTRY

    run_prices(machine, [102.0])
    assert machine.state.current_size == 75.0


def test_failed_close_keeps_primary_position():
    machine, gateway = open_machine(gateway=FakeGateway(fail_on={1}))

    run_prices(machine, [98.0])

    assert gateway.orders == []
    assert machine.phase is Phase.PRIMARY_ENTRY
    assert machine.state.current_size == 100.0
    assert machine.pending_pivot is None


def test_failed_pivot_entry_is_retried():
    machine, gateway = open_machine(gateway=FakeGateway(fail_on={2}))

    run_prices(machine, [99.0])
    assert machine.phase is Phase.SECONDARY_ENTRY
    assert machine.state.current_size == 0.0
    assert machine.pending_pivot is False

    run_prices(machine, [99.5])
    assert gateway.orders[-1][0] == 'SELL'
    assert machine.pending_pivot is None
    assert machine.state.entry_price == 99.5
    assert machine.state.is_long is False
    assert machine.state.current_size == 100.0


@pytest.mark.parametrize("price", [0.0, -5.0])
def test_non_positive_price_is_ignored(price):
    gateway = FakeGateway()
    machine = PositionStateMachine(make_settings(), gateway)

    assert run_prices(machine, [price]) == []
    assert gateway.calls == 0
    assert machine.phase is Phase.IDLE


def test_idle_reentry_uses_configured_direction():
    machine, gateway = open_machine(is_long=False, phase=Phase.SECONDARY_ENTRY)
    machine.settings = make_settings(is_long=True)

    run_prices(machine, [101.0, 101.0])

    assert gateway.orders[-1][0] == 'BUY'
    assert machine.phase is Phase.PRIMARY_ENTRY
    assert machine.state.is_long is True


def test_snapshot_reports_pending_pivot():
    machine, _ = open_machine()
    data = machine.snapshot()
    assert data['phase'] == 'primary_entry'
    assert data['direction'] == 'long'
    assert data['pending_pivot'] is None
    assert data['open'] is True
