import pytest

from src.core.config import merge_config
from src.core.exit_planner import ExitPlanner
from src.core.schemas import PositionSnapshot


@pytest.fixture
def planner():
    return ExitPlanner(merge_config())


def _snapshot(position_payload, price, **overrides):
    entry = overrides.get('entry_price', 2.0)
    pnl_pct = (price - entry) / entry * 100
    data = position_payload(
        current_price=price,
        unrealized_pnl_pct=round(pnl_pct, 2),
        unrealized_pnl=round((price - entry) * 10 * 100, 2),
        highest_price_since_entry=max(price, entry),
        **overrides,
    )
    return PositionSnapshot(**data)


class TestExitLevels:
    def test_min_stop_clamp_scenario(self, planner):
        # ATR 2 on a 100 premium: 4% raw stop, clamped up to 15%
        levels = planner.calculate_exit_levels(100, 2, 50)
        assert levels.stop_loss == 85.0
        assert levels.target1 == 122.5
        assert levels.target2 == 145.0
        assert levels.trailing_stop_percent == 20.0

    def test_max_stop_clamp(self, planner):
        levels = planner.calculate_exit_levels(2.0, 1.0, 50)
        assert levels.stop_loss_percent == 40.0
        assert levels.stop_loss == 1.2

    def test_high_volatility_widens(self, planner):
        calm = planner.calculate_exit_levels(10.0, 0.9, 50)
        wild = planner.calculate_exit_levels(10.0, 0.9, 90)
        assert calm.stop_loss_percent == 18.0
        assert wild.stop_loss_percent == pytest.approx(23.4)
        assert wild.trailing_stop_percent == 25.0

    def test_low_volatility_tightens_trail(self, planner):
        levels = planner.calculate_exit_levels(10.0, 0.9, 10)
        assert levels.trailing_stop_percent == 17.0

    def test_defaults_without_atr(self, planner):
        levels = planner.calculate_exit_levels(2.0, None)
        assert levels.stop_loss == 1.5
        assert levels.target1 == 2.6
        assert levels.target2 == 3.2
        assert levels.reasoning == 'Default fixed exit levels'

    def test_atr_stops_disabled(self):
        planner = ExitPlanner(merge_config({'enableAtrStops': False}))
        assert planner.calculate_exit_levels(100, 2, 50).stop_loss == 75.0

    def test_exit_plan_quantities(self, planner):
        plan = planner.build_exit_plan(2.0, 10, None)
        assert plan.target1_exit_quantity == 3
        assert plan.target2_exit_quantity == 5
        assert plan.max_hold_hours == 168


class TestTimeDecay:
    def test_far_from_expiry(self, planner):
        decay = planner.time_decay_urgency(10, -30)
        assert decay.urgency == 'NONE'
        assert (decay.target1_multiplier, decay.target2_multiplier) == (1.0, 1.0)

    def test_urgent_losing(self, planner):
        assert planner.time_decay_urgency(3, -5).urgency == 'HIGH'

    def test_urgent_winning(self, planner):
        decay = planner.time_decay_urgency(2, 5)
        assert decay.urgency == 'MEDIUM'
        assert (decay.target1_multiplier, decay.target2_multiplier) == (0.8, 0.7)

    def test_last_day_losing_is_critical(self, planner):
        decay = planner.time_decay_urgency(1, -5)
        assert decay.urgency == 'CRITICAL'
        assert (decay.target1_multiplier, decay.target2_multiplier) == (0.0, 0.0)

    def test_last_day_big_winner(self, planner):
        assert planner.time_decay_urgency(0, 15).urgency == 'HIGH'


class TestEvaluatePosition:
    def test_hold_inside_levels(self, planner, position_payload):
        evaluation = planner.evaluate_position(_snapshot(position_payload, 2.1))
        assert evaluation.action == 'HOLD'
        assert evaluation.exit_quantity == 0

    def test_stop_beats_target(self, planner, position_payload):
        # Stop raised above a target that is also hit
        snapshot = _snapshot(position_payload, 2.4, planned_stop_loss=2.5, planned_target1=2.2)
        evaluation = planner.evaluate_position(snapshot)
        assert evaluation.trigger == 'STOP_LOSS'
        assert evaluation.action == 'CLOSE_FULL'
        assert evaluation.exit_urgency == 'IMMEDIATE'
        assert evaluation.exit_quantity == 10

    def test_critical_time_decay_closes(self, planner, position_payload):
        evaluation = planner.evaluate_position(_snapshot(position_payload, 1.9, dte=1))
        assert evaluation.trigger == 'TIME_DECAY'
        assert evaluation.action == 'CLOSE_FULL'

    def test_target1_partial_moves_stop_to_breakeven(self, planner, position_payload):
        evaluation = planner.evaluate_position(_snapshot(position_payload, 2.7))
        assert evaluation.trigger == 'TARGET_1'
        assert evaluation.action == 'CLOSE_PARTIAL'
        assert evaluation.exit_quantity == 3
        assert evaluation.exit_urgency == 'SOON'
        assert evaluation.new_stop_loss == 2.0

    def test_target1_full_when_partials_disabled(self, position_payload):
        planner = ExitPlanner(merge_config({'enablePartialExits': False}))
        evaluation = planner.evaluate_position(_snapshot(position_payload, 2.7))
        assert evaluation.action == 'CLOSE_FULL'
        assert evaluation.exit_quantity == 10

    def test_target2_after_first_partial(self, planner, position_payload):
        snapshot = _snapshot(position_payload, 3.3, partial_exits_taken=3, trailing_stop_pct=5)
        evaluation = planner.evaluate_position(snapshot)
        assert evaluation.trigger == 'TARGET_2'
        # ceil(7 * 0.67)
        assert evaluation.exit_quantity == 5
        assert evaluation.new_stop_loss == 2.3

    def test_trailing_stop_after_partial(self, planner, position_payload):
        snapshot = _snapshot(position_payload, 2.3, partial_exits_taken=3)
        snapshot = snapshot.model_copy(update={'highest_price_since_entry': 3.0})
        evaluation = planner.evaluate_position(snapshot)
        assert evaluation.trigger == 'TRAILING_STOP'
        assert evaluation.trailing_stop_price == 2.4
        assert evaluation.exit_quantity == 7

    def test_trailing_stop_not_armed_before_partial(self, planner, position_payload):
        snapshot = _snapshot(position_payload, 2.3).model_copy(update={'highest_price_since_entry': 3.0})
        assert planner.evaluate_position(snapshot).action == 'HOLD'

    def test_nothing_left_to_close(self, planner, position_payload):
        snapshot = _snapshot(position_payload, 1.0, partial_exits_taken=10)
        evaluation = planner.evaluate_position(snapshot)
        assert evaluation.action == 'HOLD'
        assert evaluation.exit_quantity == 0
