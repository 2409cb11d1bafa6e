import pytest

from src.core.config import merge_config
from src.core.position_sizer import PositionSizer, kelly_fraction
from src.core.schemas import KellyStats


@pytest.fixture
def sizer():
    return PositionSizer(merge_config())


class TestRiskCap:
    def test_max_by_risk(self, sizer):
        # 2% of 100k = 2000 risk; (2.00 - 1.50) * 100 = 50 per contract
        calc = sizer.calculate_position_size(100000, 2.0, 1.5)
        assert calc.max_by_risk == 40
        assert calc.adjusted_quantity == 40
        assert calc.estimated_risk == 2000.0
        assert calc.max_loss_percent == 2.0

    def test_requested_quantity_capped(self, sizer):
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, requested_quantity=100)
        assert calc.base_quantity == 40
        assert calc.risk_cap_applied is True

    def test_requested_quantity_below_cap(self, sizer):
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, requested_quantity=5)
        assert calc.adjusted_quantity == 5
        assert calc.risk_cap_applied is False

    def test_stop_at_entry_sizes_to_zero(self, sizer):
        calc = sizer.calculate_position_size(100000, 2.0, 2.0, requested_quantity=3)
        assert calc.adjusted_quantity == 0
        assert calc.max_by_risk == 0

    @pytest.mark.parametrize('requested', [None, 1, 10, 39, 40, 41, 500])
    @pytest.mark.parametrize('vix,vix_regime', [(None, None), (14, 'LOW_VOL'), (35, 'HIGH_VOL'), (55, 'HIGH_VOL')])
    @pytest.mark.parametrize('market_regime', [None, 'RANGE_BOUND', 'UNKNOWN', 'NOT_A_REGIME'])
    def test_adjustments_never_exceed_cap(self, sizer, requested, vix, vix_regime, market_regime):
        calc = sizer.calculate_position_size(
            100000, 2.0, 1.5,
            requested_quantity=requested,
            kelly_stats=KellyStats(win_rate=0.9, avg_win=500, avg_loss=50, total_trades=100),
            vix=vix,
            vix_regime=vix_regime,
            market_regime=market_regime,
            dealer_position='SHORT_GAMMA',
            confluence_score=95,
        )
        assert 0 <= calc.adjusted_quantity <= calc.max_by_risk
        assert calc.adjusted_quantity <= calc.base_quantity
        assert calc.total_multiplier <= 1.0


class TestScalars:
    def test_high_vol_halves_size(self, sizer):
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, vix=22, vix_regime='HIGH_VOL')
        assert calc.vix_scalar == 0.5
        assert calc.vix_level == 'ELEVATED'
        assert calc.adjusted_quantity == 20

    def test_extreme_vix_band_shrinks_further(self, sizer):
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, vix=45, vix_regime='HIGH_VOL')
        assert calc.vix_scalar == 0.25
        assert calc.adjusted_quantity == 10

    def test_high_vix_without_high_vol_regime_is_ignored(self, sizer):
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, vix=35, vix_regime='NORMAL')
        assert calc.vix_scalar == 1.0
        assert calc.vix_level == 'VERY_HIGH'

    def test_vix_scaling_disabled(self):
        sizer = PositionSizer(merge_config({'enableVixScaling': False}))
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, vix=35, vix_regime='HIGH_VOL')
        assert calc.adjusted_quantity == 40

    def test_regime_and_dealer_multipliers(self, sizer):
        calc = sizer.calculate_position_size(
            100000, 2.0, 1.5, market_regime='RANGE_BOUND', dealer_position='SHORT_GAMMA',
        )
        assert calc.regime_scalar == pytest.approx(0.525)
        assert calc.adjusted_quantity == 21

    def test_low_confluence_shrinks(self, sizer):
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, confluence_score=30)
        assert calc.confluence_scalar == 0.8
        assert calc.adjusted_quantity == 32

    def test_kelly_needs_history(self, sizer):
        stats = KellyStats(win_rate=0.2, avg_win=100, avg_loss=100, total_trades=5)
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, kelly_stats=stats)
        assert calc.kelly_fraction is None
        assert calc.kelly_scalar == 1.0

    def test_losing_history_hits_kelly_floor(self, sizer):
        stats = KellyStats(win_rate=0.3, avg_win=100, avg_loss=100, total_trades=40)
        calc = sizer.calculate_position_size(100000, 2.0, 1.5, kelly_stats=stats)
        assert calc.kelly_fraction == 0.0
        assert calc.kelly_scalar == 0.25
        assert calc.adjusted_quantity == 10


class TestKellyFraction:
    def test_positive_edge(self):
        stats = KellyStats(win_rate=0.6, avg_win=100, avg_loss=100, total_trades=30)
        assert kelly_fraction(stats, 0.25) == pytest.approx(0.2)

    def test_capped(self):
        stats = KellyStats(win_rate=0.9, avg_win=300, avg_loss=100, total_trades=30)
        assert kelly_fraction(stats, 0.25) == 0.25

    def test_no_losses_recorded(self):
        stats = KellyStats(win_rate=0.1, avg_win=100, avg_loss=0, total_trades=30)
        assert kelly_fraction(stats, 0.25) == pytest.approx(0.1)
