"""
Application constants shared across the decision engine.
"""

# Directions
LONG = 'LONG'
SHORT = 'SHORT'
NEUTRAL = 'NEUTRAL'

# Signal sources
SOURCE_TRADE_SIGNAL = 'TRADE_SIGNAL'
SOURCE_GEX = 'GEX'
SOURCE_MTF = 'MTF'
SOURCE_MARKET_CONTEXT = 'MARKET_CONTEXT'
SOURCE_POSITIONING = 'POSITIONING'
OPTIONAL_SOURCES = (SOURCE_GEX, SOURCE_MTF, SOURCE_MARKET_CONTEXT, SOURCE_POSITIONING)

# Decision types and actions
DECISION_ENTRY = 'ENTRY'
DECISION_HOLD = 'HOLD'
DECISION_EXIT = 'EXIT'

ACTION_EXECUTE = 'EXECUTE'
ACTION_REJECT = 'REJECT'

HOLD_ACTION_HOLD = 'HOLD'
HOLD_ACTION_EXIT = 'EXIT'
HOLD_ACTION_PARTIAL_EXIT = 'PARTIAL_EXIT'
HOLD_ACTION_TIGHTEN_STOP = 'TIGHTEN_STOP'

EXIT_ACTION_HOLD = 'HOLD'
EXIT_ACTION_CLOSE_PARTIAL = 'CLOSE_PARTIAL'
EXIT_ACTION_CLOSE_FULL = 'CLOSE_FULL'

# Entry rejection reasons
REJECT_REGIME_UNSTABLE = 'REGIME_UNSTABLE'
REJECT_LOW_CONFIDENCE = 'LOW_CONFIDENCE'
REJECT_LOW_CONFLUENCE = 'LOW_CONFLUENCE'
REJECT_ZERO_SIZE = 'ZERO_SIZE'
REJECT_NO_DIRECTION = 'NO_DIRECTION'

# Conflict resolution methods
RESOLUTION_MAJORITY = 'MAJORITY'
RESOLUTION_CREDIBILITY = 'CREDIBILITY'
RESOLUTION_NONE = 'NONE'

# Regime gate states
REGIME_STABLE = 'STABLE'
REGIME_FLIPPED = 'FLIPPED'
REGIME_COOLING_DOWN = 'COOLING_DOWN'

# Dealer positioning / volatility regimes
LONG_GAMMA = 'LONG_GAMMA'
SHORT_GAMMA = 'SHORT_GAMMA'
DEALER_NEUTRAL = 'NEUTRAL'
VIX_NORMAL = 'NORMAL'
VIX_HIGH_VOL = 'HIGH_VOL'
UNKNOWN_REGIME = 'UNKNOWN'

# Market regimes reported by the gamma-exposure bundle
MARKET_TRENDING_UP = 'TRENDING_UP'
MARKET_TRENDING_DOWN = 'TRENDING_DOWN'
MARKET_RANGE_BOUND = 'RANGE_BOUND'
MARKET_BREAKOUT_IMMINENT = 'BREAKOUT_IMMINENT'
MARKET_REVERSAL_UP = 'REVERSAL_UP'
MARKET_REVERSAL_DOWN = 'REVERSAL_DOWN'
MARKET_UNKNOWN = 'UNKNOWN'
BULLISH_MARKET_REGIMES = (MARKET_TRENDING_UP, MARKET_REVERSAL_UP)
BEARISH_MARKET_REGIMES = (MARKET_TRENDING_DOWN, MARKET_REVERSAL_DOWN)

# Exit urgency
URGENCY_NONE = 'NONE'
URGENCY_MEDIUM = 'MEDIUM'
URGENCY_HIGH = 'HIGH'
URGENCY_CRITICAL = 'CRITICAL'

EXIT_IMMEDIATE = 'IMMEDIATE'
EXIT_SOON = 'SOON'
EXIT_OPTIONAL = 'OPTIONAL'

# Exit triggers
TRIGGER_STOP_LOSS = 'STOP_LOSS'
TRIGGER_TIME_DECAY = 'TIME_DECAY'
TRIGGER_TRAILING_STOP = 'TRAILING_STOP'
TRIGGER_TARGET_1 = 'TARGET_1'
TRIGGER_TARGET_2 = 'TARGET_2'
TRIGGER_GEX_FLIP = 'GEX_FLIP'
TRIGGER_NONE = 'NONE'

# Rule categories
CATEGORY_ENTRY = 'ENTRY'
CATEGORY_EXIT = 'EXIT'
CATEGORY_SIZING = 'SIZING'
CATEGORY_CONFLICT = 'CONFLICT'
CATEGORY_REGIME = 'REGIME'
CATEGORY_RISK = 'RISK'

# Rule ids
RULE_SIGNAL_NORMALIZATION = 'SIGNAL_NORMALIZATION'
RULE_CONFLUENCE_ALIGNMENT = 'CONFLUENCE_ALIGNMENT'
RULE_CONFLICT_RESOLUTION = 'CONFLICT_RESOLUTION'
RULE_REGIME_STABILITY = 'REGIME_STABILITY'
RULE_POSITION_SIZING = 'POSITION_SIZING'
RULE_EXIT_PLANNING = 'EXIT_PLANNING'
RULE_CONFIDENCE_THRESHOLD = 'CONFIDENCE_THRESHOLD'
RULE_CONFLUENCE_THRESHOLD = 'CONFLUENCE_THRESHOLD'
RULE_REGIME_CHANGE_CHECK = 'REGIME_CHANGE_CHECK'
RULE_HOLD_DTE = 'HOLD_DTE_CHECK'
RULE_HOLD_DRAWDOWN = 'HOLD_DRAWDOWN_CHECK'
RULE_EXIT_TRIGGER = 'EXIT_TRIGGER'
RULE_GEX_FLIP_EXIT = 'GEX_FLIP_EXIT'

# Position status
POSITION_OPEN = 'OPEN'
POSITION_CLOSED = 'CLOSED'

# Options
CONTRACT_MULTIPLIER = 100

# Record versioning
DECISION_SCHEMA_VERSION = 1

# Database query limits
MAX_QUERY_LIMIT = 500

# API timeouts
API_TIMEOUT_DEFAULT = 30

# Rule tuning directions
TUNE_LOOSEN = 'LOOSEN'
TUNE_TIGHTEN = 'TIGHTEN'
TUNE_KEEP = 'KEEP'
