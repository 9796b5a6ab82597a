"""Breakout bot — application configuration.

Loads .env variables into a typed config object.
Validates required variables and threshold relationships on startup.
"""

import os
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from breakoutbot.strategy.models import INSTRUMENT_PIP_VALUES


_REQUIRED_VARS = [
    "OANDA_ACCOUNT_ID",
    "OANDA_API_TOKEN",
    "OANDA_ENVIRONMENT",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables.

    Distances suffixed ``_pips`` are converted to price with
    :meth:`pips_to_price` using the instrument's pip size.
    """

    oanda_account_id: str
    oanda_api_token: str
    oanda_environment: str = "practice"  # "practice" or "live"
    trade_pair: str = "XAU_USD"
    timeframe: str = "H1"
    entry_timeframe: str = "M15"

    # Breakout detection
    breakout_lookback: int = 10
    adx_min: float = 20.0
    adx_override: float = 35.0
    breakout_rsi_max_long: float = 75.0
    breakout_rsi_min_short: float = 25.0
    breakout_max_distance_pips: float = 2000.0
    breakout_min_candle_position: float = 0.4

    # Trend continuation
    enable_trend_continuation: bool = True
    trend_continuation_adx_min: float = 25.0
    trend_continuation_ema_period: int = 20
    trend_continuation_ema_tolerance_pips: float = 200.0

    # Pullback refinement: bar-counted policy (candle-close path)
    enable_pullback_entry: bool = True
    pullback_min_pips: float = 50.0
    pullback_max_wait_candles: int = 8
    pullback_ema_period: int = 20
    pullback_chase_tolerance_pips: float = 100.0

    # Pullback refinement: continuous policy (real-time path)
    realtime_pullback_min_pips: float = 50.0
    realtime_pullback_max_wait_seconds: int = 1800
    realtime_pullback_bounce_pips: float = 30.0
    realtime_pullback_chase_tolerance_pips: float = 50.0

    # Real-time detection
    realtime_check_interval_seconds: int = 30
    breakout_confirmation_seconds: int = 60

    # Stops and targets
    stop_loss_pips: float = 350.0
    breakout_stop_loss_pips: float = 550.0
    trailing_only: bool = False
    take_profit_rr: float = 2.5
    enable_staged_tp: bool = False
    take_profit_1_rr: float = 1.5
    take_profit_2_rr: float = 2.5
    staged_tp_close_fraction: float = 0.6
    move_stop_to_breakeven: bool = True

    # Trailing stop
    enable_trailing_stop: bool = True
    trailing_stop_distance_pips: float = 150.0
    trailing_activation_pips: float = 200.0
    breakout_trailing_activation_pips: float = 350.0

    # Order handling
    enable_order_retry: bool = True
    order_retry_widen_sl_pips: float = 100.0
    max_slippage_pips: float = 200.0

    # Entry gates
    trade_cooldown_hours: float = 4.0
    trading_start_hour: int = 8
    trading_end_hour: int = 22
    trading_timezone: str = "Europe/London"

    # Sizing and daily risk
    risk_per_trade_pct: float = 1.5
    min_position_size: int = 1
    max_position_size: int = 50_000
    max_daily_loss: float = 150.0

    # Scheduling
    scan_interval_minutes: int = 15
    monitor_interval_seconds: int = 60
    watchdog_check_seconds: int = 300
    watchdog_timeout_seconds: int = 1200

    # Storage, logging, notifications, API
    db_path: str = "data/breakoutbot.db"
    log_level: str = "INFO"
    log_file: str = ""
    enable_telegram: bool = False
    telegram_bot_token: str = ""
    telegram_chat_ids: tuple[str, ...] = field(default_factory=tuple)
    health_port: int = 8080

    @property
    def oanda_base_url(self) -> str:
        """Return the OANDA v20 API base URL based on environment."""
        if self.oanda_environment == "live":
            return "https://api-fxtrade.oanda.com"
        return "https://api-fxpractice.oanda.com"

    @property
    def pip_value(self) -> float:
        return INSTRUMENT_PIP_VALUES.get(self.trade_pair, 0.0001)

    def pips_to_price(self, pips: float) -> float:
        """Convert a pip distance to a price distance for ``trade_pair``."""
        return pips * self.pip_value

    def price_to_pips(self, distance: float) -> float:
        return distance / self.pip_value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def validate_config(config: Config) -> None:
    """Check threshold relationships that would make the strategy incoherent.

    Raises ``ValueError`` listing every problem found.
    """
    errors: list[str] = []

    if config.oanda_environment not in ("practice", "live"):
        errors.append("OANDA_ENVIRONMENT must be 'practice' or 'live'")
    if config.breakout_lookback < 1:
        errors.append("BREAKOUT_LOOKBACK must be at least 1")
    if config.adx_override <= config.adx_min:
        errors.append("ADX_OVERRIDE must be greater than ADX_MIN")
    if not (0 <= config.breakout_rsi_min_short < config.breakout_rsi_max_long <= 100):
        errors.append(
            "RSI bounds must satisfy 0 <= BREAKOUT_RSI_MIN_SHORT "
            "< BREAKOUT_RSI_MAX_LONG <= 100"
        )
    if not 0.0 <= config.breakout_min_candle_position <= 1.0:
        errors.append("BREAKOUT_MIN_CANDLE_POSITION must be between 0 and 1")
    if config.enable_staged_tp:
        if not 0.0 < config.staged_tp_close_fraction < 1.0:
            errors.append("STAGED_TP_CLOSE_FRACTION must be between 0 and 1 (exclusive)")
        if config.take_profit_1_rr >= config.take_profit_2_rr:
            errors.append("TAKE_PROFIT_1_RR must be less than TAKE_PROFIT_2_RR")
    for name, hour in (
        ("TRADING_START_HOUR", config.trading_start_hour),
        ("TRADING_END_HOUR", config.trading_end_hour),
    ):
        if not 0 <= hour <= 23:
            errors.append(f"{name} must be between 0 and 23")
    try:
        ZoneInfo(config.trading_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"TRADING_TIMEZONE '{config.trading_timezone}' is not a known timezone")
    if config.min_position_size < 1:
        errors.append("MIN_POSITION_SIZE must be at least 1 unit")
    if config.max_position_size < config.min_position_size:
        errors.append("MAX_POSITION_SIZE must be greater than MIN_POSITION_SIZE")
    if config.pullback_max_wait_candles < 1:
        errors.append("PULLBACK_MAX_WAIT_CANDLES must be at least 1")
    for name, seconds in (
        ("REALTIME_CHECK_INTERVAL_SECONDS", config.realtime_check_interval_seconds),
        ("MONITOR_INTERVAL_SECONDS", config.monitor_interval_seconds),
        ("SCAN_INTERVAL_MINUTES", config.scan_interval_minutes),
        ("WATCHDOG_CHECK_SECONDS", config.watchdog_check_seconds),
        ("WATCHDOG_TIMEOUT_SECONDS", config.watchdog_timeout_seconds),
    ):
        if seconds <= 0:
            errors.append(f"{name} must be positive")
    if config.enable_telegram:
        if not config.telegram_bot_token:
            errors.append("TELEGRAM_BOT_TOKEN is required when ENABLE_TELEGRAM=true")
        if not config.telegram_chat_ids:
            errors.append("TELEGRAM_CHAT_ID is required when ENABLE_TELEGRAM=true")

    if errors:
        raise ValueError("Invalid configuration: " + "; ".join(errors))


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, or listing every invalid threshold.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    chat_ids = tuple(
        c.strip()
        for c in os.environ.get("TELEGRAM_CHAT_ID", "").split(",")
        if c.strip()
    )

    config = Config(
        oanda_account_id=os.environ["OANDA_ACCOUNT_ID"],
        oanda_api_token=os.environ["OANDA_API_TOKEN"],
        oanda_environment=os.environ.get("OANDA_ENVIRONMENT", "practice"),
        trade_pair=os.environ.get("TRADE_PAIR", "XAU_USD"),
        timeframe=os.environ.get("TIMEFRAME", "H1"),
        entry_timeframe=os.environ.get("ENTRY_TIMEFRAME", "M15"),
        breakout_lookback=_env_int("BREAKOUT_LOOKBACK", 10),
        adx_min=_env_float("ADX_MIN", 20.0),
        adx_override=_env_float("ADX_OVERRIDE", 35.0),
        breakout_rsi_max_long=_env_float("BREAKOUT_RSI_MAX_LONG", 75.0),
        breakout_rsi_min_short=_env_float("BREAKOUT_RSI_MIN_SHORT", 25.0),
        breakout_max_distance_pips=_env_float("BREAKOUT_MAX_DISTANCE_FROM_LEVEL", 2000.0),
        breakout_min_candle_position=_env_float("BREAKOUT_MIN_CANDLE_POSITION", 0.4),
        enable_trend_continuation=_env_bool("ENABLE_TREND_CONTINUATION", True),
        trend_continuation_adx_min=_env_float("TREND_CONTINUATION_ADX_MIN", 25.0),
        trend_continuation_ema_period=_env_int("TREND_CONTINUATION_PULLBACK_EMA", 20),
        trend_continuation_ema_tolerance_pips=_env_float(
            "TREND_CONTINUATION_EMA_TOLERANCE_PIPS", 200.0,
        ),
        enable_pullback_entry=_env_bool("ENABLE_PULLBACK_ENTRY", True),
        pullback_min_pips=_env_float("PULLBACK_MIN_PIPS", 50.0),
        pullback_max_wait_candles=_env_int("PULLBACK_MAX_WAIT_CANDLES", 8),
        pullback_ema_period=_env_int("PULLBACK_EMA_PERIOD", 20),
        pullback_chase_tolerance_pips=_env_float("PULLBACK_CHASE_TOLERANCE_PIPS", 100.0),
        realtime_pullback_min_pips=_env_float("REALTIME_PULLBACK_MIN_PIPS", 50.0),
        realtime_pullback_max_wait_seconds=_env_int("REALTIME_PULLBACK_MAX_WAIT_SECONDS", 1800),
        realtime_pullback_bounce_pips=_env_float("REALTIME_PULLBACK_BOUNCE_PIPS", 30.0),
        realtime_pullback_chase_tolerance_pips=_env_float(
            "REALTIME_PULLBACK_CHASE_TOLERANCE_PIPS", 50.0,
        ),
        realtime_check_interval_seconds=_env_int("REALTIME_CHECK_INTERVAL_SECONDS", 30),
        breakout_confirmation_seconds=_env_int("BREAKOUT_CONFIRMATION_SECONDS", 60),
        stop_loss_pips=_env_float("STOP_LOSS_PIPS", 350.0),
        breakout_stop_loss_pips=_env_float("BREAKOUT_STOP_LOSS_PIPS", 550.0),
        trailing_only=_env_bool("TRAILING_ONLY", False),
        take_profit_rr=_env_float("TAKE_PROFIT_RR", 2.5),
        enable_staged_tp=_env_bool("ENABLE_STAGED_TP", False),
        take_profit_1_rr=_env_float("TAKE_PROFIT_1_RR", 1.5),
        take_profit_2_rr=_env_float("TAKE_PROFIT_2_RR", 2.5),
        staged_tp_close_fraction=_env_float("STAGED_TP_CLOSE_FRACTION", 0.6),
        move_stop_to_breakeven=_env_bool("MOVE_STOP_TO_BE", True),
        enable_trailing_stop=_env_bool("ENABLE_TRAILING_STOP", True),
        trailing_stop_distance_pips=_env_float("TRAILING_STOP_DISTANCE_PIPS", 150.0),
        trailing_activation_pips=_env_float("TRAILING_ACTIVATION_PIPS", 200.0),
        breakout_trailing_activation_pips=_env_float("BREAKOUT_TRAILING_ACTIVATION_PIPS", 350.0),
        enable_order_retry=_env_bool("ENABLE_ORDER_RETRY", True),
        order_retry_widen_sl_pips=_env_float("ORDER_RETRY_WIDEN_SL_PIPS", 100.0),
        max_slippage_pips=_env_float("MAX_SLIPPAGE_PIPS", 200.0),
        trade_cooldown_hours=_env_float("TRADE_COOLDOWN_HOURS", 4.0),
        trading_start_hour=_env_int("TRADING_START_HOUR", 8),
        trading_end_hour=_env_int("TRADING_END_HOUR", 22),
        trading_timezone=os.environ.get("TRADING_TIMEZONE", "Europe/London"),
        risk_per_trade_pct=_env_float("RISK_PER_TRADE_PCT", 1.5),
        min_position_size=_env_int("MIN_POSITION_SIZE", 1),
        max_position_size=_env_int("MAX_POSITION_SIZE", 50_000),
        max_daily_loss=_env_float("MAX_DAILY_LOSS", 150.0),
        scan_interval_minutes=_env_int("SCAN_INTERVAL_MINUTES", 15),
        monitor_interval_seconds=_env_int("MONITOR_INTERVAL_SECONDS", 60),
        watchdog_check_seconds=_env_int("WATCHDOG_CHECK_SECONDS", 300),
        watchdog_timeout_seconds=_env_int("WATCHDOG_TIMEOUT_SECONDS", 1200),
        db_path=os.environ.get("DB_PATH", "data/breakoutbot.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        log_file=os.environ.get("LOG_FILE", ""),
        enable_telegram=_env_bool("ENABLE_TELEGRAM", False),
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_ids=chat_ids,
        health_port=_env_int("HEALTH_PORT", 8080),
    )
    validate_config(config)
    return config
