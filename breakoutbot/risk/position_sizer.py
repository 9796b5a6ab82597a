"""Position sizing — pure math, no I/O.

Calculates the number of units to trade based on account equity,
risk percentage, stop-loss distance, and pip size.
"""


def calculate_units(
    equity: float,
    risk_pct: float,
    sl_distance_pips: float,
    pip_value: float = 0.01,
) -> float:
    """Calculate position size in units.

    Formula::

        risk_amount  = equity × (risk_pct / 100)
        sl_in_price  = sl_distance_pips × pip_value
        units        = risk_amount / sl_in_price

    Args:
        equity: Current account equity (e.g. 10_000.0).
        risk_pct: Percentage of equity to risk per trade (e.g. 1.5).
        sl_distance_pips: Stop-loss distance in pips (e.g. 550).
        pip_value: Price size of one pip.  Default 0.01 (XAU/USD).

    Returns:
        Position size in units (always positive).

    Raises:
        ValueError: If any input is non-positive.
    """
    if equity <= 0:
        raise ValueError(f"equity must be positive, got {equity}")
    if risk_pct <= 0:
        raise ValueError(f"risk_pct must be positive, got {risk_pct}")
    if sl_distance_pips <= 0:
        raise ValueError(f"sl_distance_pips must be positive, got {sl_distance_pips}")
    if pip_value <= 0:
        raise ValueError(f"pip_value must be positive, got {pip_value}")

    risk_amount = equity * (risk_pct / 100.0)
    sl_in_price = sl_distance_pips * pip_value
    return risk_amount / sl_in_price


def size_position(
    equity: float,
    risk_pct: float,
    sl_distance_pips: float,
    pip_value: float,
    min_units: int,
    max_units: int,
    direction: str,
) -> int:
    """Whole units to submit, clamped to ``[min_units, max_units]`` and
    signed by *direction* (negative for shorts).

    Returns 0 when sizing is impossible (non-positive inputs).
    """
    try:
        raw = calculate_units(equity, risk_pct, sl_distance_pips, pip_value)
    except ValueError:
        return 0
    units = int(min(max(raw, min_units), max_units))
    if units <= 0:
        return 0
    return units if direction == "long" else -units
