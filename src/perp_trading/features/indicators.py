"""Indicator feed: OHLCV frame to named indicator results."""

from __future__ import annotations

import math
from typing import Callable

import pandas as pd  # type: ignore[import-untyped]

from perp_trading.errors import DataValidationError, InsufficientHistoryError
from perp_trading.types import Direction, IndicatorResult, Regime, Strength, SubSignal, Trend

MIN_HISTORY = 60
WILLIAMS_PERIOD = 14
OVERSOLD = -80.0
OVERBOUGHT = -20.0


def compute_indicators(df: pd.DataFrame) -> dict[str, IndicatorResult]:
    """Compute the indicator set for the latest closed candle."""
    _validate(df)
    close = df["close"].astype(float)
    return {
        "rsi": _rsi_result(close),
        "macd": _macd_result(close),
        "ema_trend": _ema_trend_result(close),
        "bollinger": _bollinger_result(close),
        "williams_r": _williams_result(df),
    }


def compute_atr_percent(df: pd.DataFrame, period: int = 14) -> float:
    """Latest ATR as a percent of the last close."""
    _validate(df)
    atr = _atr(df, period).dropna()
    last_close = float(df["close"].iloc[-1])
    if atr.empty or last_close <= 0:
        raise DataValidationError("atr_unavailable")
    return float(atr.iloc[-1]) / last_close * 100


def classify_regime(
    df: pd.DataFrame,
    *,
    adx_trend_threshold: float = 25.0,
    atr_volatile_percent: float = 4.0,
) -> Regime:
    """Volatile on high ATR%, trending on strong ADX, otherwise ranging."""
    if compute_atr_percent(df) >= atr_volatile_percent:
        return "volatile"
    adx = _adx(df).dropna()
    if not adx.empty and float(adx.iloc[-1]) >= adx_trend_threshold:
        return "trending"
    return "ranging"


def is_choppy(df: pd.DataFrame, period: int = 14, threshold: float = 61.8) -> bool:
    """Choppiness index of the last ``period`` candles above threshold."""
    _validate(df)
    tr_sum = float(_true_range(df).iloc[-period:].sum())
    span = float(df["high"].astype(float).iloc[-period:].max() - df["low"].astype(float).iloc[-period:].min())
    if span <= 0 or tr_sum <= 0:
        return False
    return 100 * math.log10(tr_sum / span) / math.log10(period) > threshold


def lower_timeframe_trend(df: pd.DataFrame, fast: int = 12, slow: int = 26) -> Trend:
    """EMA cross direction on the native timeframe."""
    if len(df) < MIN_HISTORY:
        return "neutral"
    return _ema_cross_trend(df["close"].astype(float), fast, slow)


def higher_timeframe_trend(
    df: pd.DataFrame,
    *,
    group: int = 4,
    fast: int = 9,
    slow: int = 21,
    min_candles: int = 30,
) -> Trend:
    """EMA cross direction on candles aggregated ``group`` at a time.

    Chunks are aligned to the newest candle; a partial leading chunk is
    dropped. Fewer than ``min_candles`` aggregated candles is neutral.
    """
    usable = len(df) // group * group
    if usable // group < min_candles:
        return "neutral"
    close = df["close"].astype(float).iloc[len(df) - usable :].reset_index(drop=True)
    htf_close = close.groupby(close.index // group).last()
    return _ema_cross_trend(htf_close, fast, slow)


def _ema_cross_trend(close: pd.Series, fast: int, slow: int) -> Trend:
    fast_value = float(_ema(close, fast).iloc[-1])
    slow_value = float(_ema(close, slow).iloc[-1])
    if not (math.isfinite(fast_value) and math.isfinite(slow_value)):
        return "neutral"
    if fast_value > slow_value:
        return "up"
    if fast_value < slow_value:
        return "down"
    return "neutral"


def _validate(df: pd.DataFrame) -> None:
    if df.empty:
        raise InsufficientHistoryError("input_ohlcv_empty")
    if len(df) < MIN_HISTORY:
        raise InsufficientHistoryError(f"need {MIN_HISTORY} candles, got {len(df)}")
    if not _is_time_ascending(df):
        raise DataValidationError("ohlcv_timestamp_not_ascending")


def _is_time_ascending(df: pd.DataFrame) -> bool:
    open_time = df.get("open_time")
    if open_time is None:
        return False
    return bool(pd.Series(open_time).is_monotonic_increasing)


def _ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False).mean()


def _true_range(df: pd.DataFrame) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    prev_close = df["close"].astype(float).shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    return tr_components.max(axis=1)


def _atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    return _true_range(df).rolling(window=period, min_periods=period).mean()


def _adx(df: pd.DataFrame, period: int = 14) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    up = high.diff()
    down = -low.diff()
    plus_dm = up.where((up > down) & (up > 0), 0.0)
    minus_dm = down.where((down > up) & (down > 0), 0.0)
    alpha = 1 / period
    atr = _true_range(df).ewm(alpha=alpha, adjust=False).mean()
    plus_di = 100 * plus_dm.ewm(alpha=alpha, adjust=False).mean() / atr
    minus_di = 100 * minus_dm.ewm(alpha=alpha, adjust=False).mean() / atr
    dx = 100 * (plus_di - minus_di).abs() / (plus_di + minus_di).replace(0, float("nan"))
    return dx.ewm(alpha=alpha, adjust=False).mean()


def _rsi_result(close: pd.Series, period: int = 14) -> IndicatorResult:
    delta = close.diff()
    gain = delta.clip(lower=0).ewm(alpha=1 / period, adjust=False).mean()
    loss = (-delta.clip(upper=0)).ewm(alpha=1 / period, adjust=False).mean()
    last_loss = float(loss.iloc[-1])
    if last_loss == 0:
        rsi = 100.0
    else:
        rsi = 100 - 100 / (1 + float(gain.iloc[-1]) / last_loss)
    if rsi <= 30:
        return IndicatorResult(value=rsi, signal="oversold", score=(30 - rsi) / 30 * 40 + 10)
    if rsi >= 70:
        return IndicatorResult(value=rsi, signal="overbought", score=-((rsi - 70) / 30 * 40 + 10))
    return IndicatorResult(value=rsi, signal="neutral", score=0.0)


def _macd_result(close: pd.Series) -> IndicatorResult:
    macd = _ema(close, 12) - _ema(close, 26)
    signal = _ema(macd, 9)
    hist = macd - signal
    last, prev = float(hist.iloc[-1]), float(hist.iloc[-2])
    if prev <= 0 < last:
        return IndicatorResult(value=last, signal="bullish_crossover", score=18.0)
    if prev >= 0 > last:
        return IndicatorResult(value=last, signal="bearish_crossover", score=-18.0)
    if last > 0:
        return IndicatorResult(value=last, signal="bullish", score=9.0)
    if last < 0:
        return IndicatorResult(value=last, signal="bearish", score=-9.0)
    return IndicatorResult(value=last, signal="neutral", score=0.0)


def _ema_trend_result(close: pd.Series) -> IndicatorResult:
    ema20 = _ema(close, 20)
    ema50 = _ema(close, 50)
    fast, slow = float(ema20.iloc[-1]), float(ema50.iloc[-1])
    spread = (fast - slow) / slow * 100 if slow else 0.0
    rising = fast > float(ema20.iloc[-2])
    if fast > slow and rising:
        return IndicatorResult(value=spread, signal="bullish", score=25.0)
    if fast < slow and not rising:
        return IndicatorResult(value=spread, signal="bearish", score=-25.0)
    return IndicatorResult(value=spread, signal="neutral", score=0.0)


def _bollinger_result(close: pd.Series, period: int = 20, width: float = 2.0) -> IndicatorResult:
    mid = close.rolling(period).mean()
    std = close.rolling(period).std(ddof=0)
    upper = mid + width * std
    lower = mid - width * std
    band = float(upper.iloc[-1] - lower.iloc[-1])
    if band <= 0:
        return IndicatorResult(value=0.5, signal="squeeze", score=0.0)
    percent_b = (float(close.iloc[-1]) - float(lower.iloc[-1])) / band
    if percent_b < 0:
        return IndicatorResult(value=percent_b, signal="oversold", score=30.0)
    if percent_b > 1:
        return IndicatorResult(value=percent_b, signal="overbought", score=-30.0)
    return IndicatorResult(value=percent_b, signal="neutral", score=0.0)


def _williams_r(df: pd.DataFrame, period: int = WILLIAMS_PERIOD) -> pd.Series:
    high = df["high"].astype(float).rolling(period).max()
    low = df["low"].astype(float).rolling(period).min()
    close = df["close"].astype(float)
    span = (high - low).replace(0, float("nan"))
    return (-100 * (high - close) / span).fillna(-50.0)


def _williams_result(df: pd.DataFrame) -> IndicatorResult:
    wr = _williams_r(df)
    closes = df["close"].astype(float)
    current, previous = float(wr.iloc[-1]), float(wr.iloc[-2])
    subs: list[SubSignal] = []

    oversold_bars = _bars_in_zone(wr.iloc[:-1], lambda v: v <= OVERSOLD)
    overbought_bars = _bars_in_zone(wr.iloc[:-1], lambda v: v >= OVERBOUGHT)
    if previous <= OVERSOLD < current:
        subs.append(_sub("bullish_crossover", "bullish", "very_strong" if oversold_bars > 3 else "strong",
                         f"crossed above {OVERSOLD:g} after {oversold_bars} bars"))
    elif previous >= OVERBOUGHT > current:
        subs.append(_sub("bearish_crossover", "bearish", "very_strong" if overbought_bars > 3 else "strong",
                         f"crossed below {OVERBOUGHT:g} after {overbought_bars} bars"))

    divergence = _divergence(closes.iloc[-14:].tolist(), wr.iloc[-14:].tolist())
    if divergence is not None:
        subs.append(divergence)

    if current < OVERSOLD:
        strength: Strength = "extreme" if current < -90 else "moderate"
        subs.append(_sub("oversold_zone", "bullish", strength, f"oversold at {current:.1f}"))
    elif current > OVERBOUGHT:
        strength = "extreme" if current > -10 else "moderate"
        subs.append(_sub("overbought_zone", "bearish", strength, f"overbought at {current:.1f}"))

    recent = wr.iloc[-5:].tolist()
    thrust = recent[-1] - recent[0]
    if thrust > 30 and recent[0] < -70:
        subs.append(_sub("bullish_thrust", "bullish", "strong", f"+{thrust:.1f} in 5 bars"))
    elif thrust < -30 and recent[0] > -30:
        subs.append(_sub("bearish_thrust", "bearish", "strong", f"{thrust:.1f} in 5 bars"))

    last4 = wr.iloc[-4:].tolist()
    if last4[0] > last4[1] > last4[2] < last4[3] and last4[2] < OVERSOLD:
        subs.append(_sub("bullish_hook", "bullish", "moderate", "hook in oversold zone"))
    elif last4[0] < last4[1] < last4[2] > last4[3] and last4[2] > OVERBOUGHT:
        subs.append(_sub("bearish_hook", "bearish", "moderate", "hook in overbought zone"))

    score = 0.0
    for sub in subs:
        score += 1.0 if sub.direction == "bullish" else -1.0
    signal = "neutral"
    if current < OVERSOLD:
        signal = "oversold"
    elif current > OVERBOUGHT:
        signal = "overbought"
    return IndicatorResult(value=current, signal=signal, score=score, sub_signals=tuple(subs))


def _sub(kind: str, direction: Direction, strength: Strength, message: str) -> SubSignal:
    return SubSignal(type=kind, direction=direction, strength=strength, message=message)


def _bars_in_zone(series: pd.Series, predicate: Callable[[float], bool]) -> int:
    count = 0
    for value in reversed(series.tolist()):
        if not predicate(value):
            break
        count += 1
    return count


def _swing_lows(values: list[float]) -> list[int]:
    return [i for i in range(1, len(values) - 1) if values[i] < values[i - 1] and values[i] < values[i + 1]]


def _swing_highs(values: list[float]) -> list[int]:
    return [i for i in range(1, len(values) - 1) if values[i] > values[i - 1] and values[i] > values[i + 1]]


def _divergence(prices: list[float], wr: list[float]) -> SubSignal | None:
    price_lows, wr_lows = _swing_lows(prices), _swing_lows(wr)
    if len(price_lows) >= 2 and len(wr_lows) >= 2:
        if prices[price_lows[-1]] < prices[price_lows[-2]] and wr[wr_lows[-1]] > wr[wr_lows[-2]]:
            return _sub("bullish_divergence", "bullish", "very_strong", "price lower low, %R higher low")
    price_highs, wr_highs = _swing_highs(prices), _swing_highs(wr)
    if len(price_highs) >= 2 and len(wr_highs) >= 2:
        if prices[price_highs[-1]] > prices[price_highs[-2]] and wr[wr_highs[-1]] < wr[wr_highs[-2]]:
            return _sub("bearish_divergence", "bearish", "very_strong", "price higher high, %R lower high")
    return None
