# Pydantic models for strategy configuration and API requests
from __future__ import annotations

from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator, model_validator

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
PriceSource = Literal["open", "high", "low", "close", "volume", "hl2", "hlc3", "ohlc4"]

# Operands a condition may use without declaring an indicator ('price' is the close)
PRICE_OPERANDS = ("price", "close", "open", "high", "low", "volume")

_INDICATOR_TYPE_ALIASES = {
    "bb": "bollinger",
    "bollingerbands": "bollinger",
    "bollinger_bands": "bollinger",
    "stoch": "stochastic",
}

_OPERATOR_ALIASES = {
    ">": "gt",
    "<": "lt",
    ">=": "gte",
    "<=": "lte",
    "==": "eq",
    "greater_than": "gt",
    "less_than": "lt",
    "greater_than_or_equal": "gte",
    "less_than_or_equal": "lte",
    "equals": "eq",
    "crossover": "crossover_above",
    "crossunder": "crossover_below",
    "cross_above": "crossover_above",
    "cross_below": "crossover_below",
}


# ==================== Indicators ====================

class _IndicatorBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Parameters used to derive a default id, e.g. rsi + period -> "rsi_14"
    id_params: ClassVar[tuple] = ("period",)
    # Secondary outputs a rule may reference as "<id>.<component>"
    components: ClassVar[tuple] = ()

    id: Optional[str] = None
    history_size: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = dict(data)
            parts = [str(data.get(p, cls.model_fields[p].default)) for p in cls.id_params]
            data["id"] = "_".join([cls.model_fields["type"].default, *parts])
        return data

    @property
    def warmup(self) -> int:
        """Candles needed before the indicator produces a value."""
        return int(getattr(self, "period", 1))


class EMAConfig(_IndicatorBase):
    type: Literal["ema"] = "ema"
    period: int = Field(default=20, ge=1)
    source: PriceSource = "close"


class SMAConfig(_IndicatorBase):
    type: Literal["sma"] = "sma"
    period: int = Field(default=20, ge=1)
    source: PriceSource = "close"


class RSIConfig(_IndicatorBase):
    type: Literal["rsi"] = "rsi"
    period: int = Field(default=14, ge=1)
    source: PriceSource = "close"


class MACDConfig(_IndicatorBase):
    id_params: ClassVar[tuple] = ("fast", "slow", "signal")
    components: ClassVar[tuple] = ("signal", "histogram")

    type: Literal["macd"] = "macd"
    fast: int = Field(default=12, ge=1)
    slow: int = Field(default=26, ge=1)
    signal: int = Field(default=9, ge=1)
    source: PriceSource = "close"

    @model_validator(mode="after")
    def _check_periods(self) -> "MACDConfig":
        if self.fast >= self.slow:
            raise ValueError("macd fast period must be less than slow period")
        return self

    @property
    def warmup(self) -> int:
        return self.slow


class BollingerConfig(_IndicatorBase):
    components: ClassVar[tuple] = ("upper", "lower")

    type: Literal["bollinger"] = "bollinger"
    period: int = Field(default=20, ge=1)
    num_std: float = Field(default=2.0, gt=0)
    source: PriceSource = "close"


class StochasticConfig(_IndicatorBase):
    id_params: ClassVar[tuple] = ("k_period", "d_period")
    components: ClassVar[tuple] = ("d",)

    type: Literal["stochastic"] = "stochastic"
    k_period: int = Field(default=14, ge=1)
    d_period: int = Field(default=3, ge=1)

    @property
    def warmup(self) -> int:
        return self.k_period


class ATRConfig(_IndicatorBase):
    type: Literal["atr"] = "atr"
    period: int = Field(default=14, ge=1)


IndicatorConfig = Annotated[
    Union[EMAConfig, SMAConfig, RSIConfig, MACDConfig, BollingerConfig, StochasticConfig, ATRConfig],
    Field(discriminator="type"),
]


# ==================== Signal rules ====================

class SignalCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    indicator: NonEmptyStr  # indicator id, "<id>.<component>" or a price operand
    operator: Literal["gt", "lt", "gte", "lte", "eq", "crossover_above", "crossover_below"]
    value: Union[float, str]  # threshold, or another operand name
    description: str = ""

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = v.strip().lower()
            return _OPERATOR_ALIASES.get(key, key)
        return v

    @field_validator("value", mode="before")
    @classmethod
    def _numeric_strings(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return float(v)
            except ValueError:
                return v.strip()
        return v

    @property
    def is_crossover(self) -> bool:
        return self.operator in ("crossover_above", "crossover_below")


class SignalRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: NonEmptyStr
    name: str = ""
    type: Literal["entry", "exit"]
    side: Literal["long", "short"] = "long"
    logic: Literal["and", "or"] = "and"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    description: str = ""
    conditions: List[SignalCondition] = Field(min_length=1)

    @field_validator("logic", "type", "side", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


# ==================== Risk ====================

class OvertradingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    max_trades_per_hour: int = Field(default=10, ge=1)
    max_trades_per_day: int = Field(default=50, ge=1)
    signal_cooldown_minutes: float = Field(default=0.0, ge=0)  # per (side, type)
    min_seconds_between_entries: float = Field(default=0.0, ge=0)
    min_seconds_between_exits: float = Field(default=0.0, ge=0)
    signal_strength_threshold: float = Field(default=0.0, ge=0.0, le=1.0)

    # Corroboration
    trend_confirmation: bool = False  # price must sit on the signal's side of the moving averages
    volume_confirmation: bool = False  # volume must beat recent accepted volume x multiplier
    min_volume_multiplier: float = Field(default=1.0, ge=0)
    # Share of RSI/MACD indicators backing the side; other types are not counted
    minimum_indicator_agreement: float = Field(default=0.0, ge=0.0, le=1.0)

    # No opposite entries while in a position, no exits while flat
    enforce_position_consistency: bool = True


class RiskConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    position_size: float = Field(default=1.0, gt=0)  # quantity used for paper fills
    overtrading_protection: Optional[OvertradingConfig] = None


class StrategyMeta(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    version: NonEmptyStr
    created_at: str = ""
    last_updated: str = ""
    description: str = ""
    author: str = ""
    tags: List[str] = Field(default_factory=list)


# ==================== Strategy ====================

class StrategyConfig(BaseModel):
    """Immutable definition a StrategyInstance is built from.

    Unknown top-level keys (ml_models, postprocessing, ...) are ignored.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: NonEmptyStr
    name: NonEmptyStr
    symbol: NonEmptyStr
    timeframe: NonEmptyStr
    enabled: bool = True
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    indicators: List[IndicatorConfig] = Field(default_factory=list)
    signals: List[SignalRule] = Field(default_factory=list)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    meta: StrategyMeta

    @model_validator(mode="before")
    @classmethod
    def _normalize_raw(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Older definitions carry "metadata" instead of "meta"
        if "meta" not in data and isinstance(data.get("metadata"), dict):
            data["meta"] = data["metadata"]
        indicators = data.get("indicators")
        if isinstance(indicators, list):
            normalized = []
            for item in indicators:
                if isinstance(item, dict) and isinstance(item.get("type"), str):
                    item = dict(item)
                    key = item["type"].strip().lower()
                    item["type"] = _INDICATOR_TYPE_ALIASES.get(key, key)
                normalized.append(item)
            data["indicators"] = normalized
        return data

    @model_validator(mode="after")
    def _check_references(self) -> "StrategyConfig":
        indicator_ids = [ind.id for ind in self.indicators]
        dupes = {i for i in indicator_ids if indicator_ids.count(i) > 1}
        if dupes:
            raise ValueError(f"duplicate indicator ids: {sorted(dupes)}")

        rule_ids = [rule.id for rule in self.signals]
        dupes = {r for r in rule_ids if rule_ids.count(r) > 1}
        if dupes:
            raise ValueError(f"duplicate signal rule ids: {sorted(dupes)}")

        known = set(self.operands())
        for rule in self.signals:
            for cond in rule.conditions:
                refs = [cond.indicator]
                if isinstance(cond.value, str):
                    refs.append(cond.value)
                for ref in refs:
                    if ref not in known:
                        raise ValueError(f"rule '{rule.id}' references unknown operand '{ref}'")
        return self

    def operands(self) -> List[str]:
        names = list(PRICE_OPERANDS)
        for ind in self.indicators:
            names.append(ind.id)
            names.extend(f"{ind.id}.{c}" for c in ind.components)
        return names

    @property
    def overtrading(self) -> Optional[OvertradingConfig]:
        ot = self.risk.overtrading_protection
        return ot if ot is not None and ot.enabled else None


# ==================== API payloads ====================

class CandleIn(BaseModel):
    symbol: NonEmptyStr
    timeframe: NonEmptyStr
    timestamp: int  # epoch ms
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class TradeIn(BaseModel):
    id: NonEmptyStr
    strategy_id: NonEmptyStr
    timestamp: int
    type: Literal["entry", "exit"]
    side: Literal["long", "short"]
    price: float = Field(gt=0)
    quantity: float = Field(gt=0)


class ManagerStatus(BaseModel):
    is_running: bool
    active_strategies: int
    running_strategies: int
    uptime_seconds: float
    paper_trading: bool
    data_distributor: Dict[str, Any]
    performance: Dict[str, Any]
