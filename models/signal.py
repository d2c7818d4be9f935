from dataclasses import dataclass

LONG = "long"
SHORT = "short"
NEUTRAL = "neutral"
DIRECTIONS = (LONG, SHORT)


@dataclass(frozen=True)
class Signal:
    type: str                  # indicator family ("rsi", "macd", ...) or "combined"
    direction: str = NEUTRAL   # "long" | "short" | "neutral"
    strength: float = 0.0      # 0..1
    value: float = 0.0         # raw indicator reading behind the decision

    @property
    def is_neutral(self) -> bool:
        return self.direction not in DIRECTIONS or self.strength <= 0
