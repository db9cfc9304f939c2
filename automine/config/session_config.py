"""
SessionConfig: immutable per-session mining configuration plus validation.

Validation collects every problem before raising ConfigInvalid so the
operator sees the whole list at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from automine.core.errors import ConfigInvalid
from automine.core.models import MINING_TOKENS, NUM_TILES

MIN_SOL_PER_ROUND = Decimal("0.001")
MAX_SOL_PER_ROUND = Decimal("1.0")
FREQUENCIES = ("every_round",)


class RiskTolerance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TileMode(str, Enum):
    OPTIMAL = "optimal"
    RANDOM = "random"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class TileSelection:
    mode: TileMode = TileMode.OPTIMAL
    tiles: Tuple[int, ...] = ()

    @classmethod
    def optimal(cls) -> "TileSelection":
        return cls(TileMode.OPTIMAL)

    @classmethod
    def random(cls) -> "TileSelection":
        return cls(TileMode.RANDOM)

    @classmethod
    def explicit(cls, tiles) -> "TileSelection":
        return cls(TileMode.EXPLICIT, tuple(int(t) for t in tiles))

    @classmethod
    def parse(cls, raw: str) -> "TileSelection":
        """Accepts 'optimal', 'random', 'explicit:0,6,12' or a bare '0,6,12'."""
        text = raw.strip().lower()
        if text in (TileMode.OPTIMAL.value, TileMode.RANDOM.value):
            return cls(TileMode(text))
        if text.startswith("explicit:"):
            text = text.split(":", 1)[1]
        try:
            return cls.explicit(int(x.strip()) for x in text.split(",") if x.strip())
        except ValueError as exc:
            raise ConfigInvalid([f"tile_selection: cannot parse {raw!r}"]) from exc

    def __str__(self) -> str:
        if self.mode is TileMode.EXPLICIT:
            return "explicit:" + ",".join(str(t) for t in self.tiles)
        return self.mode.value


# Named strategies exposed by the CLI: name -> (tile mode, risk, forced tile count)
STRATEGIES: Dict[str, Tuple[TileMode, RiskTolerance, Optional[int]]] = {
    "optimal": (TileMode.OPTIMAL, RiskTolerance.MEDIUM, None),
    "conservative": (TileMode.OPTIMAL, RiskTolerance.LOW, None),
    "random": (TileMode.RANDOM, RiskTolerance.MEDIUM, None),
    "degen": (TileMode.RANDOM, RiskTolerance.HIGH, NUM_TILES),
}


@dataclass(frozen=True)
class SessionConfig:
    sol_per_round: Decimal = Decimal("0.005")
    num_tiles: int = NUM_TILES
    risk_tolerance: RiskTolerance = RiskTolerance.MEDIUM
    mining_token: str = "SOL"
    tile_selection: TileSelection = field(default_factory=TileSelection.optimal)
    auto_restart: bool = True
    frequency: str = "every_round"
    ev_threshold: Decimal = Decimal("0")
    motherlode_only: bool = False
    stop_loss_sol: Optional[Decimal] = None
    max_loss_streak: Optional[int] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_strategy(cls, strategy: str, sol_per_round: Any, num_tiles: int, **overrides: Any) -> "SessionConfig":
        """Map a named strategy onto a config; unknown names fall back to optimal/medium."""
        mode, risk, forced_tiles = STRATEGIES.get(strategy.lower(), STRATEGIES["optimal"])
        return cls(
            sol_per_round=_decimal(sol_per_round, "sol_per_round"),
            num_tiles=forced_tiles or int(num_tiles),
            risk_tolerance=risk,
            tile_selection=TileSelection(mode),
            **overrides,
        )

    @classmethod
    def explicit_tiles(cls, sol_per_round: Any, tiles, **overrides: Any) -> "SessionConfig":
        selection = TileSelection.explicit(tiles)
        return cls(
            sol_per_round=_decimal(sol_per_round, "sol_per_round"),
            num_tiles=len(selection.tiles),
            tile_selection=selection,
            **overrides,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["SessionConfig"] = None) -> "SessionConfig":
        """Overlay a plain mapping (YAML profile, env) on top of base."""
        cfg = base or cls()
        updates: Dict[str, Any] = {}
        problems: List[str] = []
        for key, value in data.items():
            if value is None:
                continue
            try:
                if key == "sol_per_round":
                    updates[key] = _decimal(value, key)
                elif key in ("num_tiles", "max_loss_streak"):
                    updates[key] = int(value)
                elif key == "risk_tolerance":
                    updates[key] = RiskTolerance(str(value).lower())
                elif key == "tile_selection":
                    updates[key] = value if isinstance(value, TileSelection) else TileSelection.parse(str(value))
                elif key in ("auto_restart", "motherlode_only"):
                    updates[key] = _bool(value)
                elif key in ("ev_threshold", "stop_loss_sol"):
                    updates[key] = _decimal(value, key)
                elif key in ("mining_token", "frequency"):
                    updates[key] = str(value)
                else:
                    problems.append(f"unknown session field {key!r}")
            except ValueError as exc:
                problems.append(f"{key}: {exc}")
        if problems:
            raise ConfigInvalid(problems)
        return replace(cfg, **updates)

    def with_tiles(self, tiles) -> "SessionConfig":
        return replace(self, tile_selection=TileSelection.explicit(tiles), num_tiles=len(tuple(tiles)))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def problems(self) -> List[str]:
        out: List[str] = []
        if not (MIN_SOL_PER_ROUND <= self.sol_per_round <= MAX_SOL_PER_ROUND):
            out.append(f"sol_per_round must be within {MIN_SOL_PER_ROUND}-{MAX_SOL_PER_ROUND}, got {self.sol_per_round}")
        if not (1 <= self.num_tiles <= NUM_TILES):
            out.append(f"num_tiles must be within 1-{NUM_TILES}, got {self.num_tiles}")
        if not isinstance(self.risk_tolerance, RiskTolerance):
            out.append(f"risk_tolerance must be one of low/medium/high, got {self.risk_tolerance!r}")
        if self.mining_token not in MINING_TOKENS:
            out.append(f"mining_token must be one of {', '.join(MINING_TOKENS)}, got {self.mining_token!r}")
        if self.frequency not in FREQUENCIES:
            out.append(f"frequency {self.frequency!r} is not supported (only every_round)")
        sel = self.tile_selection
        if sel.mode is TileMode.EXPLICIT:
            if len(sel.tiles) != self.num_tiles:
                out.append(f"explicit tile list has {len(sel.tiles)} ids but num_tiles is {self.num_tiles}")
            if len(set(sel.tiles)) != len(sel.tiles):
                out.append("explicit tile ids must be distinct")
            if any(t < 0 or t >= NUM_TILES for t in sel.tiles):
                out.append(f"explicit tile ids must be within 0-{NUM_TILES - 1}")
        elif sel.tiles:
            out.append(f"tile ids are only allowed with explicit selection, not {sel.mode.value}")
        if sel.mode is TileMode.RANDOM and self.risk_tolerance is RiskTolerance.LOW:
            out.append("random tile selection is not allowed with low risk tolerance")
        if self.stop_loss_sol is not None and self.stop_loss_sol <= 0:
            out.append("stop_loss_sol must be positive")
        if self.max_loss_streak is not None and self.max_loss_streak <= 0:
            out.append("max_loss_streak must be a positive integer")
        return out

    def validate(self) -> "SessionConfig":
        problems = self.problems()
        if problems:
            raise ConfigInvalid(problems)
        return self

    # ------------------------------------------------------------------
    # Wire mapping
    # ------------------------------------------------------------------

    @property
    def is_explicit(self) -> bool:
        return self.tile_selection.mode is TileMode.EXPLICIT

    def to_wire(self, tile_ids_field: str = "tile_ids") -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "sol_amount": self.sol_per_round,
            "num_squares": self.num_tiles,
            "risk_tolerance": self.risk_tolerance.value,
            "mining_token": self.mining_token,
            "tile_selection_mode": self.tile_selection.mode.value,
            "auto_restart": self.auto_restart,
            "frequency": self.frequency,
            "ev_threshold": self.ev_threshold,
            "motherlode_only": self.motherlode_only,
        }
        if self.stop_loss_sol is not None:
            body["stop_loss_sol"] = self.stop_loss_sol
        if self.max_loss_streak is not None:
            body["max_loss_streak"] = self.max_loss_streak
        if self.is_explicit:
            body[tile_ids_field] = list(self.tile_selection.tiles)
        return body

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sol_per_round": self.sol_per_round,
            "num_tiles": self.num_tiles,
            "risk_tolerance": self.risk_tolerance.value,
            "mining_token": self.mining_token,
            "tile_selection": str(self.tile_selection),
            "auto_restart": self.auto_restart,
            "frequency": self.frequency,
            "ev_threshold": self.ev_threshold,
            "motherlode_only": self.motherlode_only,
            "stop_loss_sol": self.stop_loss_sol,
            "max_loss_streak": self.max_loss_streak,
        }


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{name} is not a decimal: {value!r}") from exc


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}
