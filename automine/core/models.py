"""
Wire DTOs for the refinORE API.

Every DTO has an explicit field map from the wire JSON (snake_case, with the
camelCase spellings the backend also emits). Unknown fields are ignored;
missing required fields raise ProtocolMismatch. All amounts are Decimal.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from automine.core.errors import ProtocolMismatch

NUM_TILES = 25
TILE_IDS = range(NUM_TILES)
ZERO = Decimal("0")

_MISSING = object()


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _pick(data: Mapping[str, Any], names: Sequence[str], default: Any = _MISSING, *, dto: str = "") -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    if default is _MISSING:
        raise ProtocolMismatch(f"{dto}: missing required field {names[0]!r}")
    return default


def _dec(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ProtocolMismatch(f"{name}: expected number, got bool")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ProtocolMismatch(f"{name}: not a number: {value!r}") from exc


def _int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ProtocolMismatch(f"{name}: expected integer, got bool")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ProtocolMismatch(f"{name}: not an integer: {value!r}") from exc


def _tile_ids(value: Any, name: str) -> Tuple[int, ...]:
    if not isinstance(value, (list, tuple)):
        raise ProtocolMismatch(f"{name}: expected list of tile ids")
    ids = tuple(_int(v, name) for v in value)
    for tid in ids:
        if tid not in TILE_IDS:
            raise ProtocolMismatch(f"{name}: tile id out of range: {tid}")
    return ids


def _timestamp(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Backend mixes seconds and milliseconds
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            try:
                return float(value)
            except ValueError as exc:
                raise ProtocolMismatch(f"timestamp: unparseable {value!r}") from exc
    raise ProtocolMismatch(f"timestamp: unsupported type {type(value).__name__}")


def _require_mapping(payload: Any, dto: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ProtocolMismatch(f"{dto}: expected object, got {type(payload).__name__}")
    return payload


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------


class RoundStatus(str, Enum):
    ACTIVE = "active"
    SETTLING = "settling"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class TileState:
    id: int
    sol_deployed: Decimal = ZERO
    num_miners: int = 0

    @classmethod
    def from_wire(cls, data: Any) -> "TileState":
        data = _require_mapping(data, "TileState")
        tid = _int(_pick(data, ("id", "tile_id", "square"), dto="TileState"), "tile.id")
        if tid not in TILE_IDS:
            raise ProtocolMismatch(f"tile id out of range: {tid}")
        return cls(
            id=tid,
            sol_deployed=_dec(_pick(data, ("sol_deployed", "solDeployed", "deployed"), 0), "tile.sol_deployed"),
            num_miners=_int(_pick(data, ("num_miners", "numMiners", "miners"), 0), "tile.num_miners"),
        )


def _empty_tiles() -> Tuple[TileState, ...]:
    return tuple(TileState(id=i) for i in TILE_IDS)


@dataclass(frozen=True)
class RoundSnapshot:
    """Live state of the current round (GET /rounds/current, SSE round_start)."""

    round_number: int
    status: RoundStatus = RoundStatus.ACTIVE
    time_remaining_sec: float = 0.0
    total_sol_deployed: Decimal = ZERO
    num_miners: int = 0
    motherlode_sol: Decimal = ZERO
    ev_estimate_pct: Optional[Decimal] = None
    tiles: Tuple[TileState, ...] = field(default_factory=_empty_tiles)

    @classmethod
    def from_wire(cls, data: Any) -> "RoundSnapshot":
        data = _require_mapping(data, "RoundSnapshot")
        number = _int(_pick(data, ("round_number", "roundNumber", "round_id", "round"), dto="RoundSnapshot"), "round_number")
        raw_status = str(_pick(data, ("status",), RoundStatus.ACTIVE.value)).lower()
        try:
            status = RoundStatus(raw_status)
        except ValueError as exc:
            raise ProtocolMismatch(f"RoundSnapshot: unknown status {raw_status!r}") from exc
        ev_raw = _pick(data, ("ev_estimate_pct", "evEstimatePct", "ev_pct", "ev"), None)
        raw_tiles = _pick(data, ("tiles", "squares"), None)
        if raw_tiles is None:
            tiles = _empty_tiles()
        else:
            if not isinstance(raw_tiles, list) or len(raw_tiles) != NUM_TILES:
                raise ProtocolMismatch(f"RoundSnapshot: expected {NUM_TILES} tiles")
            tiles = tuple(sorted((TileState.from_wire(t) for t in raw_tiles), key=lambda t: t.id))
        remaining = float(_dec(_pick(data, ("time_remaining_sec", "timeRemainingSec", "time_remaining"), 0), "time_remaining_sec"))
        return cls(
            round_number=number,
            status=status,
            time_remaining_sec=max(0.0, remaining),
            total_sol_deployed=_dec(_pick(data, ("total_sol_deployed", "totalSolDeployed", "total_deployed"), 0), "total_sol_deployed"),
            num_miners=_int(_pick(data, ("num_miners", "numMiners", "miners"), 0), "num_miners"),
            motherlode_sol=_dec(_pick(data, ("motherlode_sol", "motherlodeSol", "motherlode"), 0), "motherlode_sol"),
            ev_estimate_pct=None if ev_raw is None else _dec(ev_raw, "ev_estimate_pct"),
            tiles=tiles,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_number": self.round_number,
            "status": self.status.value,
            "time_remaining_sec": self.time_remaining_sec,
            "total_sol_deployed": self.total_sol_deployed,
            "num_miners": self.num_miners,
            "motherlode_sol": self.motherlode_sol,
            "ev_estimate_pct": self.ev_estimate_pct,
        }


@dataclass(frozen=True)
class RoundResult:
    """Outcome of one finalized round the session took part in."""

    round_number: int
    won: bool
    sol_deployed: Decimal = ZERO
    sol_earned: Decimal = ZERO
    ore_earned: Decimal = ZERO
    tiles_selected: Tuple[int, ...] = ()
    winning_tile: Optional[int] = None
    timestamp: float = 0.0
    reconstructed: bool = False

    @property
    def net_pnl_sol(self) -> Decimal:
        return self.sol_earned - self.sol_deployed

    def as_reconstructed(self) -> "RoundResult":
        return replace(self, reconstructed=True)

    @classmethod
    def from_wire(cls, data: Any) -> "RoundResult":
        data = _require_mapping(data, "RoundResult")
        number = _int(_pick(data, ("round_number", "roundNumber", "round_id", "round"), dto="RoundResult"), "round_number")
        if "won" in data and data["won"] is not None:
            won = bool(data["won"])
        elif data.get("result") is not None:
            won = str(data["result"]).lower() in {"win", "won"}
        else:
            raise ProtocolMismatch("RoundResult: missing required field 'won'")
        winning = _pick(data, ("winning_tile", "winningTile", "winning_square"), None)
        if winning is not None:
            winning = _int(winning, "winning_tile")
            if winning not in TILE_IDS:
                raise ProtocolMismatch(f"winning_tile out of range: {winning}")
        return cls(
            round_number=number,
            won=won,
            sol_deployed=_dec(_pick(data, ("sol_deployed", "solDeployed", "deployed"), 0), "sol_deployed"),
            sol_earned=_dec(_pick(data, ("sol_earned", "solEarned", "sol_won"), 0), "sol_earned"),
            ore_earned=_dec(_pick(data, ("ore_earned", "oreEarned", "ore_won"), 0), "ore_earned"),
            tiles_selected=_tile_ids(_pick(data, ("tiles_selected", "tilesSelected", "tile_ids", "tiles"), []), "tiles_selected"),
            winning_tile=winning,
            timestamp=_timestamp(_pick(data, ("timestamp", "created_at", "ts"), None)),
            reconstructed=bool(data.get("reconstructed", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_number": self.round_number,
            "won": self.won,
            "sol_deployed": self.sol_deployed,
            "sol_earned": self.sol_earned,
            "ore_earned": self.ore_earned,
            "tiles_selected": list(self.tiles_selected),
            "winning_tile": self.winning_tile,
            "timestamp": self.timestamp,
            "reconstructed": self.reconstructed,
        }


def parse_round_results(payload: Any) -> List[RoundResult]:
    """Accepts a bare list or {"rounds": [...]}; returns results in round order."""
    if payload is None:
        return []
    if isinstance(payload, Mapping):
        payload = payload.get("rounds", payload.get("data", []))
    if not isinstance(payload, list):
        raise ProtocolMismatch("session-rounds: expected a list of rounds")
    results = [RoundResult.from_wire(r) for r in payload]
    return sorted(results, key=lambda r: r.round_number)


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------

MINING_TOKENS = ("SOL", "USDC", "ORE", "stORE", "SKR")
_TOKEN_BY_LOWER = {t.lower(): t for t in MINING_TOKENS}


@dataclass(frozen=True)
class BalanceVector:
    """Multi-token wallet balances plus optional SOL quotes per token."""

    amounts: Dict[str, Decimal] = field(default_factory=dict)
    sol_quotes: Dict[str, Decimal] = field(default_factory=dict)

    def get(self, token: str) -> Decimal:
        return self.amounts.get(token, ZERO)

    def quote(self, token: str) -> Optional[Decimal]:
        if token == "SOL":
            return Decimal("1")
        return self.sol_quotes.get(token)

    @classmethod
    def from_wire(cls, data: Any) -> "BalanceVector":
        data = _require_mapping(data, "BalanceVector")
        source = data.get("balances", data)
        if not isinstance(source, Mapping):
            raise ProtocolMismatch("BalanceVector: balances must be an object")
        amounts: Dict[str, Decimal] = {}
        for key, value in source.items():
            token = _TOKEN_BY_LOWER.get(str(key).lower())
            if token is None:
                continue
            if isinstance(value, Mapping):
                value = _pick(value, ("amount", "balance", "ui_amount"), 0)
            amounts[token] = _dec(value, f"balance.{token}")
        quotes: Dict[str, Decimal] = {}
        raw_quotes = _pick(data, ("sol_quotes", "prices_sol", "sol_prices"), {})
        if isinstance(raw_quotes, Mapping):
            for key, value in raw_quotes.items():
                token = _TOKEN_BY_LOWER.get(str(key).lower())
                if token is not None:
                    quotes[token] = _dec(value, f"quote.{token}")
        return cls(amounts=amounts, sol_quotes=quotes)

    def to_dict(self) -> Dict[str, Any]:
        return {"balances": dict(self.amounts), "sol_quotes": dict(self.sol_quotes)}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionHandle:
    session_id: Optional[str]
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_wire(cls, data: Any) -> "SessionHandle":
        data = _require_mapping(data, "SessionHandle")
        inner = data.get("session") if isinstance(data.get("session"), Mapping) else data
        sid = _pick(inner, ("session_id", "sessionId", "id"), None)
        return cls(
            session_id=None if sid is None else str(sid),
            status=str(_pick(inner, ("status",), "active")),
            raw=dict(data),
        )


# start-strategy sessions may report explicit tiles as "custom"
_TILE_MODE_ALIASES = {"custom": "explicit", "custom_tiles": "explicit", "strategy": "explicit"}


def _tile_mode(value: Any) -> str:
    mode = str(value).strip().lower()
    return _TILE_MODE_ALIASES.get(mode, mode)


@dataclass(frozen=True)
class SessionSnapshot:
    """Current backend session (GET /mining/session)."""

    session_id: Optional[str]
    active: bool
    sol_per_round: Optional[Decimal] = None
    num_tiles: Optional[int] = None
    tile_selection_mode: Optional[str] = None
    tile_ids: Tuple[int, ...] = ()
    mining_token: Optional[str] = None
    auto_restart: Optional[bool] = None
    rounds_played: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_wire(cls, data: Any) -> "SessionSnapshot":
        data = _require_mapping(data, "SessionSnapshot")
        inner = data.get("session") if isinstance(data.get("session"), Mapping) else data
        status = str(_pick(inner, ("status",), "")).lower()
        if "active" in inner and isinstance(inner["active"], bool):
            active = inner["active"]
        else:
            active = status in {"active", "running", "starting"}
        sol = _pick(inner, ("sol_amount", "solAmount", "sol_per_round"), None)
        tiles = _pick(inner, ("num_squares", "numSquares", "num_tiles"), None)
        sid = _pick(inner, ("session_id", "sessionId", "id"), None)
        return cls(
            session_id=None if sid is None else str(sid),
            active=active,
            sol_per_round=None if sol is None else _dec(sol, "sol_amount"),
            num_tiles=None if tiles is None else _int(tiles, "num_squares"),
            tile_selection_mode=_pick(inner, ("tile_selection_mode", "tileSelectionMode"), None),
            tile_ids=_tile_ids(_pick(inner, ("tile_ids", "custom_tiles", "tileIds"), []), "tile_ids"),
            mining_token=_pick(inner, ("mining_token", "miningToken"), None),
            auto_restart=_pick(inner, ("auto_restart", "autoRestart"), None),
            rounds_played=_int(_pick(inner, ("rounds_played", "roundsPlayed", "rounds"), 0), "rounds_played"),
            raw=dict(data),
        )

    def matches(self, body: Mapping[str, Any], tile_ids_field: str = "tile_ids") -> bool:
        """
        True if this active session runs the config described by a start body.

        Fields the backend does not report are not compared. Explicit tiles
        are read from ``tile_ids_field``, the same name the body was built with.
        """
        if not self.active:
            return False
        if self.sol_per_round is not None and self.sol_per_round != Decimal(str(body.get("sol_amount"))):
            return False
        if self.num_tiles is not None and self.num_tiles != body.get("num_squares"):
            return False
        wanted_mode = body.get("tile_selection_mode")
        if wanted_mode and self.tile_selection_mode \
                and _tile_mode(self.tile_selection_mode) != _tile_mode(wanted_mode):
            return False
        wanted_tiles = body.get(tile_ids_field)
        running = self.tile_ids or self._reported_tiles(tile_ids_field)
        if wanted_tiles and running and tuple(sorted(running)) != tuple(sorted(wanted_tiles)):
            return False
        return True

    def _reported_tiles(self, name: str) -> Tuple[int, ...]:
        inner = self.raw.get("session") if isinstance(self.raw.get("session"), Mapping) else self.raw
        return _tile_ids(inner.get(name) or [], name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "active": self.active,
            "sol_per_round": self.sol_per_round,
            "num_tiles": self.num_tiles,
            "tile_selection_mode": self.tile_selection_mode,
            "tile_ids": list(self.tile_ids),
            "mining_token": self.mining_token,
            "auto_restart": self.auto_restart,
            "rounds_played": self.rounds_played,
        }


@dataclass(frozen=True)
class Summary:
    """Result of POST /mining/stop."""

    rounds: int = 0
    sol_deployed: Decimal = ZERO
    sol_earned: Decimal = ZERO
    ore_earned: Decimal = ZERO
    already_stopped: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_wire(cls, data: Any) -> "Summary":
        if data is None:
            return cls()
        data = _require_mapping(data, "Summary")
        inner = data.get("summary") if isinstance(data.get("summary"), Mapping) else data
        return cls(
            rounds=_int(_pick(inner, ("rounds", "rounds_played", "roundsPlayed"), 0), "rounds"),
            sol_deployed=_dec(_pick(inner, ("sol_deployed", "total_sol_deployed", "solDeployed"), 0), "sol_deployed"),
            sol_earned=_dec(_pick(inner, ("sol_earned", "total_sol_earned", "solEarned"), 0), "sol_earned"),
            ore_earned=_dec(_pick(inner, ("ore_earned", "total_ore_earned", "oreEarned"), 0), "ore_earned"),
            raw=dict(data),
        )
