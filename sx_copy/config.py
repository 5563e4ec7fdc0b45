"""Configuration for the SX copy bot.

Values are resolved once at startup: built-in defaults, then a ``.env`` file
(never overriding variables already set), then environment variables, then
CLI flags. ``parse_args`` validates the result and raises ``ConfigError``.
"""
from __future__ import annotations

import argparse
import math
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Optional, Sequence

from web3 import Web3

from .errors import ConfigError, ValidationError
from .odds import ODDS_FORMATS
from .stake import parse_stake, to_wei
from .utils import is_valid_address, normalize_wallet_list, parse_int_list


# ──────────────────────────────────────────────────────────────
# Networks
# ──────────────────────────────────────────────────────────────

MAINNET = "mainnet"
TESTNET = "testnet"

CHAIN_IDS = {
    MAINNET: 4162,
    TESTNET: 79479957,
}

API_URLS = {
    MAINNET: "https://api.sx.bet",
    TESTNET: "https://api.toronto.sx.bet",
}

RPC_URLS = {
    MAINNET: "https://rpc.sx-rollup.gelato.digital",
    TESTNET: "https://rpc.sx-rollup-testnet.t.raas.gelato.cloud",
}

USDC_ADDRESSES = {
    MAINNET: "0x6629Ce1Cf35Cc1329ebB4F63202F3f197b3F050B",
    TESTNET: "0x1BC6326EA6aF2aB8E4b6Bc83418044B1923b2956",
}


# ──────────────────────────────────────────────────────────────
# Exchange constants
# ──────────────────────────────────────────────────────────────

# 2040-01-01, the fixed on-chain expiry SX expects on new orders
DEFAULT_ORDER_EXPIRY = 2209006800
API_EXPIRY_SECONDS = 86400
MAX_MARKETS_PER_REQUEST = 30
LADDER_STEP_RANGE = (0, 200)

ORDER_CHANNEL_KIND = "active_orders_v2"

ODDS_METHODS = ("percentage", "fixed", "none")
STAKE_METHODS = ("percentage", "fixed", "none")

DEFAULT_ENV_FILE = ".env"

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


# ──────────────────────────────────────────────────────────────
# .env loading
# ──────────────────────────────────────────────────────────────

def read_env_file(path: str) -> Dict[str, str]:
    """Parse ``KEY=value`` lines; ``export`` prefixes and quotes are stripped."""
    target = Path(path)
    if not target.is_file():
        return {}
    values: Dict[str, str] = {}
    for raw in target.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def load_env_file(path: str) -> Dict[str, str]:
    parsed = read_env_file(path)
    for key, value in parsed.items():
        os.environ.setdefault(key, value)
    return parsed


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


# ──────────────────────────────────────────────────────────────
# Config dataclasses
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class NetworkConfig:
    name: str = TESTNET
    reconnect_interval_s: float = 5.0
    max_reconnect_attempts: int = 5
    # Backoff is interval * min(attempt, cap)
    reconnect_backoff_cap: int = 5
    connect_timeout_s: float = 30.0


@dataclass(slots=True)
class OrderFilters:
    """Inclusion filters for source orders. Empty tuples mean no restriction."""
    sports: tuple[int, ...] = ()
    market_types: tuple[int, ...] = ()
    leagues: tuple[int, ...] = ()
    # Implied probability bounds, inclusive
    min_odds: Decimal = Decimal("0.2")
    max_odds: Decimal = Decimal("0.8")
    exclude_parlay: bool = True
    exclude_live: bool = True


@dataclass(slots=True)
class MonitoringConfig:
    wallets: tuple[str, ...] = ()
    filters: OrderFilters = field(default_factory=OrderFilters)
    # Feed history replayed when a channel attaches
    rewind: str = "10s"


@dataclass(slots=True)
class OddsAdjustment:
    method: str = "fixed"        # percentage | fixed (ladder steps) | none
    value: float = 4
    ensure_ladder_compliance: bool = True


@dataclass(slots=True)
class StakeAdjustment:
    method: str = "percentage"   # percentage | fixed (= min_stake) | none
    value: float = 120.0
    min_stake: str = "20000000"  # 20 USDC
    max_stake: str = "50000000"  # 50 USDC


@dataclass(slots=True)
class CopyingConfig:
    enabled: bool = True
    delay_s: float = 0.0
    odds: OddsAdjustment = field(default_factory=OddsAdjustment)
    stake: StakeAdjustment = field(default_factory=StakeAdjustment)
    auto_cancel_on_source: bool = True
    cancel_all_on_disconnect: bool = True
    cancel_all_on_shutdown: bool = False


@dataclass(slots=True)
class ApiConfig:
    max_retries: int = 1
    backoff_s: float = 1.0
    backoff_multiplier: float = 2.0
    timeout_s: float = 30.0


@dataclass(slots=True)
class Config:
    """Runtime configuration, populated from CLI + env."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    copying: CopyingConfig = field(default_factory=CopyingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    # Credentials
    api_key: str = ""
    private_key: str = ""

    # ── Runtime ──
    status_interval_s: float = 60.0
    shutdown_grace_s: float = 10.0
    telemetry_path: Optional[str] = None
    env_file: str = DEFAULT_ENV_FILE

    # ── Logging ──
    log_level: str = "INFO"
    log_file: Optional[str] = None
    odds_format: str = "implied"     # implied | decimal | american, for log lines

    @property
    def filters(self) -> OrderFilters:
        return self.monitoring.filters

    @property
    def api_url(self) -> str:
        return API_URLS[self.network.name]

    @property
    def rpc_url(self) -> str:
        return RPC_URLS[self.network.name]

    @property
    def chain_id(self) -> int:
        return CHAIN_IDS[self.network.name]

    @property
    def base_token(self) -> str:
        return USDC_ADDRESSES[self.network.name]

    def order_channel(self, wallet: str) -> str:
        """Feed channel for ``wallet``. Channel names are case-sensitive; the
        exchange publishes under the checksummed address."""
        return f"{ORDER_CHANNEL_KIND}:{self.base_token}:{Web3.to_checksum_address(wallet)}"

    def validate(self) -> None:
        """Structural checks that do not need credentials."""
        net = self.network
        if net.name not in CHAIN_IDS:
            raise ConfigError(f"unknown network {net.name!r}; expected one of {sorted(CHAIN_IDS)}")
        if net.reconnect_interval_s < 0:
            raise ConfigError("reconnect interval must be >= 0")
        if net.max_reconnect_attempts < 0:
            raise ConfigError("max reconnect attempts must be >= 0")
        if net.connect_timeout_s <= 0:
            raise ConfigError("connect timeout must be > 0")

        f = self.filters
        if not (Decimal(0) <= f.min_odds <= f.max_odds <= Decimal(1)):
            raise ConfigError(f"odds range must satisfy 0 <= min <= max <= 1, got [{f.min_odds}, {f.max_odds}]")

        for wallet in self.monitoring.wallets:
            if not is_valid_address(wallet):
                raise ConfigError(f"invalid wallet address: {wallet!r}")

        odds = self.copying.odds
        if odds.method not in ODDS_METHODS:
            raise ConfigError(f"odds adjustment method must be one of {ODDS_METHODS}, got {odds.method!r}")
        if not math.isfinite(odds.value):
            raise ConfigError(f"odds adjustment value must be a finite number, got {odds.value}")
        if odds.method == "fixed" and float(odds.value) != int(odds.value):
            raise ConfigError("fixed odds adjustment must be a whole number of ladder steps")

        stake = self.copying.stake
        if stake.method not in STAKE_METHODS:
            raise ConfigError(f"stake adjustment method must be one of {STAKE_METHODS}, got {stake.method!r}")
        if not math.isfinite(stake.value):
            raise ConfigError(f"stake adjustment value must be a finite number, got {stake.value}")
        if stake.method == "percentage" and not 0 <= stake.value <= 1000:
            raise ConfigError("stake percentage must be between 0 and 1000")
        try:
            lo = parse_stake(stake.min_stake)
            hi = parse_stake(stake.max_stake)
        except ValidationError as exc:
            raise ConfigError(f"invalid stake limits: {exc}") from exc
        if lo <= 0 or lo > hi:
            raise ConfigError("stake limits must satisfy 0 < min <= max")

        if not math.isfinite(self.copying.delay_s) or self.copying.delay_s < 0:
            raise ConfigError("copy delay must be >= 0")
        if self.api.timeout_s <= 0 or self.api.max_retries < 0:
            raise ConfigError("api timeout must be > 0 and max retries >= 0")
        if self.status_interval_s <= 0 or self.shutdown_grace_s < 0:
            raise ConfigError("status interval must be > 0 and shutdown grace >= 0")
        if self.odds_format not in ODDS_FORMATS:
            raise ConfigError(f"odds format must be one of {ODDS_FORMATS}, got {self.odds_format!r}")

    def require_credentials(self) -> None:
        """Checks that only matter when the bot is about to trade."""
        if not self.api_key:
            raise ConfigError("SX_API_KEY is not set")
        if not _PRIVATE_KEY_RE.match(self.private_key):
            raise ConfigError("PRIVATE_KEY must be a 0x-prefixed 32-byte hex string")
        if not self.monitoring.wallets:
            raise ConfigError("no wallets to monitor: set SX_WALLETS or pass --wallets")


def _decimal(value: str, name: str) -> Decimal:
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ConfigError(f"{name} must be a decimal number, got {value!r}") from exc
    if not number.is_finite():
        raise ConfigError(f"{name} must be a finite decimal number, got {value!r}")
    return number


def _usdc(value: str, name: str) -> str:
    try:
        return to_wei(value)
    except ValidationError as exc:
        raise ConfigError(f"{name}: {exc}") from exc


def _int_list(value: str, name: str) -> tuple[int, ...]:
    try:
        return parse_int_list(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a comma-separated list of integers") from exc


def parse_args(argv: Sequence[str] | None = None) -> Config:
    """Build a validated Config from CLI args + environment variables."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default=_env("SX_ENV_FILE", DEFAULT_ENV_FILE))
    pre_args, _ = pre.parse_known_args(argv)
    env_file = str(pre_args.env_file).strip() or DEFAULT_ENV_FILE
    load_env_file(env_file)

    p = argparse.ArgumentParser(description="SX.bet order copy bot")
    p.add_argument("--env-file", default=env_file)
    p.add_argument("--network", default=_env("SX_NETWORK", TESTNET).lower(),
                   help="mainnet | testnet")
    p.add_argument("--wallets", default=_env("SX_WALLETS"),
                   help="comma-separated wallets to copy from")

    # ── Filters ──
    p.add_argument("--sports", default=_env("SX_SPORTS"), help="comma-separated sport ids")
    p.add_argument("--market-types", default=_env("SX_MARKET_TYPES"), help="comma-separated market type ids")
    p.add_argument("--leagues", default=_env("SX_LEAGUES"), help="comma-separated league ids")
    p.add_argument("--min-odds", default=_env("SX_MIN_ODDS", "0.2"), help="implied probability, e.g. 0.2")
    p.add_argument("--max-odds", default=_env("SX_MAX_ODDS", "0.8"))
    p.add_argument("--exclude-parlay", action=argparse.BooleanOptionalAction,
                   default=_env_bool("SX_EXCLUDE_PARLAY", True))
    p.add_argument("--exclude-live", action=argparse.BooleanOptionalAction,
                   default=_env_bool("SX_EXCLUDE_LIVE", True))

    # ── Copying ──
    p.add_argument("--copy", dest="copy_enabled", action=argparse.BooleanOptionalAction,
                   default=_env_bool("SX_COPY_ENABLED", True))
    p.add_argument("--copy-delay", type=float, default=_env_float("SX_COPY_DELAY", 0.0),
                   help="seconds to wait before copying")
    p.add_argument("--odds-method", choices=ODDS_METHODS, default=_env("SX_ODDS_METHOD", "fixed"))
    p.add_argument("--odds-value", type=float, default=_env_float("SX_ODDS_VALUE", 4))
    p.add_argument("--ladder", action=argparse.BooleanOptionalAction,
                   default=_env_bool("SX_LADDER_COMPLIANCE", True))
    p.add_argument("--stake-method", choices=STAKE_METHODS, default=_env("SX_STAKE_METHOD", "percentage"))
    p.add_argument("--stake-value", type=float, default=_env_float("SX_STAKE_VALUE", 120.0))
    p.add_argument("--min-stake", default=_env("SX_MIN_STAKE", "20"), help="USDC")
    p.add_argument("--max-stake", default=_env("SX_MAX_STAKE", "50"), help="USDC")
    p.add_argument("--auto-cancel", action=argparse.BooleanOptionalAction,
                   default=_env_bool("SX_AUTO_CANCEL", True))
    p.add_argument("--cancel-on-disconnect", action=argparse.BooleanOptionalAction,
                   default=_env_bool("SX_CANCEL_ON_DISCONNECT", True))
    p.add_argument("--cancel-on-shutdown", action=argparse.BooleanOptionalAction,
                   default=_env_bool("SX_CANCEL_ON_SHUTDOWN", False))

    # ── Transport ──
    p.add_argument("--reconnect-interval", type=float, default=_env_float("SX_RECONNECT_INTERVAL", 5.0))
    p.add_argument("--max-reconnects", type=int, default=_env_int("SX_MAX_RECONNECTS", 5))
    p.add_argument("--connect-timeout", type=float, default=_env_float("SX_CONNECT_TIMEOUT", 30.0))
    p.add_argument("--api-timeout", type=float, default=_env_float("SX_API_TIMEOUT", 30.0))
    p.add_argument("--api-max-retries", type=int, default=_env_int("SX_API_MAX_RETRIES", 1))

    # ── Runtime ──
    p.add_argument("--status-interval", type=float, default=_env_float("SX_STATUS_INTERVAL", 60.0))
    p.add_argument("--shutdown-grace", type=float, default=_env_float("SX_SHUTDOWN_GRACE", 10.0))
    p.add_argument("--telemetry", default=_env("SX_TELEMETRY_FILE") or None,
                   help="JSONL telemetry file (default: none)")
    p.add_argument("--log-level", default=_env("SX_LOG_LEVEL", "INFO"))
    p.add_argument("--log-file", default=_env("SX_LOG_FILE") or None)
    p.add_argument("--odds-format", choices=ODDS_FORMATS, default=_env("SX_ODDS_FORMAT", "implied"),
                   help="how odds are shown in logs")
    args = p.parse_args(argv)

    cli_env_file = str(args.env_file).strip() or DEFAULT_ENV_FILE
    if cli_env_file != env_file:
        load_env_file(cli_env_file)
        env_file = cli_env_file

    cfg = Config(
        network=NetworkConfig(
            name=str(args.network).strip().lower(),
            reconnect_interval_s=args.reconnect_interval,
            max_reconnect_attempts=args.max_reconnects,
            connect_timeout_s=args.connect_timeout,
        ),
        monitoring=MonitoringConfig(
            wallets=normalize_wallet_list(args.wallets),
            filters=OrderFilters(
                sports=_int_list(args.sports, "sports"),
                market_types=_int_list(args.market_types, "market types"),
                leagues=_int_list(args.leagues, "leagues"),
                min_odds=_decimal(args.min_odds, "min odds"),
                max_odds=_decimal(args.max_odds, "max odds"),
                exclude_parlay=bool(args.exclude_parlay),
                exclude_live=bool(args.exclude_live),
            ),
        ),
        copying=CopyingConfig(
            enabled=bool(args.copy_enabled),
            delay_s=args.copy_delay,
            odds=OddsAdjustment(
                method=args.odds_method,
                value=args.odds_value,
                ensure_ladder_compliance=bool(args.ladder),
            ),
            stake=StakeAdjustment(
                method=args.stake_method,
                value=args.stake_value,
                min_stake=_usdc(args.min_stake, "min stake"),
                max_stake=_usdc(args.max_stake, "max stake"),
            ),
            auto_cancel_on_source=bool(args.auto_cancel),
            cancel_all_on_disconnect=bool(args.cancel_on_disconnect),
            cancel_all_on_shutdown=bool(args.cancel_on_shutdown),
        ),
        api=ApiConfig(
            max_retries=args.api_max_retries,
            timeout_s=args.api_timeout,
        ),
        api_key=_env("SX_API_KEY"),
        private_key=_env("PRIVATE_KEY"),
        status_interval_s=args.status_interval,
        shutdown_grace_s=args.shutdown_grace,
        telemetry_path=args.telemetry,
        env_file=env_file,
        log_level=str(args.log_level).upper(),
        log_file=args.log_file,
        odds_format=str(args.odds_format).strip().lower(),
    )
    cfg.validate()
    return cfg
