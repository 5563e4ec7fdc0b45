from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Optional


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

_SECRET_KEYS = frozenset({
    "privatekey",
    "private_key",
    "apikey",
    "api_key",
    "x-api-key",
    "signature",
    "token",
    "access_token",
})


def as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    return default


def as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def parse_int_list(raw: str | Iterable[Any] | None) -> tuple[int, ...]:
    """``"1, 5,5"`` -> ``(1, 5)``. Order is kept, duplicates dropped."""
    if raw is None:
        return ()
    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    out: list[int] = []
    for part in parts:
        text = str(part).strip()
        if not text:
            continue
        value = int(text)
        if value not in out:
            out.append(value)
    return tuple(out)


def normalize_wallet_list(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    if raw is None:
        return ()
    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    out: list[str] = []
    seen: set[str] = set()
    for part in parts:
        wallet = str(part).strip().lower()
        if not wallet or wallet in seen:
            continue
        seen.add(wallet)
        out.append(wallet)
    return tuple(out)


def is_valid_address(value: Optional[str]) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(str(value)))


def _mask(value: Any) -> str:
    text = str(value)
    if len(text) <= 10:
        return "***"
    return f"{text[:6]}***{text[-4:]}"


def sanitize_for_logging(data: Any) -> Any:
    """Return a copy of ``data`` with secret-looking fields masked."""
    if isinstance(data, Mapping):
        out: dict[str, Any] = {}
        for key, value in data.items():
            if str(key).lower() in _SECRET_KEYS and value:
                out[key] = _mask(value)
            else:
                out[key] = sanitize_for_logging(value)
        return out
    if isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item) for item in data]
    return data
