"""Per-instrument overrides and reconciliation tolerances.

Optional YAML file via env `BP_PER_INSTRUMENT_CONFIG`, default
`configs/per_instrument.yaml`. Keys may be full instruments (`SOL_USDC`) or
base assets (`SOL`):

    SOL:
      tolerance: 0.01
    BTC_USDC:
      tolerance: 0.00005
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from src.core.json_utils import dumps
from src.core.utils import base_asset, normalize_symbol

log = logging.getLogger("dcabot")

# Quantity precision differs per asset, so drift tolerance does too.
DEFAULT_TOLERANCES: Dict[str, float] = {
    "BTC": 0.0001,
    "ETH": 0.001,
    "SOL": 0.01,
}
FALLBACK_TOLERANCE = 0.0001


def load_per_instrument_overrides(path: str | None = None) -> Dict[str, Dict[str, Any]]:
    if path is None:
        path = os.getenv("BP_PER_INSTRUMENT_CONFIG", "configs/per_instrument.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        log.warning(dumps({"event": "per_instrument_config_error", "path": str(p), "err": str(exc)}))
        return {}
    if not isinstance(data, dict):
        return {}
    return {normalize_symbol(str(k)): v for k, v in data.items() if isinstance(v, dict)}


class ToleranceTable:
    """Resolves the drift tolerance for an instrument.

    Lookup order: override for the full instrument, override for its base asset,
    built-in table by base asset, default.
    """

    def __init__(
        self,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        default: float = FALLBACK_TOLERANCE,
    ) -> None:
        self._overrides = {normalize_symbol(k): dict(v) for k, v in (overrides or {}).items()}
        self._default = default

    def tolerance(self, instrument: str) -> float:
        key = normalize_symbol(instrument)
        base = base_asset(instrument)
        for candidate in (key, base):
            entry = self._overrides.get(candidate)
            if entry and entry.get("tolerance") is not None:
                return float(entry["tolerance"])
        return DEFAULT_TOLERANCES.get(base, self._default)

    def override(self, instrument: str, field: str, default: Any = None) -> Any:
        for candidate in (normalize_symbol(instrument), base_asset(instrument)):
            entry = self._overrides.get(candidate)
            if entry and field in entry:
                return entry[field]
        return default
