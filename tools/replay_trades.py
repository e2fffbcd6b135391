#!/usr/bin/env python3
"""
Replay a JSONL trade stream through an `ActivityTierService` and print tier transitions.

Each input line is a JSON object:

    {"key": "pool-a", "reference": 1000000000000000000, "amount": -5000, "liquidity": 100000, "timestamp": 1700000000}

Output: one JSON line per tier transition (`{"key", "timestamp", "old_tier", "new_tier"}`),
then optionally the final snapshot (`--snapshot-out`).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from activity_tier import (  # noqa: E402
    ActivityTierService,
    Event,
    PrincipalCapability,
    ServiceConfig,
    TierEvent,
    load_config,
)
from activity_tier.state.params import parse_mode  # noqa: E402
from activity_tier.state.store import require_pool_key  # noqa: E402


REPLAY_ADMIN = "replay-admin"

_FIELDS = ("key", "reference", "amount", "liquidity", "timestamp")


class TradeLineError(ValueError):
    pass


def parse_trade_line(line: str, *, lineno: int = 0) -> Dict[str, Any]:
    """Parse and shape-check one JSONL trade record."""
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as exc:
        raise TradeLineError(f"line {lineno}: invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise TradeLineError(f"line {lineno}: expected an object")
    missing = [f for f in _FIELDS if f not in obj]
    if missing:
        raise TradeLineError(f"line {lineno}: missing fields {missing}")
    for f in _FIELDS[1:]:
        v = obj[f]
        if not isinstance(v, int) or isinstance(v, bool):
            raise TradeLineError(f"line {lineno}: {f} must be an integer")
    try:
        require_pool_key(obj["key"])
    except TypeError as exc:
        raise TradeLineError(f"line {lineno}: {exc}") from exc
    return obj


def replay(
    service: ActivityTierService,
    trades: Iterable[Dict[str, Any]],
    *,
    default_mode: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Feed *trades* into *service*; return the tier transitions observed.

    With *default_mode*, pools without parameters get the default curve for that
    mode on first sight (requires the service admin to be `REPLAY_ADMIN`).
    """
    transitions: List[Dict[str, Any]] = []

    def _on_event(ev: TierEvent) -> None:
        if ev.event is Event.TIER_UPDATED:
            transitions.append(
                {"key": ev.key, "timestamp": ev.timestamp, "old_tier": ev.old_tier, "new_tier": ev.new_tier}
            )

    mode = parse_mode(default_mode) if default_mode else None
    service.subscribe(_on_event)
    try:
        for t in trades:
            key = t["key"]
            if mode is not None and service.get_parameters(key) is None:
                service.set_default_parameters(key, mode, credential=REPLAY_ADMIN, now=t["timestamp"])
            service.update(key, t["reference"], t["amount"], t["liquidity"], t["timestamp"])
    finally:
        service.unsubscribe(_on_event)
    return transitions


def _read_trades(path: Path) -> List[Dict[str, Any]]:
    trades: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            trades.append(parse_trade_line(line, lineno=lineno))
    return trades


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Replay JSONL trades through the activity-tier engine.")
    p.add_argument("--trades", required=True, type=Path, help="Path to JSONL trade stream")
    p.add_argument("--config", type=Path, default=None, help="Optional YAML service config")
    p.add_argument("--default-mode", choices=("price", "flow"), default=None,
                   help="Install the default curve for pools without parameters")
    p.add_argument("--snapshot-out", type=Path, default=None, help="Write the final store snapshot (JSON)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_config(args.config) if args.config is not None else ServiceConfig()
        service = ActivityTierService.from_config(cfg, admin=PrincipalCapability(REPLAY_ADMIN))
        trades = _read_trades(args.trades)
        transitions = replay(service, trades, default_mode=args.default_mode)
    except (OSError, TradeLineError, TypeError, ValueError) as exc:
        print(f"replay_trades error: {exc}", file=sys.stderr)
        return 2

    for row in transitions:
        print(json.dumps(row, sort_keys=True))
    if args.snapshot_out is not None:
        args.snapshot_out.write_text(json.dumps(service.snapshot(), sort_keys=True, indent=2) + "\n", encoding="utf-8")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
