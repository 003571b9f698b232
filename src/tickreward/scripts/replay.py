#!/usr/bin/env python3
"""Replay recorded event batches through a reward session.

Each line of the input JSONL file is one tick: a JSON array of event
objects ({"timestamp": .., "value": ..} or {"t": .., "v": ..}).

Usage:
    python -m tickreward.scripts.replay --events ticks.jsonl
    python -m tickreward.scripts.replay --events ticks.jsonl --profile fast_adapt \
        --set window_size=50 --diagnostics diagnostics.jsonl
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Sequence

import yaml  # type: ignore[import-untyped]

from tickreward.config import RewardConfig, RewardSettings
from tickreward.contracts import EventRecord
from tickreward.errors import SchemaViolation
from tickreward.orchestrator import RewardSession
from tickreward.telemetry import DiagnosticHub, FileOutput, LoggingOutput, configure_logging

_logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay event batches through the reward core")
    parser.add_argument("--events", type=Path, required=True, help="JSONL file, one tick per line")
    parser.add_argument(
        "--profile",
        type=str,
        default=None,
        help="Built-in config profile (default: TICKREWARD_PROFILE or 'default')",
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (overrides --profile)")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config knob (repeatable), e.g. --set discount_rate=0.1",
    )
    parser.add_argument(
        "--diagnostics",
        type=Path,
        default=None,
        help="Write diagnostic records to this JSONL file",
    )
    parser.add_argument("--quiet", action="store_true", help="Only print the final summary")
    return parser


def parse_overrides(pairs: Sequence[str]) -> dict[str, Any]:
    """Parse KEY=VALUE strings, typing values with YAML scalar rules."""
    overrides: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Override must be KEY=VALUE, got {pair!r}")
        overrides[key.strip()] = yaml.safe_load(value)
    return overrides


def load_config(args: argparse.Namespace, settings: RewardSettings) -> RewardConfig:
    overrides = parse_overrides(args.overrides)
    if args.config is not None:
        return RewardConfig.from_yaml(args.config, overrides or None)
    return RewardConfig.from_profile(args.profile or settings.profile, overrides or None)


def parse_tick(line: str) -> list[EventRecord]:
    """Decode one JSONL line into event records.

    Raises:
        ValueError: If the line is not a JSON array of event objects.
    """
    payload = json.loads(line)
    if not isinstance(payload, list):
        raise ValueError(f"tick must be a JSON array, got {type(payload).__name__}")
    try:
        return [EventRecord.from_mapping(item) for item in payload]
    except (KeyError, TypeError) as e:
        raise ValueError(f"malformed event object: {e}") from e


def replay(path: Path, session: RewardSession, quiet: bool = False) -> dict[str, Any]:
    """Run every tick in `path` through `session`; return summary statistics."""
    ticks = 0
    failures = 0
    values: list[float] = []

    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            ticks += 1
            try:
                reward = session.compute_reward(parse_tick(line))
            except (SchemaViolation, ValueError) as e:
                failures += 1
                print(f"line {line_no}: FAILED {e}")
                continue

            values.append(reward.value)
            if not quiet:
                record = session.last_diagnostic
                warnings = ",".join(w.value for w in record.warnings) if record else ""
                print(
                    f"line {line_no}: value={reward.value:+.6f} raw={reward.raw:+.6f}"
                    + (f" warnings={warnings}" if warnings else "")
                )

    state = session.state
    return {
        "ticks": ticks,
        "failures": failures,
        "mean_value": sum(values) / len(values) if values else 0.0,
        "running_mean": state.running_mean,
        "running_variance": state.running_variance,
        "config_fingerprint": session.config_fingerprint,
    }


def report_lost_diagnostics(hub: DiagnosticHub) -> int:
    """Log and return the number of diagnostic events that never reached a backend."""
    lost = hub.dropped_events
    if lost:
        _logger.warning("Diagnostic hub dropped %d events", lost)
    for name, stats in hub.get_backend_stats().items():
        missed = int(stats["dropped_events"] + stats["failed_events"])
        if missed:
            _logger.warning("Backend %s lost %d diagnostic events", name, missed)
        lost += missed
    return lost


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = RewardSettings()
    configure_logging(settings.log_level)

    try:
        config = load_config(args, settings)
    except (ValueError, OSError, yaml.YAMLError) as e:
        parser.error(f"invalid configuration: {e}")

    hub = DiagnosticHub()
    hub.add_backend(LoggingOutput(min_severity="warning"))
    diagnostics_path = args.diagnostics or settings.diagnostics_path
    if diagnostics_path:
        hub.add_backend(FileOutput(diagnostics_path))

    _logger.info("Replaying %s\n%s", args.events, config.summary())
    session = RewardSession(config, hub=hub)
    try:
        summary = replay(args.events, session, quiet=args.quiet)
    finally:
        hub.close()
    report_lost_diagnostics(hub)

    print(
        f"ticks={summary['ticks']} failures={summary['failures']} "
        f"mean_value={summary['mean_value']:+.6f} "
        f"running_mean={summary['running_mean']:+.6f} "
        f"running_variance={summary['running_variance']:.6f} "
        f"fingerprint={summary['config_fingerprint']}"
    )
    return 1 if summary["failures"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
