from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from journey.app.runner import build_dashboard, compute_funnel, realtime_snapshot, run_replay
from journey.features.reporting.types import DEFAULT_TIME_RANGE, TIME_RANGES

DEFAULT_CONFIG = "config/engine.yaml"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="journey")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_replay = sub.add_parser("replay", help="Replay a JSONL file of tracking envelopes")
    p_replay.add_argument("input", help="JSONL file, one {type, data} envelope per line")
    p_replay.add_argument("--config", default=DEFAULT_CONFIG)
    p_replay.add_argument("--start", default=None, help="ISO-8601 start of the simulated clock")

    for name, help_text in (
        ("dashboard", "Print the dashboard payload"),
        ("funnel", "Print funnel step counts"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--config", default=DEFAULT_CONFIG)
        p.add_argument("--time-range", default=DEFAULT_TIME_RANGE, choices=sorted(TIME_RANGES))

    p_rt = sub.add_parser("realtime", help="Print the real-time snapshot")
    p_rt.add_argument("--config", default=DEFAULT_CONFIG)

    args = parser.parse_args(argv)

    if args.cmd == "replay":
        result = run_replay(args.config, args.input, start=args.start)
        # minimal stdout signal
        print(
            f"dispatched={result.dispatched} rejected={result.rejected} "
            f"duckdb={result.duckdb_path}"
        )
        return 0 if result.rejected == 0 else 2

    if args.cmd == "dashboard":
        _print_json(build_dashboard(args.config, args.time_range))
        return 0

    if args.cmd == "funnel":
        _print_json(compute_funnel(args.config, args.time_range))
        return 0

    if args.cmd == "realtime":
        _print_json(realtime_snapshot(args.config))
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
