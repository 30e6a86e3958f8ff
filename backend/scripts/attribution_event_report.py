#!/usr/bin/env python3
import argparse
import json
import re
import sys
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

EVENT_PATTERN = re.compile(r"attribution_event=(\{.*\})")


def _iter_lines(paths: List[str]) -> Iterable[str]:
    if not paths:
        for line in sys.stdin:
            yield line.rstrip("\n")
        return
    for path in paths:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                yield line.rstrip("\n")


def _parse_payload(line: str) -> Optional[Dict[str, Any]]:
    match = EVENT_PATTERN.search(line)
    if not match:
        return None
    try:
        value = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def _safe_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def build_report(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    event_counts: Counter[str] = Counter()
    service_type_counts: Counter[str] = Counter()
    refusals_by_provider: Counter[str] = Counter()
    expiry_reasons: Counter[str] = Counter()
    blacklisted: set[str] = set()
    max_broadcast: Dict[str, int] = defaultdict(int)
    eligible_sum = 0
    broadcasts = 0

    for row in rows:
        event = str(row.get("event", "unknown"))
        event_counts[event] += 1
        attribution_id = str(row.get("attribution_id", ""))
        if attribution_id:
            max_broadcast[attribution_id] = max(max_broadcast[attribution_id], _safe_int(row.get("broadcast_count")))

        if event == "started":
            service_type_counts[str(row.get("service_type", "unknown"))] += 1
        elif event == "broadcast":
            broadcasts += 1
            eligible_sum += _safe_int(row.get("eligible_count"))
        elif event == "refused":
            provider_id = str(row.get("provider_id", "unknown"))
            refusals_by_provider[provider_id] += 1
            if row.get("provider_blacklisted"):
                blacklisted.add(provider_id)
        elif event == "expired":
            expiry_reasons[str(row.get("reason", "unknown"))] += 1

    attributions = len(max_broadcast)
    started = event_counts.get("started", 0)
    accepted = event_counts.get("accepted", 0)
    rebroadcast = sum(1 for count in max_broadcast.values() if count > 1)

    return {
        "total_events": len(rows),
        "event_counts": dict(event_counts),
        "service_type_counts": dict(service_type_counts),
        "attributions_seen": attributions,
        "acceptance_rate": round(accepted / started, 4) if started else 0.0,
        "rebroadcast_rate": round(rebroadcast / attributions, 4) if attributions else 0.0,
        "avg_eligible_per_broadcast": round(eligible_sum / broadcasts, 4) if broadcasts else 0.0,
        "expiry_reasons": dict(expiry_reasons),
        "refusals_top10": dict(refusals_by_provider.most_common(10)),
        "blacklisted_providers": sorted(blacklisted),
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Total events: {report['total_events']}")
    print(f"Attributions seen: {report['attributions_seen']}")
    print(f"Acceptance rate: {report['acceptance_rate']:.2%}")
    print(f"Rebroadcast rate: {report['rebroadcast_rate']:.2%}")
    print(f"Avg eligible providers per broadcast: {report['avg_eligible_per_broadcast']:.2f}")
    print("Event counts:")
    for event, count in sorted(report["event_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {event}: {count}")
    if report["expiry_reasons"]:
        print("Expiry reasons:")
        for reason, count in report["expiry_reasons"].items():
            print(f"  - {reason}: {count}")
    print("Top refusing providers:")
    for provider_id, count in report["refusals_top10"].items():
        print(f"  - {provider_id}: {count}")
    if report["blacklisted_providers"]:
        print(f"Blacklisted: {', '.join(report['blacklisted_providers'])}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize attribution_event logs.")
    parser.add_argument("log_files", nargs="*", help="Log files to parse. If omitted, read stdin.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    rows: List[Dict[str, Any]] = []
    for line in _iter_lines(args.log_files):
        payload = _parse_payload(line)
        if payload:
            rows.append(payload)

    report = build_report(rows)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
