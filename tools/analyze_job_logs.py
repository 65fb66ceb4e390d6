import argparse
import json
import re
from collections import Counter


LAG_RE = re.compile(r"'lagMs'\s*:\s*(\d+)")
OUTCOME_RE = re.compile(r"'outcome'\s*:\s*'([^']+)'")
COUNT_RE = re.compile(r"'count'\s*:\s*(\d+)")
HALT_RE = re.compile(r"job (\S+) halted: (.+?)(?: continuation=|$)")


def percentile(values: list[int], p: float) -> int:
    if not values:
        return 0
    ordered = sorted(values)
    idx = int((len(ordered) - 1) * p)
    return ordered[idx]


def summarize(lines: list[str]) -> dict:
    lags: list[int] = []
    outcomes: Counter[str] = Counter()
    halts: Counter[str] = Counter()
    processed = 0
    delivered = 0

    for line in lines:
        halt_match = HALT_RE.search(line)
        if halt_match:
            halts[halt_match.group(2).strip()] += 1
            continue
        if "process_bulk_job" not in line or "{'success':" not in line:
            continue
        processed += 1
        lag_match = LAG_RE.search(line)
        if lag_match:
            lags.append(int(lag_match.group(1)))
        outcome_match = OUTCOME_RE.search(line)
        if outcome_match:
            outcomes[outcome_match.group(1)] += 1
        count_match = COUNT_RE.search(line)
        if count_match:
            delivered += int(count_match.group(1))

    return {
        "processedRuns": processed,
        "delivered": delivered,
        "lagMs": {
            "count": len(lags),
            "p50": percentile(lags, 0.50),
            "p95": percentile(lags, 0.95),
            "max": max(lags) if lags else 0,
        },
        "outcomes": dict(outcomes),
        "halts": dict(halts),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Summarize bulk job worker runs: outcomes, lag, rate-limit halts")
    parser.add_argument("logfile", help="Path to worker log file")
    args = parser.parse_args()

    with open(args.logfile, "r", encoding="utf-8", errors="ignore") as fh:
        lines = fh.readlines()

    print(json.dumps(summarize(lines), indent=2))


if __name__ == "__main__":
    main()
