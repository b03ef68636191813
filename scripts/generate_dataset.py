"""
Engagement Dataset Generator
Writes a reproducible synthetic dataset as JSON lines for local runs:

    python scripts/generate_dataset.py --users 1000 --seed 42

Outputs (data/generated/):
    dimensions.jsonl  - dimension change feed
    stream.jsonl      - session records and events in delivery order
    sessions.jsonl, events.jsonl - the distinct source rows
"""

import argparse
import json
from pathlib import Path

import polars as pl

from engagement_rollups.data.generators import EngagementDataGenerator, to_json_rows
from engagement_rollups.quality.reconciliation import recompute_session_rollups, recompute_user_rollups

OUTPUT_DIR = Path(__file__).parent.parent / "data" / "generated"


def write_jsonl(path: Path, rows) -> int:
    with open(path, "w", encoding="utf-8") as fh:
        for row in rows:
            fh.write(json.dumps(row) + "\n")
    return len(rows)


def main():
    parser = argparse.ArgumentParser(description="Synthetic engagement dataset")
    parser.add_argument("--users", type=int, default=1000, help="Number of users")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--duplicate-rate", type=float, default=0.05, help="Share of redelivered events")
    parser.add_argument("--output", type=Path, default=OUTPUT_DIR, help="Output directory")
    args = parser.parse_args()

    print("=" * 60)
    print("📊 Engagement Dataset Generator")
    print("=" * 60 + "\n")

    dataset = EngagementDataGenerator(seed=args.seed).generate(
        users=args.users,
        duplicate_rate=args.duplicate_rate,
    )

    args.output.mkdir(parents=True, exist_ok=True)
    written = {
        "dimensions.jsonl": write_jsonl(args.output / "dimensions.jsonl", to_json_rows(dataset.dimensions)),
        "sessions.jsonl": write_jsonl(args.output / "sessions.jsonl", to_json_rows(dataset.sessions)),
        "events.jsonl": write_jsonl(args.output / "events.jsonl", to_json_rows(dataset.events)),
        "stream.jsonl": write_jsonl(args.output / "stream.jsonl", to_json_rows(list(dataset.stream()))),
    }

    # Batch-computed expectation for reconciling a run against
    events, sessions, dimensions = dataset.frames()
    expected = recompute_user_rollups(recompute_session_rollups(events, sessions, dimensions))
    expected.write_csv(args.output / "expected_user_rollups.csv")
    written["expected_user_rollups.csv"] = expected.height

    print(f"📁 Output: {args.output}\n")
    for name, rows in written.items():
        print(f"   📄 {name}: {rows:,} rows")

    paid = dataset.frames()[2].filter(pl.col("account_type") == "paid").height
    print(f"\n✅ {len(dataset.dimensions):,} users ({paid:,} paid), {len(dataset.sessions):,} sessions")


if __name__ == "__main__":
    main()
