"""report_summary.py

Generate annual and dual chat reports from a decrypted chat export.

Prints a human-readable summary and writes the report as JSON plus CSV
tables to an output directory.  ``--plot`` also renders PNG charts.

    python report_summary.py annual --year 2024 --account wxid_abc
    python report_summary.py dual wxid_friend --year 2024
    python report_summary.py years
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from annual_report import get_available_years
from config import ReportConfig, load_config
from report_errors import ReportError
from report_worker import run_report_sync
from sqlite_store import open_store

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = "chat_reports"


def _format_seconds(seconds: int | float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {seconds % 3600 // 60}m"


def _period(year: int) -> str:
    return str(year) if year else "All Time"


def print_annual_report(report: dict[str, Any]) -> None:
    """Print the annual report summary to stdout."""
    print(f"\n{'=' * 60}")
    print(f"Annual Chat Report: {_period(report['year'])}")
    print(f"{'=' * 60}")
    if not report["has_data"]:
        print("No messages found for this period.")
        print(f"{'=' * 60}")
        return

    print(f"Total Messages: {report['total_messages']:,}")
    print(f"Contacts: {report['total_friends']:,}")
    print(f"Statistics Source: {report['stats_source']}")

    if report["core_friends"]:
        print("\nCore Friends:")
        for friend in report["core_friends"]:
            print(f"  {friend['display_name']}: {friend['message_count']:,} messages "
                  f"({friend['sent_count']:,} sent / {friend['received_count']:,} received)")

    peak = report["peak_day"]
    if peak:
        line = f"\nPeak Day: {peak['date']} with {peak['message_count']:,} messages"
        if peak["top_friend"]:
            line += f" (mostly with {peak['top_friend']})"
        print(line)

    streak = report["longest_streak"]
    if streak:
        print(f"Longest Streak: {streak['days']} days with {streak['friend_name']} "
              f"({streak['start_date']} to {streak['end_date']})")

    king = report["midnight_king"]
    if king:
        print(f"Midnight King: {king['display_name']} "
              f"({king['count']:,} messages, {king['percentage']}%)")

    mutual = report["mutual_friend"]
    if mutual:
        print(f"Most Mutual: {mutual['display_name']} (ratio {mutual['ratio']})")

    initiative = report["social_initiative"]
    if initiative:
        print(f"Conversations Started: {initiative['initiated_chats']:,} by you, "
              f"{initiative['received_chats']:,} by others "
              f"({initiative['initiative_rate']}%)")

    speed = report["response_speed"]
    if speed:
        print(f"Average Reply Time: {_format_seconds(speed['avg_response_time'])}, "
              f"fastest: {speed['fastest_friend']} "
              f"({_format_seconds(speed['fastest_time'])})")

    if report["top_phrases"]:
        print("\nTop Phrases:")
        for entry in report["top_phrases"][:10]:
            print(f"  {entry['phrase']}: {entry['count']:,}")
    print(f"{'=' * 60}")


def print_dual_report(report: dict[str, Any]) -> None:
    """Print the dual report summary to stdout."""
    print(f"\n{'=' * 60}")
    print(f"{report['self_name']} & {report['friend_name']}: {_period(report['year'])}")
    print(f"{'=' * 60}")

    first = report["first_chat"]
    if first:
        who = "You" if first["is_sent_by_me"] else report["friend_name"]
        print(f"First Message: {first['create_time_str']} {who}: {first['content']}")

    if not report["has_data"]:
        print("No messages found for this period.")
        print(f"{'=' * 60}")
        return

    stats = report["stats"]
    print(f"Messages: {stats['total_messages']:,}")
    print(f"Characters: {stats['total_words']:,}")
    print(f"Images: {stats['image_count']:,}  Voice: {stats['voice_count']:,}  "
          f"Stickers: {stats['emoji_count']:,}")

    if report["top_phrases"]:
        print("\nTop Phrases:")
        for entry in report["top_phrases"][:10]:
            print(f"  {entry['phrase']}: {entry['count']:,}")
    print(f"{'=' * 60}")


def _write_csv(path: str, fieldnames: list[str], rows: list[dict]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def save_report_files(
    report: dict[str, Any],
    kind: str,
    output_dir: str = DEFAULT_OUTPUT_DIR,
) -> list[str]:
    """Write the report JSON and its CSV tables to output_dir.

    Annual reports get core_friends.csv, monthly_top_friends.csv and
    activity_heatmap.csv; dual reports get top_phrases.csv.

    Returns:
        The paths written, JSON first.
    """
    os.makedirs(output_dir, exist_ok=True)
    suffix = report["year"] or "all"
    if kind == "dual":
        suffix = f"{report['friend_username']}_{suffix}"
    prefix = f"{output_dir}/{kind}_{suffix}"
    written = []

    json_path = f"{prefix}.json"
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, ensure_ascii=False)
    written.append(json_path)

    if kind == "annual":
        path = f"{prefix}_core_friends.csv"
        _write_csv(path, ["username", "display_name", "message_count", "sent_count", "received_count"],
                   report["core_friends"])
        written.append(path)

        path = f"{prefix}_monthly_top_friends.csv"
        _write_csv(path, ["month", "display_name", "message_count"], report["monthly_top_friends"])
        written.append(path)

        path = f"{prefix}_activity_heatmap.csv"
        rows = [
            {"weekday": weekday, **{str(hour): n for hour, n in enumerate(hours)}}
            for weekday, hours in enumerate(report["activity_heatmap"])
        ]
        _write_csv(path, ["weekday", *(str(h) for h in range(24))], rows)
        written.append(path)
    else:
        path = f"{prefix}_top_phrases.csv"
        _write_csv(path, ["phrase", "count"], report["top_phrases"])
        written.append(path)

    return written


def _save_plots(report: dict[str, Any], output_dir: str) -> list[Path]:
    # Imported lazily so the CLI runs without a plotting backend unless asked
    from report_viz import plot_activity_heatmap, plot_monthly_top_friends

    suffix = report["year"] or "all"
    return [
        plot_activity_heatmap(report["activity_heatmap"], Path(output_dir) / f"annual_{suffix}_heatmap.png"),
        plot_monthly_top_friends(report, Path(output_dir) / f"annual_{suffix}_monthly.png"),
    ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate chat history reports")
    parser.add_argument("--db", help="Path to the decrypted chat export (default: $CHAT_REPORT_DB_PATH)")
    parser.add_argument("--account", help="Your own account id (default: $CHAT_REPORT_ACCOUNT)")
    parser.add_argument("--output-dir", "-o", default=DEFAULT_OUTPUT_DIR,
                        help=f"Directory for JSON/CSV output (default: {DEFAULT_OUTPUT_DIR})")
    parser.add_argument("--plot", action="store_true", help="Also render PNG charts (annual only)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    annual = sub.add_parser("annual", help="Annual report across all private contacts")
    annual.add_argument("--year", type=int, default=0, help="Calendar year (0 = all time)")
    dual = sub.add_parser("dual", help="Report on the chat with one contact")
    dual.add_argument("session_id", help="The contact's session id")
    dual.add_argument("--year", type=int, default=0, help="Calendar year (0 = all time)")
    sub.add_parser("years", help="List years that contain messages")
    return parser


def _run_years(config: ReportConfig) -> None:
    with open_store(config.db_path, config.account_id) as store:
        years = get_available_years(store, config.account_id)
    if years:
        print("Years with messages: " + ", ".join(str(y) for y in years))
    else:
        print("No messages found.")


def _run_report(args: argparse.Namespace, config: ReportConfig) -> dict[str, Any]:
    request = {
        "kind": args.command,
        "year": args.year,
        "session_id": getattr(args, "session_id", ""),
        "db_path": str(config.db_path),
        "account_id": config.account_id,
        "batch_size": config.batch_size,
        "progress_interval": config.progress_interval,
    }

    def on_progress(status: str, percent: int) -> None:
        logger.info("[%3d%%] %s", percent, status)

    message = run_report_sync(request, on_progress=on_progress)
    if message["type"] == "cancelled":
        raise ReportError("Report was cancelled")
    if message["type"] == "error":
        raise ReportError(message["error"])
    return message["data"]


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for report generation."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.db, args.account)
        if args.command == "years":
            _run_years(config)
            return
        report = _run_report(args, config)
    except ReportError as e:
        logger.error("%s", e)
        sys.exit(1)

    if args.command == "annual":
        print_annual_report(report)
    else:
        print_dual_report(report)

    written = save_report_files(report, args.command, args.output_dir)
    if args.plot and args.command == "annual" and report["has_data"]:
        written.extend(str(p) for p in _save_plots(report, args.output_dir))

    print(f"\nReport files have been saved to the '{args.output_dir}' directory:")
    for path in written:
        print(f"  {path}")


if __name__ == "__main__":
    main()
