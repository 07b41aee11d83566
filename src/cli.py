"""Operator CLI for threat replay.

Usage:
    threat-replay            # replay the last 50 fraud events
    threat-replay 120        # replay the last 120 (1-200)

Environment:
    BASE_URL     service URL (default http://localhost:8000)
    ADMIN_TOKEN  bearer token for the admin API
"""

import argparse
import os
import sys
from collections import defaultdict

import httpx

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_LIMIT = 50
MAX_LIMIT = 200
RULE = "=" * 50
WIDE_RULE = "=" * 80

_OUTCOME_SYMBOLS = {
    "blocked_correctly": "[OK]",
    "should_have_blocked": "[MISS]",
    "false_positive": "[FP]",
    "ignored": "[--]",
}


class CLIError(Exception):
    """An error that ends the run with exit code 1."""


def parse_limit(raw: str | None) -> int:
    if raw is None:
        return DEFAULT_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        limit = 0
    if not 1 <= limit <= MAX_LIMIT:
        raise CLIError(f"Invalid limit. Please provide a number between 1 and {MAX_LIMIT}.")
    return limit


def _percent(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


def format_results(data: dict) -> list[str]:
    replay = data["replay"]
    learning = data["learning"]
    total = replay["total_analyzed"]

    lines = [
        "REPLAY ANALYSIS RESULTS",
        RULE,
        f"Total Analyzed:      {total}",
    ]
    for label, key in (
        ("Blocked Correctly:  ", "blocked_correctly"),
        ("Should Have Blocked:", "should_have_blocked"),
        ("False Positives:    ", "false_positives"),
        ("Ignored:            ", "ignored"),
    ):
        lines.append(f"{label} {replay[key]} ({_percent(replay[key], total)}%)")

    lines += [
        "",
        "AUTO-DEFENSE LEARNING RESULTS",
        RULE,
        f"New Rules Created:   {learning['rules_created']}",
        f"Rules Updated:       {learning['rules_updated']}",
        f"Learning Effectiveness: {learning['learning_effectiveness']}%",
        "",
    ]

    if learning["recommendations"]:
        lines += ["RECOMMENDATIONS", RULE]
        lines += [f"{i}. {rec}" for i, rec in enumerate(learning["recommendations"], start=1)]
        lines.append("")

    reports = replay["reports"][:10]
    if reports:
        lines += ["SAMPLE THREAT ANALYSIS (Top 10)", WIDE_RULE]
        for i, report in enumerate(reports, start=1):
            outcome = _OUTCOME_SYMBOLS.get(report["learning_outcome"], "[?]")
            verdict = "BLOCKED" if report["blocked"] else "ALLOWED"
            suggestion = report.get("suggested_block")
            marker = " NEW_RULE" if suggestion else ""
            lines.append(
                f"{i:>2}. {outcome} {verdict}{marker} {report.get('ip_address') or 'unknown'}"
            )
            lines.append(f"    Reason: {report['reason']}")
            if suggestion:
                lines.append(
                    f"    New Rule: {suggestion['action_type'].upper()} - "
                    f"{suggestion['reason']} ({suggestion['confidence']}%)"
                )
            lines.append("")
    return lines


def format_defenses(actions: list[dict], stats: dict) -> list[str]:
    lines: list[str] = []
    if actions:
        by_type: dict[str, list[dict]] = defaultdict(list)
        for action in actions:
            by_type[action["action_type"]].append(action)

        lines += ["ACTIVE DEFENSE ACTIONS", WIDE_RULE]
        for action_type, group in by_type.items():
            lines += ["", f"{action_type.upper()} ({len(group)}):", "-" * 50]
            for i, action in enumerate(group[:5], start=1):
                expires = action.get("expires_at") or "never"
                lines.append(f"  {i}. {action['target_value']} - {action['name']}")
                lines.append(f"     Severity: {action['severity']} | Expires: {expires}")
            if len(group) > 5:
                lines.append(f"  ... and {len(group) - 5} more actions")
        lines.append("")

    lines += [
        "DEFENSE STATISTICS",
        RULE,
        f"Total Actions:       {stats.get('total_actions', 0)}",
        f"Active Actions:      {stats.get('active_actions', 0)}",
        f"Blocked IPs:         {stats.get('blocked_ips', 0)}",
        f"Blocked Devices:     {stats.get('blocked_devices', 0)}",
        f"Active Rules:        {stats.get('active_rules', 0)}",
        f"Recently Triggered:  {stats.get('recently_triggered_rules', 0)}",
    ]
    return lines


def run_replay(client: httpx.Client, limit: int) -> dict:
    try:
        response = client.post("/api/v1/threats/replay", json={"limit": limit})
    except httpx.HTTPError as exc:
        raise CLIError(f"Network Error: {exc}") from exc

    if response.status_code in (401, 403):
        raise CLIError("Authentication failed. Please set ADMIN_TOKEN environment variable.")
    if response.is_error:
        try:
            detail = response.json().get("detail") or response.json().get("message")
        except ValueError:
            detail = response.text
        raise CLIError(f"API Error: {detail}")
    return response.json()


def fetch_defenses(client: httpx.Client) -> tuple[list[dict], dict] | None:
    """Active actions and statistics, or None if either request fails."""
    try:
        actions = client.get("/api/v1/threats/defense-actions")
        stats = client.get("/api/v1/threats/defense-stats")
    except httpx.HTTPError:
        return None
    if actions.is_error or stats.is_error:
        return None
    return actions.json()["actions"], stats.json()


def run(limit: int, base_url: str, token: str, transport: httpx.BaseTransport | None = None) -> int:
    print(f"Analyzing last {limit} fraud logs...")
    with httpx.Client(
        base_url=base_url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=60.0,
        transport=transport,
    ) as client:
        try:
            data = run_replay(client, limit)
        except CLIError as exc:
            print(exc, file=sys.stderr)
            return 1

        print("Threat replay analysis completed!\n")
        print("\n".join(format_results(data)))

        defenses = fetch_defenses(client)
        if defenses is not None:
            print("\n".join(format_defenses(*defenses)))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Replay recent fraud events against defenses")
    parser.add_argument(
        "limit", nargs="?", default=None, help=f"Number of fraud events (1-{MAX_LIMIT})"
    )
    args = parser.parse_args(argv)

    try:
        limit = parse_limit(args.limit)
    except CLIError as exc:
        print(exc, file=sys.stderr)
        sys.exit(1)

    base_url = os.getenv("BASE_URL", DEFAULT_BASE_URL)
    token = os.getenv("ADMIN_TOKEN", "")
    sys.exit(run(limit, base_url, token))


if __name__ == "__main__":
    main()
