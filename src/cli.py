"""Admin CLI for a running pipeline telemetry server.

Usage:
    uv run python -m src.cli stats
    uv run python -m src.cli inject --latency 25000 --fail
    uv run python -m src.cli resolve-alerts
    uv run python -m src.cli watch
"""

import argparse
import json
import logging
import sys
from collections.abc import Iterator
from typing import Any

import httpx

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_TIMEOUT = 10.0


class DashboardClientError(Exception):
    """The server answered with an error or could not be reached."""


def _raise_for_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        body: dict[str, Any] = resp.json()
    except ValueError:
        raise DashboardClientError(f"HTTP {resp.status_code}: non-JSON response") from None
    if resp.status_code >= 400 or not body.get("success", False):
        raise DashboardClientError(f"HTTP {resp.status_code}: {body.get('error', 'request failed')}")
    return body


def fetch_stats(client: httpx.Client) -> dict[str, Any]:
    """GET /api/dashboard."""
    try:
        resp = client.get("/api/dashboard")
    except httpx.HTTPError as exc:
        raise DashboardClientError(f"Cannot reach server: {exc}") from exc
    return _raise_for_body(resp)


def post_action(client: httpx.Client, action: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    """POST /api/dashboard with an admin action."""
    try:
        resp = client.post("/api/dashboard", json={"action": action, "data": data or {}})
    except httpx.HTTPError as exc:
        raise DashboardClientError(f"Cannot reach server: {exc}") from exc
    return _raise_for_body(resp)


def iter_events(lines: Iterator[str]) -> Iterator[tuple[str, Any]]:
    """Parse Server-Sent Event lines into (event, decoded data) pairs."""
    event = "message"
    data_lines: list[str] = []
    for line in lines:
        if not line:
            if data_lines:
                yield event, json.loads("\n".join(data_lines))
            event = "message"
            data_lines = []
        elif line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:") :].strip())
    if data_lines:
        yield event, json.loads("\n".join(data_lines))


def format_stats(stats: dict[str, Any]) -> str:
    """Human-readable summary of a DashboardStats payload."""
    today = stats["today"]
    lines = [
        f"Requests today: {today['total_requests']}",
        f"Success rate:   {today['success_rate'] * 100:.1f}%",
        f"Avg latency:    {today['avg_latency_ms']:.0f}ms",
        f"Cost:           ${today['total_cost']:.4f}",
        f"Tokens:         {today['total_tokens']:,}",
    ]
    if stats["model_usage"]:
        lines.append("Models:")
        for usage in stats["model_usage"]:
            lines.append(f"  {usage['model']}: {usage['count']} ({usage['percentage']:.0f}%)")
    alerts = stats["alerts"]
    lines.append(f"Active alerts:  {len(alerts)}")
    for alert in alerts:
        lines.append(f"  [{alert['type'].upper()}] {alert['title']}: {alert['message']}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_stats(client: httpx.Client, args: argparse.Namespace) -> int:
    body = fetch_stats(client)
    if args.json:
        print(json.dumps(body, indent=2))
    else:
        print(format_stats(body["stats"]))
    return 0


def cmd_inject(client: httpx.Client, args: argparse.Namespace) -> int:
    data: dict[str, Any] = {"endpoint": args.endpoint, "success": not args.fail}
    if args.latency is not None:
        data["latency"] = args.latency
    if args.tokens is not None:
        data["tokens"] = args.tokens
    if args.model is not None:
        data["model"] = args.model
    if args.error is not None:
        data["error"] = args.error

    body = post_action(client, "inject_test_metric", data)
    metric = body["metric"]
    print(f"{body['message']}: {metric['id']} ({metric['latency_ms']:.0f}ms, {metric['model_used']})")
    return 0


def cmd_resolve_alerts(client: httpx.Client, args: argparse.Namespace) -> int:  # noqa: ARG001
    body = post_action(client, "resolve_all_alerts")
    print(body["message"])
    return 0


def cmd_watch(client: httpx.Client, args: argparse.Namespace) -> int:  # noqa: ARG001
    try:
        with client.stream("GET", "/api/dashboard/stream", timeout=None) as resp:
            if resp.status_code != 200:
                raise DashboardClientError(f"HTTP {resp.status_code} opening stream")
            for event, data in iter_events(resp.iter_lines()):
                if event == "connected":
                    print(f"Connected ({data['session_id']})")
                elif event == "stats":
                    print(format_stats(data))
                    print("-" * 50)
                elif event == "alerts":
                    print(f"{len(data)} active alert(s)")
                elif event == "error":
                    print(f"Server error: {data['message']}", file=sys.stderr)
    except httpx.HTTPError as exc:
        raise DashboardClientError(f"Stream interrupted: {exc}") from exc
    print("Stream closed")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="telemetry", description="Pipeline telemetry admin CLI")
    parser.add_argument("--url", default=DEFAULT_BASE_URL, help="Server base URL")
    sub = parser.add_subparsers(dest="command", required=True)

    stats = sub.add_parser("stats", help="Print the current dashboard summary")
    stats.add_argument("--json", action="store_true", help="Print the raw JSON response")
    stats.set_defaults(func=cmd_stats)

    inject = sub.add_parser("inject", help="Inject a synthetic metric record")
    inject.add_argument("--endpoint", default="/api/test")
    inject.add_argument("--latency", type=float, help="Latency in ms")
    inject.add_argument("--tokens", type=int)
    inject.add_argument("--model")
    inject.add_argument("--fail", action="store_true", help="Record a failed request")
    inject.add_argument("--error", help="Error message for a failed request")
    inject.set_defaults(func=cmd_inject)

    resolve = sub.add_parser("resolve-alerts", help="Resolve every active alert")
    resolve.set_defaults(func=cmd_resolve_alerts)

    watch = sub.add_parser("watch", help="Follow the live dashboard stream")
    watch.set_defaults(func=cmd_watch)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run one subcommand."""
    args = build_parser().parse_args(argv)
    with httpx.Client(base_url=args.url, timeout=DEFAULT_TIMEOUT) as client:
        try:
            return int(args.func(client, args))
        except DashboardClientError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nGoodbye!")
            return 0


if __name__ == "__main__":
    sys.exit(main())
