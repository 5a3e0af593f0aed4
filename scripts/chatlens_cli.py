#!/usr/bin/env python3
"""
ChatLens CLI utilities.

Usage:
    python scripts/chatlens_cli.py diagnostics
    python scripts/chatlens_cli.py sessions --user user_1
    python scripts/chatlens_cli.py dashboard --range 7d
    python scripts/chatlens_cli.py queue
    python scripts/chatlens_cli.py drain
    python scripts/chatlens_cli.py seed --sessions 36
    python scripts/chatlens_cli.py serve --port 8000
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime

from chatlens_backend.config import get_settings, reset_settings_cache
from chatlens_backend.services.chat_store import ChatStore
from chatlens_backend.services.dashboard import DashboardService
from chatlens_backend.services.demo_data import seed_demo_data
from chatlens_backend.telemetry.client import build_telemetry
from chatlens_backend.telemetry.dispatcher import HealthcheckProbe
from chatlens_backend.telemetry.queue import DurableEventQueue


def human_ts(value: datetime | None) -> str:
    if not value:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")


def load_settings():
    reset_settings_cache()
    settings = get_settings()
    settings.ensure_directories()
    return settings


def cmd_diagnostics(_: argparse.Namespace) -> None:
    settings = load_settings()
    print("Configuration")
    print("-" * 40)
    print(f"Workspace: {settings.workspace_root}")
    print(f"Database: {settings.database_path}")
    print(f"Outbox: {settings.outbox_path}")
    print(f"LLM Provider: {settings.llm_provider}")
    if settings.llm_provider == "ollama":
        print(f"Ollama: {settings.ollama_model} @ {settings.ollama_base_url}")
    print(f"Telemetry endpoint: {settings.telemetry_base_url}")
    print(
        f"Retry policy: {settings.queue_initial_retry_delay_ms}ms base, "
        f"{settings.queue_max_retry_attempts} attempts, drain every {settings.queue_drain_interval_s:g}s"
    )
    queue = DurableEventQueue(settings.outbox_path)
    print(f"Pending events: {queue.count()}")


def cmd_sessions(args: argparse.Namespace) -> None:
    store = ChatStore(load_settings())
    sessions = store.list_sessions(args.user)
    if not sessions:
        print(f"No sessions for {args.user}.")
        return
    print(f"{'Session':<12} {'Title':<40} {'Msgs':>4} {'Last message'}")
    print("-" * 80)
    for session in sessions:
        print(
            f"{session.session_id[:8]:<12} "
            f"{session.title[:39]:<40} "
            f"{session.message_count:>4} "
            f"{human_ts(session.last_message_at)}"
        )


def cmd_dashboard(args: argparse.Namespace) -> None:
    service = DashboardService(ChatStore(load_settings()))
    metrics = service.metrics(user_id=args.user, range_name=args.range)
    volume, latency, size, trends = metrics.volume, metrics.latency, metrics.size, metrics.trends
    print(f"Dashboard {human_ts(metrics.window.start)} -> {human_ts(metrics.window.end)}")
    print("-" * 50)
    print(f"Chats: {volume.total_chats}   Messages: {volume.total_messages} ({trends.message_delta:+.1f}%)")
    print(f"Suggestion CTR: {volume.suggestion_click_rate:.1f}% "
          f"({volume.total_suggestion_clicks}/{volume.total_suggestion_impressions})")
    print(f"TTFT avg/p95: {latency.avg_ttft:.0f} / {latency.p95_ttft:.0f} ms ({trends.ttft_delta:+.1f}%)")
    print(f"Total avg/p95: {latency.avg_total_time:.0f} / {latency.p95_total_time:.0f} ms "
          f"({trends.total_time_delta:+.1f}%)")
    print(f"Words/response: {size.avg_word_count:.1f} ({trends.word_count_delta:+.1f}%)   "
          f"Tokens: {size.avg_token_count:.1f}   Chars: {size.avg_chars_per_response:.0f}")
    if metrics.slowest_turns:
        print("\nSlowest turns")
        for turn in metrics.slowest_turns[:5]:
            print(f"  {turn.total_time:>6.0f} ms  {turn.session_id[:8]}  {turn.content[:50]}")
    if metrics.top_rated_suggestions:
        print("\nTop rated suggestions")
        for item in metrics.top_rated_suggestions[:5]:
            print(f"  {item.avg_rating:.2f} ({item.rating_count})  {item.text}")
    if metrics.web_vitals:
        lcp = metrics.web_vitals.lcp
        print(f"\nLCP avg/p75/p95: {lcp.avg:.0f} / {lcp.p75:.0f} / {lcp.p95:.0f} ms "
              f"(good {lcp.good}, needs improvement {lcp.needs_improvement}, poor {lcp.poor})")


def cmd_queue(_: argparse.Namespace) -> None:
    queue = DurableEventQueue(load_settings().outbox_path)
    events = queue.list_all()
    if not events:
        print("Outbox is empty.")
        return
    print(f"{'Event':<16} {'Method':<6} {'Retries':>7} {'Next retry':<17} {'URL'}")
    print("-" * 90)
    for event in events:
        print(
            f"{event.event_id[:15]:<16} "
            f"{event.method:<6} "
            f"{event.retry_count:>7} "
            f"{human_ts(event.next_retry_at):<17} "
            f"{event.url}"
        )


async def _drain_once() -> None:
    settings = load_settings()
    probe = HealthcheckProbe(f"{settings.telemetry_base_url.rstrip('/')}/api/healthz")
    telemetry = build_telemetry(settings, probe=probe)
    try:
        if not await probe.refresh():
            print(f"Telemetry endpoint {probe.url} unreachable; nothing sent.")
            return
        report = await telemetry.dispatcher.drain()
        print(
            f"Delivered {report.delivered}, retried {report.retried}, dropped {report.dropped}; "
            f"{telemetry.queue.count()} still pending."
        )
    finally:
        await telemetry.dispatcher.stop()
        await probe.aclose()


def cmd_drain(_: argparse.Namespace) -> None:
    asyncio.run(_drain_once())


def cmd_seed(args: argparse.Namespace) -> None:
    store = ChatStore(load_settings())
    summary = seed_demo_data(store, sessions=args.sessions, days=args.days, seed=args.seed)
    print(
        f"Seeded {summary.sessions} sessions / {summary.messages} messages for {summary.users} users; "
        f"{summary.clicks} clicks, {summary.ratings} ratings."
    )


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from chatlens_backend.app import create_app

    uvicorn.run(create_app(load_settings()), host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ChatLens utility CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("diagnostics", help="Show configuration and outbox size")
    sessions_parser = sub.add_parser("sessions", help="List a user's chat sessions")
    sessions_parser.add_argument("--user", required=True, help="User ID")
    dashboard_parser = sub.add_parser("dashboard", help="Print dashboard aggregates")
    dashboard_parser.add_argument("--range", default="7d", choices=["24h", "7d", "30d", "all"])
    dashboard_parser.add_argument("--user", help="Restrict to one user")
    sub.add_parser("queue", help="List events waiting in the outbox")
    sub.add_parser("drain", help="Retry due outbox events once")
    seed_parser = sub.add_parser("seed", help="Insert demo conversations and interactions")
    seed_parser.add_argument("--sessions", type=int, default=36)
    seed_parser.add_argument("--days", type=int, default=30)
    seed_parser.add_argument("--seed", type=int, help="Random seed for reproducible data")
    serve_parser = sub.add_parser("serve", help="Run the API with uvicorn")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    return parser


COMMANDS = {
    "diagnostics": cmd_diagnostics,
    "sessions": cmd_sessions,
    "dashboard": cmd_dashboard,
    "queue": cmd_queue,
    "drain": cmd_drain,
    "seed": cmd_seed,
    "serve": cmd_serve,
}


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    COMMANDS[args.command](args)


if __name__ == "__main__":
    main()
