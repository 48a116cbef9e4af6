"""blebridge command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import requests

from blebridge.config import BridgeSettings, build_bridge, configure_logging, normalize_log_level
from blebridge.reconnect import check_health

try:  # pragma: no cover - optional rich rendering
	from rich.console import Console
	from rich.table import Table
except Exception:  # pragma: no cover
	Console = None  # type: ignore
	Table = None  # type: ignore

DEFAULT_URL = "http://127.0.0.1:8080"
LOG_COLUMNS = ("id", "timestamp", "kind", "size", "payload")


def _ws_url(http_url: str) -> str:
	if http_url.startswith("https://"):
		return "wss://" + http_url[len("https://"):]
	if http_url.startswith("http://"):
		return "ws://" + http_url[len("http://"):]
	return http_url


def _get(args: argparse.Namespace, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
	response = requests.get(
		args.url.rstrip("/") + path,
		params={key: value for key, value in (params or {}).items() if value is not None},
		timeout=args.timeout,
	)
	if response.status_code == 400:
		raise ValueError(response.json().get("detail", "bad request"))
	response.raise_for_status()
	return response.json()


def _dump_json(data: Any) -> None:
	json.dump(data, sys.stdout, indent=2)
	sys.stdout.write("\n")


def _print_entries(entries: List[Dict[str, Any]], title: str) -> None:
	if Console and Table:
		table = Table(title=title, show_lines=False)
		for column in LOG_COLUMNS:
			table.add_column(column.upper())
		for entry in entries:
			table.add_row(*(str(entry.get(column, "")) for column in LOG_COLUMNS))
		Console().print(table)
	else:
		for entry in entries:
			sys.stdout.write("\t".join(str(entry.get(column, "")) for column in LOG_COLUMNS) + "\n")


def _cmd_serve(args: argparse.Namespace) -> int:
	import uvicorn

	from blebridge.api import create_app

	settings = BridgeSettings.from_env().override(
		host=args.host,
		port=args.port,
		log_level=normalize_log_level(args.log_level) if args.log_level else None,
		adapter=args.adapter,
		cooldown_base=args.cooldown_base,
		mock=True if args.mock else None,
	)
	configure_logging(settings.log_level)
	app = create_app(build_bridge(settings), settings=settings)
	uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
	return 0


def _cmd_logs(args: argparse.Namespace) -> int:
	data = _get(args, "/logs", {"since": args.since, "limit": args.limit, "client_id": args.client_id})
	if args.json:
		_dump_json(data)
	else:
		_print_entries(data.get("entries", []), f"Bridge log (since {args.since})")
	return 0


def _cmd_search(args: argparse.Namespace) -> int:
	data = _get(args, "/logs/search", {"pattern": args.pattern, "limit": args.limit})
	if args.json:
		_dump_json(data)
	else:
		_print_entries(data.get("entries", []), f"Matches for {args.pattern!r}")
	return 0


def _cmd_metrics(args: argparse.Namespace) -> int:
	data = _get(args, "/metrics")
	if args.json:
		_dump_json(data)
		return 0
	metrics = data.get("metrics", {})
	health = data.get("health", {})
	if Console and Table:
		console = Console()
		table = Table(title="Bridge metrics")
		table.add_column("METRIC")
		table.add_column("VALUE")
		for key, value in metrics.items():
			table.add_row(key, json.dumps(value) if isinstance(value, (dict, list)) else str(value))
		console.print(table)
		status = "[green]healthy[/green]" if health.get("healthy") else "[red]unhealthy[/red]"
		console.print(f"Health: {status}")
		for issue in health.get("issues", []):
			console.print(f"  - {issue}")
		for tip in health.get("recommendations", []):
			console.print(f"  * {tip}")
	else:
		for key, value in metrics.items():
			sys.stdout.write(f"{key}\t{value}\n")
		sys.stdout.write(f"healthy\t{health.get('healthy')}\n")
	return 0


def _cmd_health(args: argparse.Namespace) -> int:
	frame = asyncio.run(check_health(_ws_url(args.url), open_timeout=args.timeout))
	if args.json:
		_dump_json(frame)
	else:
		state = "free" if frame.get("free") else "in use"
		sys.stdout.write(f"{frame.get('status')} ({state}) at {frame.get('timestamp')}\n")
	return 0 if frame.get("status") == "ok" else 1


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="WebSocket-to-BLE bridge")
	sub = parser.add_subparsers(dest="command", required=True)

	serve = sub.add_parser("serve", help="Run the bridge server")
	serve.add_argument("--host", help="Bind address (default BLEBRIDGE_HOST or 127.0.0.1)")
	serve.add_argument("--port", type=int, help="Bind port (default BLEBRIDGE_PORT or 8080)")
	serve.add_argument("--adapter", help="BLE adapter identifier")
	serve.add_argument("--cooldown-base", type=float, help="Base cooldown seconds after a session")
	serve.add_argument("--log-level", help="DEBUG, INFO, WARN or ERROR")
	serve.add_argument("--mock", action="store_true", help="Use the simulated transport")
	serve.set_defaults(handler=_cmd_serve)

	def _client(name: str, help_text: str) -> argparse.ArgumentParser:
		cmd = sub.add_parser(name, help=help_text)
		cmd.add_argument("--url", default=DEFAULT_URL, help="Bridge base URL")
		cmd.add_argument("--timeout", type=float, default=10.0, help="Request timeout seconds")
		cmd.add_argument("--json", action="store_true", help="Output JSON")
		return cmd

	logs = _client("logs", "Show recent bridge log entries")
	logs.add_argument("--since", default="30s", help="'last', a duration (30s, 5m, 1h) or an ISO timestamp")
	logs.add_argument("--limit", type=int, default=100, help="Maximum entries to return")
	logs.add_argument("--client-id", help="Cursor owner used with --since last")
	logs.set_defaults(handler=_cmd_logs)

	search = _client("search", "Search bridge log entries")
	search.add_argument("pattern", help="Regular expression or literal text")
	search.add_argument("--limit", type=int, default=100, help="Maximum entries to return")
	search.set_defaults(handler=_cmd_search)

	metrics = _client("metrics", "Show connection metrics and health")
	metrics.set_defaults(handler=_cmd_metrics)

	health = _client("health", "Send the WebSocket health probe")
	health.set_defaults(handler=_cmd_health)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	try:
		return args.handler(args)
	except ValueError as exc:
		parser.error(str(exc))
	except requests.RequestException as exc:
		sys.stderr.write(f"request failed: {exc}\n")
		return 1


if __name__ == "__main__":
	sys.exit(main())
