"""Command line interface for redep.

Server host:
    redep init server        Interactive server setup
    redep listen             Run the server in the foreground
    redep start / stop / status

Workstation:
    redep init client        Add a named server profile
    redep deploy prod        Trigger the deployment on "prod"
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Callable, Optional

from dotenv import find_dotenv, load_dotenv

from . import __version__
from .client import DEFAULT_TIMEOUT, trigger
from .config import (
    CONFIG_SCHEMA,
    ConfigStore,
    ServerProfile,
    get_client_config,
    get_config_store,
    get_detailed_config,
    get_server_config,
    load_server_settings,
    resolve_deploy_target,
    save_server_profile,
    sort_config_entries,
)
from .exceptions import ConfigurationError, RedepError
from .remote.server import serve_settings
from .shared.crypto import generate_secret_key
from .shared.protocol import DeploymentResult
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def _error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def _prompt(message: str, default: str | None = None, validate: Callable[[str], str | None] | None = None) -> str:
    """Ask until `validate` returns no complaint."""
    suffix = f" ({default})" if default else ""
    while True:
        try:
            answer = input(f"{message}{suffix}: ").strip()
        except EOFError:
            raise RedepError("Initialization aborted")
        if not answer and default is not None:
            answer = default
        complaint = validate(answer) if validate else None
        if complaint is None:
            return answer
        print(complaint)


def _required(label: str) -> Callable[[str], str | None]:
    return lambda value: None if value else f"{label} is required"


def _validate_port(value: str) -> str | None:
    return None if value.isdigit() and 0 < int(value) < 65536 else "Port must be a number"


def _print_table(headers: list[str], rows: list[list[Any]]) -> None:
    cells = [[str(h) for h in headers]] + [["-" if c is None else str(c) for c in row] for row in rows]
    widths = [max(len(row[i]) for row in cells) for i in range(len(headers))]
    for index, row in enumerate(cells):
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())
        if index == 0:
            print("  ".join("-" * width for width in widths))


def _parse_value(key: str, raw: str) -> Any:
    """Convert `config set` input to the type the schema default implies."""
    schema = CONFIG_SCHEMA.get(key)
    if schema is None or schema.default is None or isinstance(schema.default, str):
        return raw
    if isinstance(schema.default, int):
        try:
            return int(raw)
        except ValueError:
            raise RedepError(f"'{key}' must be an integer")
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise RedepError(f"'{key}' must be valid JSON")


# ============================================================================
# Commands
# ============================================================================

def cmd_init(args: argparse.Namespace, store: ConfigStore) -> int:
    if args.type == "client":
        name = _prompt("Enter Server Name", default="prod", validate=_required("Server Name"))
        url = _prompt("Enter Server URL (Host)", validate=_required("Server URL"))
        secret = _prompt("Enter Secret Key", validate=_required("Secret Key"))
        save_server_profile(store, ServerProfile(name=name, url=url, secret=secret))
        print(f"Client configuration for '{name}' saved successfully.")
        return 0

    port = _prompt("Enter Server Port", default="3000", validate=_validate_port)
    working_dir = _prompt("Enter Working Directory", validate=_required("Working Directory"))
    command = _prompt("Enter Deployment Command")
    secret = _prompt("Enter Secret Key (Leave empty to generate)")
    if not secret:
        secret = generate_secret_key()
        print(f"Generated Secret Key: {secret}")

    store.set("server_port", int(port))
    store.set("working_dir", working_dir)
    if command:
        store.set("deployment_command", command)
    store.set("secret_key", secret)
    print("Server configuration saved successfully.")
    return 0


def cmd_generate(args: argparse.Namespace, store: ConfigStore) -> int:
    if args.what == "secret_key":
        secret = generate_secret_key()
        store.set("secret_key", secret)
        print(f"Secret Key generated and saved: {secret}")
    else:
        cwd = os.getcwd()
        store.set("working_dir", cwd)
        print(f"Working Directory set to: {cwd}")
    return 0


def cmd_config(args: argparse.Namespace, store: ConfigStore) -> int:
    if args.action == "set":
        store.set(args.key, _parse_value(args.key, args.value))
        print(f"Configuration updated: {args.key} = {args.value}")
    elif args.action == "get":
        value = store.get(args.key)
        print(f"{args.key}: {json.dumps(value) if isinstance(value, (dict, list)) else value}")
    elif args.action == "clear":
        store.clear()
        print("All configurations have been cleared.")
    else:
        _list_config(args, store)
    return 0


def _list_config(args: argparse.Namespace, store: ConfigStore) -> None:
    if args.type == "client":
        profiles = get_client_config(store)
        if args.json:
            print(json.dumps(profiles, indent=2))
            return
        if not profiles:
            print('No client servers configured. Use "redep init client" to add servers.')
            return
        print("Client Server Configurations:")
        _print_table(
            ["Server", "Host", "Secret Key", "Security", "Description"],
            [[p["server"], p["host"], p["secret_key"], p["security"], p["description"]] for p in profiles],
        )
        return

    if args.type == "server":
        entries, title = get_server_config(store), "Server Configuration:"
    else:
        entries, title = get_detailed_config(store), "Current Configuration:"
    entries = sort_config_entries(entries, args.sort)

    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2, default=str))
        return

    print(title)
    _print_table(
        ["Key", "Value", "Default", "Source", "Updated", "Security"],
        [
            [
                e.key,
                json.dumps(e.display_value()) if isinstance(e.value, (dict, list)) else e.display_value(),
                json.dumps(e.default) if isinstance(e.default, (dict, list)) else e.default,
                e.source,
                e.updated_at,
                e.security,
            ]
            for e in entries
        ],
    )

    if args.type is None:
        modified = sum(1 for e in entries if e.is_modified)
        env = sum(1 for e in entries if e.source == "Environment")
        critical = sum(1 for e in entries if e.security in ("critical", "high"))
        print()
        print(f"Total: {len(entries)} | Modified: {modified} | Env Overrides: {env} | Security Critical: {critical}")


def cmd_start(args: argparse.Namespace, store: ConfigStore) -> int:
    status = ProcessSupervisor(store).start(args.port)
    print(status.message)
    return 0


def cmd_stop(args: argparse.Namespace, store: ConfigStore) -> int:
    status = ProcessSupervisor(store).stop()
    print(status.message)
    return 0


def cmd_status(args: argparse.Namespace, store: ConfigStore) -> int:
    status = ProcessSupervisor(store).status()
    print(status.message)
    return 0


def cmd_listen(args: argparse.Namespace, store: ConfigStore) -> int:
    settings = load_server_settings(store, port=args.port)
    serve_settings(settings)
    return 0


def _print_result(result: DeploymentResult) -> None:
    if result.stdout:
        print(result.stdout, end="" if result.stdout.endswith("\n") else "\n")
    if result.stderr:
        print(result.stderr, end="" if result.stderr.endswith("\n") else "\n", file=sys.stderr)
    if result.truncated:
        print("(output truncated by server)", file=sys.stderr)


def _deploy_timeout(store: ConfigStore) -> float:
    raw = store.get("deploy_timeout")
    try:
        timeout = float(raw) if raw not in (None, "") else DEFAULT_TIMEOUT
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"'deploy_timeout' must be a number of seconds, got {raw!r}",
            missing_keys=["deploy_timeout"]
        )
    if not timeout > 0:
        raise ConfigurationError(
            f"'deploy_timeout' must be positive, got {raw!r}",
            missing_keys=["deploy_timeout"]
        )
    return timeout


def cmd_deploy(args: argparse.Namespace, store: ConfigStore) -> int:
    target = resolve_deploy_target(store, args.server_name)
    timeout = _deploy_timeout(store)

    print(f"Deploying to {target.name} ({target.url})...")
    result = trigger(target.url, target.secret, timeout=timeout)
    _print_result(result)

    if result.success:
        print(f"Deployment succeeded in {result.duration_ms}ms")
        return 0
    detail = f", {result.error}" if result.error else ""
    _error(f"Deployment failed (exit code {result.exit_code}{detail})")
    return 1


# ============================================================================
# Parser
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="redep",
        description="Trigger a pre-configured deployment command on a remote server"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Initialize configuration for client or server")
    p.add_argument("type", choices=["client", "server"])
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("generate", help="Generate configuration values")
    p.add_argument("what", choices=["secret_key", "working_dir"])
    p.set_defaults(func=cmd_generate)

    config = sub.add_parser("config", help="Manage configuration")
    actions = config.add_subparsers(dest="action", required=True)
    p = actions.add_parser("set", help="Set a configuration key")
    p.add_argument("key")
    p.add_argument("value")
    p = actions.add_parser("get", help="Get a configuration key")
    p.add_argument("key")
    p = actions.add_parser("list", help="List configurations (client, server, or all)")
    p.add_argument("type", nargs="?", choices=["client", "server"])
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.add_argument("--sort", choices=["key", "modified", "source", "security"], default="key")
    actions.add_parser("clear", help="Clear all configurations")
    config.set_defaults(func=cmd_config)

    p = sub.add_parser("start", help="Start the server in background (PM2 if available)")
    p.add_argument("-p", "--port", type=int, help="Port to listen on")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("stop", help="Stop the background server")
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser("status", help="Check server status")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("listen", help="Start the server to listen for deploy triggers")
    p.add_argument("-p", "--port", type=int, help="Port to listen on")
    p.set_defaults(func=cmd_listen)

    p = sub.add_parser("deploy", help='Deploy to a specific server (e.g., "prod")')
    p.add_argument("server_name")
    p.set_defaults(func=cmd_deploy)

    return parser


def _configure_logging(command: str, verbose: bool) -> None:
    if verbose:
        level = logging.DEBUG
    elif command == "listen":
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def run(argv: Optional[list[str]] = None, store: Optional[ConfigStore] = None) -> int:
    """Parse arguments, dispatch, and map failures to exit status 1."""
    load_dotenv(find_dotenv(usecwd=True))
    args = build_parser().parse_args(argv)
    _configure_logging(args.command, args.verbose)

    try:
        return args.func(args, store if store is not None else get_config_store())
    except RedepError as e:
        _error(str(e))
        return 1
    except KeyboardInterrupt:
        return 130


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
