"""Outpost client entry point.

Usage::

    python -m outpost hosts
    python -m outpost status ALIAS
    python -m outpost connect ALIAS [--yes]
    python -m outpost deploy ALIAS
    python -m outpost discover ALIAS [--yes]

Exit status is 0 on success, 1 on failure and 3 when a needed deployment
was declined.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys

from outpost import __version__
from outpost.config import OutpostConfig
from outpost.deploy import (
    Connected,
    ConnectFailed,
    DeployFailed,
    DeploymentManager,
    Incompatible,
    NeedsDeployment,
)
from outpost.discovery import DiscoveryOrchestrator
from outpost.errors import OutpostError
from outpost.sshconfig import load_aliases

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DECLINED = 3


def _describe(needs: NeedsDeployment) -> str:
    if isinstance(needs.reason, Incompatible):
        return f"{needs.alias} runs agent {needs.reason.found.version}"
    return f"{needs.alias} has no usable agent"


def _approver(assume_yes: bool, version: str):
    async def approve(needs: NeedsDeployment) -> bool:
        if assume_yes:
            return True
        prompt = f"{_describe(needs)}. Deploy agent {version}? [y/N] "
        loop = asyncio.get_running_loop()
        try:
            answer = await loop.run_in_executor(None, input, prompt)
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")
    return approve


def _report_failure(outcome) -> int:
    if isinstance(outcome, NeedsDeployment):
        print(f"{_describe(outcome)}; deployment declined", file=sys.stderr)
        return EXIT_DECLINED
    kind = getattr(outcome.error, "kind", "error")
    print(f"{outcome.alias}: {kind}: {outcome.error}", file=sys.stderr)
    return EXIT_FAILED


# ── Subcommands ───────────────────────────────────────────────────


def cmd_hosts(config: OutpostConfig, manager: DeploymentManager, args) -> int:
    paths = config.ssh_config_paths or [None]
    aliases = sorted({alias for path in paths for alias in load_aliases(path)})
    recorded = set(manager.store.aliases())
    for alias in sorted(set(aliases) | recorded):
        record = manager.store.get(alias) if alias in recorded else None
        if record is None:
            print(alias)
            continue
        state = "ok" if record.last_seen_ok else "failed"
        print(f"{alias}\t{record.last_deployed_version or '-'}\t{state}")
    return EXIT_OK


async def cmd_status(config: OutpostConfig, manager: DeploymentManager, args) -> int:
    record = manager.store.get(args.alias)
    try:
        status = await manager.check(args.alias)
    except OutpostError as exc:
        print(f"{args.alias}: {getattr(exc, 'kind', 'error')}: {exc}", file=sys.stderr)
        return EXIT_FAILED
    print(json.dumps({
        "alias": args.alias,
        "agent": status.to_dict(),
        "record": record.to_dict() if record else None,
    }, indent=2))
    return EXIT_OK


async def cmd_connect(config: OutpostConfig, manager: DeploymentManager, args) -> int:
    outcome = await manager.ensure(args.alias, _approver(args.yes, manager.expected_version))
    if not isinstance(outcome, Connected):
        return _report_failure(outcome)
    async with outcome.session:
        verb = "deployed and connected" if outcome.deployed else "connected"
        print(f"{args.alias}: {verb}, agent {outcome.version.version} at {outcome.remote_path}")
    return EXIT_OK


async def cmd_deploy(config: OutpostConfig, manager: DeploymentManager, args) -> int:
    outcome = await manager.deploy(args.alias)
    if isinstance(outcome, DeployFailed):
        return _report_failure(outcome)
    async with outcome.session:
        print(f"{args.alias}: agent {outcome.version.version} deployed at {outcome.remote_path}")
    return EXIT_OK


async def cmd_discover(config: OutpostConfig, manager: DeploymentManager, args) -> int:
    outcome = await manager.ensure(args.alias, _approver(args.yes, manager.expected_version))
    if isinstance(outcome, (NeedsDeployment, ConnectFailed, DeployFailed)):
        return _report_failure(outcome)
    async with outcome.session:
        result = await DiscoveryOrchestrator(config.request_timeout).run(outcome.session)
    report = {"alias": args.alias, "agent": outcome.version.to_dict(), **result.to_dict()}
    print(json.dumps(report, indent=2, sort_keys=True))
    return EXIT_OK


# ── Entry point ───────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="outpost", description="Outpost remote host discovery")
    parser.add_argument("--version", action="version", version=f"outpost {__version__}")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: ~/.config/outpost/config.json or OUTPOST_CONFIG)",
    )
    parser.add_argument(
        "--data-dir",
        metavar="PATH",
        default=None,
        help="Override data directory (default: ~/.local/share/outpost or OUTPOST_DATA_DIR)",
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Run against this machine instead of over SSH",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("hosts", help="List known host aliases")
    for name, help_text in (
        ("status", "Show agent status and the stored host record"),
        ("connect", "Connect to the agent, deploying it if approved"),
        ("deploy", "Deploy the agent"),
        ("discover", "Run the discovery battery and print JSON"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("alias", help="SSH host alias")
        if name in ("connect", "discover"):
            cmd.add_argument("--yes", "-y", action="store_true", help="Deploy without asking")
    return parser


_COMMANDS = {
    "status": cmd_status,
    "connect": cmd_connect,
    "deploy": cmd_deploy,
    "discover": cmd_discover,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    config = OutpostConfig.load(args.config) if args.config else OutpostConfig.load_default()
    if args.data_dir:
        config = dataclasses.replace(config, data_dir=args.data_dir, artifact_dir="", state_dir="")

    transport = None
    if args.local:
        from outpost.transport.local import LocalTransport
        transport = LocalTransport()
    manager = DeploymentManager.from_config(config, transport=transport)

    if args.command == "hosts":
        return cmd_hosts(config, manager, args)

    try:
        return asyncio.run(_COMMANDS[args.command](config, manager, args))
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        return EXIT_FAILED


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
