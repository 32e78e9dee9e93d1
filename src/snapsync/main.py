"""
Main entry point: serve the store, run a sync client, or issue single requests.
"""
import argparse
import asyncio
import logging
import shlex
import sys
from typing import Optional

import uvicorn

from .config import Config, ConfigError, load_config, parse_addr
from .errors import SnapsyncError
from .filesystem.models import Selector
from .filesystem.store import Store
from .networking.api_server import create_app
from .networking.remote import RemoteStore
from .networking.sync_protocol import SyncEngine

logger = logging.getLogger(__name__)

SELECTORS = {"earliest": Selector.earliest, "latest": Selector.latest, "time": Selector.at_time}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="snapsync", description="Versioned file store and sync client")
    parser.add_argument("--config", help="path to config.toml")
    parser.add_argument("--remote", help="host:port of the server (overrides the config)")
    parser.add_argument("--log-level", default="INFO")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("serve", help="run the request server")
    commands.add_parser("sync", help="run the sync client")

    get = commands.add_parser("get", help="fetch a file")
    get.add_argument("path")
    get.add_argument("--to", help="write to this file instead of stdout")
    get.add_argument("--version", type=int)

    insert = commands.add_parser("insert", help="store a file")
    insert.add_argument("path")
    insert.add_argument("--from", dest="source", help="read from this file instead of stdin")

    delete = commands.add_parser("delete", help="delete a file or directory")
    delete.add_argument("path")

    listing = commands.add_parser("listing", help="list every file")
    listing.add_argument("--version", type=int)

    node = commands.add_parser("node", help="show node metadata")
    node.add_argument("path")
    node.add_argument("--version", type=int)

    commands.add_parser("clear", help="commit an empty tree")
    commands.add_parser("history", help="show the history log")

    rollback = commands.add_parser("rollback", help="re-commit a historical version")
    rollback.add_argument("selector", choices=sorted(SELECTORS))
    rollback.add_argument("value", type=int)

    batch = commands.add_parser("batch", help="run one client command per line of a file")
    batch.add_argument("file")
    return parser


async def serve(config: Config) -> None:
    if config.server is None:
        raise ConfigError("no [server] section in config")
    host, port = parse_addr(config.server.addr)
    store = await Store.open(config.server.db)
    try:
        app = create_app(store)
        uconfig = uvicorn.Config(app=app, host=host, port=port, log_level=logging.getLogger().level)
        server = uvicorn.Server(config=uconfig)
        await server.serve()
    finally:
        await store.close()


async def sync(config: Config) -> None:
    if config.sync is None:
        raise ConfigError("no [sync] section in config")
    host, port = parse_addr(config.sync.remote)
    async with RemoteStore.connect(host, port) as remote:
        engine = SyncEngine(remote, config.sync.dir, config.sync.resync_time, config.sync.watch)
        await engine.run()


async def run_command(remote: RemoteStore, args: argparse.Namespace) -> None:
    out = sys.stdout
    if args.command == "get":
        data = await remote.get(args.path, args.version)
        if args.to:
            with open(args.to, "wb") as f:
                f.write(data)
        else:
            sys.stdout.buffer.write(data)
    elif args.command == "insert":
        if args.source:
            with open(args.source, "rb") as f:
                data = f.read()
        else:
            data = sys.stdin.buffer.read()
        content_hash, version = await remote.insert(args.path, data)
        print(f"{content_hash} version {version}", file=out)
    elif args.command == "delete":
        print(f"version {await remote.delete(args.path)}", file=out)
    elif args.command == "listing":
        for entry in await remote.listing(args.version):
            print(f"{entry.path}\t{entry.hash}\t{entry.timestamp}", file=out)
    elif args.command == "node":
        info = await remote.node(args.path, args.version)
        print(f"{info.path}\t{info.kind}\t{info.hash or '-'}\t{info.size}\t{info.timestamp}", file=out)
        for child in info.children:
            print(f"  {child}", file=out)
    elif args.command == "clear":
        print(f"version {await remote.clear()}", file=out)
    elif args.command == "rollback":
        selector = SELECTORS[args.selector](args.value)
        print(f"version {await remote.rollback(selector)}", file=out)
    elif args.command == "history":
        for entry in await remote.history():
            parent = "-" if entry.parent is None else entry.parent
            print(f"{entry.sequence}\t{entry.timestamp}\t{entry.tree}\t{parent}", file=out)


async def run_batch(remote: RemoteStore, parser: argparse.ArgumentParser, path: str) -> None:
    with open(path, "r") as f:
        lines = [line.strip() for line in f]
    for number, line in enumerate(lines, 1):
        if not line or line.startswith("#"):
            continue
        args = parser.parse_args(shlex.split(line))
        if args.command in ("serve", "sync", "batch"):
            raise ConfigError(f"{path}:{number}: {args.command} is not allowed in a batch")
        logger.info(f"batch {path}:{number}: {line}")
        await run_command(remote, args)


def client_remote(args: argparse.Namespace, config: Optional[Config]) -> RemoteStore:
    addr = args.remote
    if addr is None and config is not None and config.client is not None:
        addr = config.client.remote
    if addr is None:
        raise ConfigError("no remote given; pass --remote or add a [client] section")
    host, port = parse_addr(addr)
    return RemoteStore.connect(host, port)


async def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        if args.command in ("serve", "sync"):
            config = load_config(args.config)
            await (serve(config) if args.command == "serve" else sync(config))
            return 0
        config = load_config(args.config) if args.config else None
        async with client_remote(args, config) as remote:
            if args.command == "batch":
                await run_batch(remote, parser, args.file)
            else:
                await run_command(remote, args)
        return 0
    except SnapsyncError as e:
        print(f"error: {e.kind}: {e.message}", file=sys.stderr)
        return 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
