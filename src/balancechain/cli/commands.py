"""
CLI command implementations.

Every command takes the parsed argparse namespace and returns a process
exit code. Commands that touch the chain open the node's SQLite file
(--db) and close it again before returning.
"""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

from balancechain.chain import AppendResult
from balancechain.config import get_settings
from balancechain.node import Node
from balancechain.signaling import RelayServer
from balancechain.storage import SQLiteStorage

DEFAULT_DB = "balancechain.db"


def _db_path(args) -> str:
    return getattr(args, "db", None) or get_settings().chain.db_path or DEFAULT_DB


@contextmanager
def _open_node(args) -> Iterator[Node]:
    node = Node.open(_db_path(args), hik=getattr(args, "hik", None))
    try:
        yield node
    finally:
        if isinstance(node.storage, SQLiteStorage):
            node.storage.close()


def _print_output(data: Any, fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(data, indent=2))
    elif fmt == "jsonl":
        for row in data if isinstance(data, list) else [data]:
            print(json.dumps(row))
    elif isinstance(data, dict):
        for k, v in data.items():
            print(f"{k}: {v}")
    else:
        print(json.dumps(data, indent=2))


def _report(res: AppendResult) -> int:
    if res.ok:
        print(f"ok  seq={res.length}  head={res.head[:16]}...")
        return 0
    print(f"rejected: {res.reason.value if res.reason else 'unknown'}", file=sys.stderr)
    return 1


# ----------------------------------------------------------------------
# Relay
# ----------------------------------------------------------------------


def cmd_relay(args) -> int:
    """Run the signaling relay until interrupted."""
    relay = RelayServer(args.host, args.port, path=args.path)
    try:
        asyncio.run(relay.serve_forever())
    except KeyboardInterrupt:
        pass
    return 0


# ----------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------


def cmd_init(args) -> int:
    with _open_node(args) as node:
        print(f"HIK: {node.identity.hik}")
        print(f"HID: {node.hid}")
        print(f"DB:  {_db_path(args)}")
    return 0


def cmd_whoami(args) -> int:
    with _open_node(args) as node:
        _print_output(
            {
                "hik": node.identity.hik,
                "hid": node.hid,
                "length": node.log.length(),
                "head": node.log.head(),
            },
            args.output,
        )
    return 0


# ----------------------------------------------------------------------
# Local chain
# ----------------------------------------------------------------------


def cmd_chat(args) -> int:
    with _open_node(args) as node:
        return _report(asyncio.run(node.chat(args.text)))


def cmd_contact_add(args) -> int:
    with _open_node(args) as node:
        return _report(asyncio.run(node.add_contact(args.hid, args.nickname or "")))


def cmd_send(args) -> int:
    """Queue a message for a peer; it is delivered when the peer syncs."""
    with _open_node(args) as node:
        res = asyncio.run(node.send_message(args.peer, args.text))
        if res.ok and res.entry is not None:
            print(f"queued msgId={res.entry.payload['msgId']} seq={res.entry.payload['seqInChannel']}")
        return _report(res)


def cmd_log(args) -> int:
    with _open_node(args) as node:
        entries = [e.to_dict() for e in node.log.entries()]
        if args.limit:
            entries = entries[-args.limit:]
        if args.output in ("json", "jsonl"):
            _print_output(entries, args.output)
            return 0
        if not entries:
            print("Chain is empty.")
            return 0
        print(f"{'SEQ':<6} {'TYPE':<15} {'TIMESTAMP':<15} PAYLOAD")
        print("-" * 72)
        for e in entries:
            payload = json.dumps(e["payload"], ensure_ascii=False)
            if len(payload) > 40:
                payload = payload[:37] + "..."
            print(f"{e['seq']:<6} {e['type']:<15} {e['timestamp']:<15} {payload}")
    return 0


def cmd_messages(args) -> int:
    with _open_node(args) as node:
        rows: List[Dict[str, Any]] = node.messages(args.peer)
        if args.output in ("json", "jsonl"):
            _print_output(rows, args.output)
            return 0
        for m in rows:
            who = {"out": "->", "in": "<-"}.get(m.get("dir", ""), "  ")
            print(f"{m.get('ts')} {who} {m.get('peerHid', '')[:16]:<16} {m.get('text', '')}")
    return 0


def cmd_verify(args) -> int:
    with _open_node(args) as node:
        report = node.log.verify()
        _print_output(report.to_dict(), args.output)
        return 0 if report.ok else 2


def cmd_export(args) -> int:
    with _open_node(args) as node:
        data = node.log.export(include_keys=args.include_keys)
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if args.file:
        with open(args.file, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"Exported to {args.file}")
    else:
        print(text)
    return 0


def cmd_reset(args) -> int:
    if not args.yes:
        print("Refusing to wipe local data without --yes", file=sys.stderr)
        return 1
    with _open_node(args) as node:
        node.storage.clear()
    print("Local data wiped.")
    return 0


# ----------------------------------------------------------------------
# Online
# ----------------------------------------------------------------------


async def _run_online(node: Node, args) -> None:
    await node.start(args.signal or None)
    try:
        if not await node.signaling.wait_open(node.settings.sync.connect_timeout_s):
            print("Relay not reachable yet; retrying in background", file=sys.stderr)
        if args.peer:
            await node.announce_presence(args.peer)
        elapsed = 0.0
        while args.duration <= 0 or elapsed < args.duration:
            for peer in args.peer or []:
                ok = await node.sync_with(peer)
                print(f"sync {peer[:16]}: {'ok' if ok else 'unreachable'}")
            await asyncio.sleep(args.interval)
            elapsed += args.interval
    finally:
        await node.stop()


def cmd_run(args) -> int:
    """Go online: connect to the relay and periodically pull from peers."""
    with _open_node(args) as node:
        print(f"Online as {node.hid}")
        try:
            asyncio.run(_run_online(node, args))
        except KeyboardInterrupt:
            pass
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 0
