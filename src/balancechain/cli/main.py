"""
BalanceChain command line.

    balancechain relay [--host H] [--port P]     run a signaling relay
    balancechain init [--hik HIK]                create (or show) the local identity
    balancechain whoami                          identity and chain head
    balancechain chat TEXT                       append a local note
    balancechain contact-add HID [--nickname N]  record a contact
    balancechain send PEER TEXT                  queue a message for a peer
    balancechain log | messages                  inspect the chain / message view
    balancechain verify                          re-verify the whole chain
    balancechain export [--file F]               dump every store
    balancechain reset --yes                     wipe local data
    balancechain run --signal URL --peer HID     go online and sync
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from balancechain.utils.logging import configure_logging

from . import commands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="balancechain",
        description="BalanceChain local-first messaging node",
    )
    parser.add_argument("--db", help="SQLite file for local state (default: balancechain.db)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command")

    p_relay = sub.add_parser("relay", help="Run a signaling relay")
    p_relay.add_argument("--host", default=None)
    p_relay.add_argument("--port", type=int, default=None)
    p_relay.add_argument("--path", default=None)
    p_relay.set_defaults(func=commands.cmd_relay)

    p_init = sub.add_parser("init", help="Create or show the local identity")
    p_init.add_argument("--hik", help="Human-chosen identity label")
    p_init.set_defaults(func=commands.cmd_init)

    p_who = sub.add_parser("whoami", help="Show identity and chain head")
    p_who.add_argument("--output", choices=["table", "json"], default="table")
    p_who.set_defaults(func=commands.cmd_whoami)

    p_chat = sub.add_parser("chat", help="Append a local chat note")
    p_chat.add_argument("text")
    p_chat.set_defaults(func=commands.cmd_chat)

    p_contact = sub.add_parser("contact-add", help="Add a contact by HID")
    p_contact.add_argument("hid")
    p_contact.add_argument("--nickname", default="")
    p_contact.set_defaults(func=commands.cmd_contact_add)

    p_send = sub.add_parser("send", help="Queue a message for a peer")
    p_send.add_argument("peer", help="Peer HID")
    p_send.add_argument("text")
    p_send.set_defaults(func=commands.cmd_send)

    p_log = sub.add_parser("log", help="List chain entries")
    p_log.add_argument("--limit", type=int, default=0)
    p_log.add_argument("--output", choices=["table", "json", "jsonl"], default="table")
    p_log.set_defaults(func=commands.cmd_log)

    p_msgs = sub.add_parser("messages", help="List messages")
    p_msgs.add_argument("--peer", help="Only the channel with this HID")
    p_msgs.add_argument("--output", choices=["table", "json", "jsonl"], default="table")
    p_msgs.set_defaults(func=commands.cmd_messages)

    p_verify = sub.add_parser("verify", help="Re-verify the whole chain")
    p_verify.add_argument("--output", choices=["table", "json"], default="table")
    p_verify.set_defaults(func=commands.cmd_verify)

    p_export = sub.add_parser("export", help="Export every store as JSON")
    p_export.add_argument("--file", help="Write to this file instead of stdout")
    p_export.add_argument("--include-keys", action="store_true", help="Include private keys")
    p_export.set_defaults(func=commands.cmd_export)

    p_reset = sub.add_parser("reset", help="Wipe all local data")
    p_reset.add_argument("--yes", action="store_true", help="Confirm the wipe")
    p_reset.set_defaults(func=commands.cmd_reset)

    p_run = sub.add_parser("run", help="Go online and sync with peers")
    p_run.add_argument("--signal", action="append", help="Relay URL (repeatable)")
    p_run.add_argument("--peer", action="append", help="Peer HID to sync with (repeatable)")
    p_run.add_argument("--interval", type=float, default=10.0, help="Seconds between sync rounds")
    p_run.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = forever)")
    p_run.set_defaults(func=commands.cmd_run)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    configure_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
