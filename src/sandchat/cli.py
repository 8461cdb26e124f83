from __future__ import annotations

import argparse
import json
import uuid
from typing import Any, Dict

from . import __version__
from .contracts.v1 import Conversation
from .daemon.server import default_paths, pid_alive, read_pid
from .kernel.cursors import Cursors
from .kernel.ledger import MessageStore
from .kernel.registry import load_registry
from .kernel.settings import load_settings
from .kernel.tasks import TaskStore
from .paths import ipc_dir
from .util.fs import atomic_write_json


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _daemon_running() -> bool:
    return pid_alive(read_pid(default_paths()))


def _send_command(doc: Dict[str, Any]) -> None:
    """Hand a request to the running daemon through the privileged folder's command channel."""
    settings = load_settings()
    path = ipc_dir(settings.main_folder) / "tasks" / f"cli-{uuid.uuid4().hex}.json"
    atomic_write_json(path, doc)


def cmd_register(args: argparse.Namespace) -> int:
    settings = load_settings()
    conv = Conversation(
        jid=args.jid,
        name=args.name or args.jid,
        folder=args.folder,
        trigger=args.trigger or f"@{settings.assistant_name}",
        requires_trigger=not args.no_trigger,
    )
    if _daemon_running():
        doc = {"type": "register_group", **conv.model_dump(include={"jid", "name", "folder", "trigger", "requires_trigger"})}
        _send_command(doc)
        print(f"register request queued for {conv.jid}")
        return 0
    load_registry().register(conv)
    _print_json(conv.model_dump())
    return 0


def cmd_unregister(args: argparse.Namespace) -> int:
    if _daemon_running():
        _send_command({"type": "unregister_group", "jid": args.jid})
        print(f"unregister request queued for {args.jid}")
        return 0
    if not load_registry().unregister(args.jid):
        print(f"not registered: {args.jid}")
        return 1
    return 0


def cmd_conversations(_: argparse.Namespace) -> int:
    _print_json([c.model_dump() for c in load_registry().all().values()])
    return 0


def cmd_tasks(args: argparse.Namespace) -> int:
    tasks = TaskStore().list(folder=args.folder or None)
    _print_json([t.model_dump() for t in tasks])
    return 0


def cmd_cursors(_: argparse.Namespace) -> int:
    c = Cursors()
    _print_json({"last_timestamp": c.global_seen, "last_agent_timestamp": c.snapshot()})
    return 0


def cmd_inject(args: argparse.Namespace) -> int:
    reg = load_registry()
    if reg.get(args.jid) is None:
        print(f"not registered: {args.jid}")
        return 1
    msg = MessageStore().store_message(args.jid, args.text, sender=args.sender, sender_name=args.sender)
    _print_json(msg.model_dump())
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sandchat", description="sandchat: chat conversations driving sandboxed agents")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_reg = sub.add_parser("register", help="Register a conversation")
    p_reg.add_argument("jid", help="Conversation identity, e.g. tg:-100123")
    p_reg.add_argument("folder", help="Working folder name under <home>/groups")
    p_reg.add_argument("--name", default="", help="Display name")
    p_reg.add_argument("--trigger", default="", help="Trigger word (default: @<assistant_name>)")
    p_reg.add_argument("--no-trigger", action="store_true", help="Respond to every message")
    p_reg.set_defaults(func=cmd_register)

    p_unreg = sub.add_parser("unregister", help="Unregister a conversation")
    p_unreg.add_argument("jid")
    p_unreg.set_defaults(func=cmd_unregister)

    sub.add_parser("conversations", help="List registered conversations").set_defaults(func=cmd_conversations)

    p_tasks = sub.add_parser("tasks", help="List scheduled tasks")
    p_tasks.add_argument("--folder", default="", help="Only tasks of this folder")
    p_tasks.set_defaults(func=cmd_tasks)

    sub.add_parser("cursors", help="Show message cursors").set_defaults(func=cmd_cursors)

    p_inject = sub.add_parser("inject", help="Store a message as if it came from a chat")
    p_inject.add_argument("jid")
    p_inject.add_argument("text")
    p_inject.add_argument("--sender", default="cli", help="Sender name (default: cli)")
    p_inject.set_defaults(func=cmd_inject)

    sub.add_parser("version", help="Show version").set_defaults(func=cmd_version)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
