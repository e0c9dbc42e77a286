"""CLI for operating on tracking sessions in the shared store.

Usage:
    python -m safetrack.cli show <session_id>
    python -m safetrack.cli respond <session_id> ok|danger
    python -m safetrack.cli sweep
    python -m safetrack.cli contacts add <user_id> <name> <detail>
    python -m safetrack.cli contacts list <user_id>
    python -m safetrack.cli contacts remove <user_id> <contact_id>
    python -m safetrack.cli replay <user_id> fixes.jsonl --interval 0.5
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from safetrack.contacts import ContactBook, InvalidContact
from safetrack.geo import ReplaySampler
from safetrack.liveness import LivenessWatcher
from safetrack.observer import respond_to_check, session_view
from safetrack.sessions.models import CheckStatus, session_path
from safetrack.sessions.tracker import SessionTracker
from safetrack.store.protocol import SessionStore
from safetrack.store.redis_store import RedisSessionStore
from safetrack.ui import ConsoleUI


async def cmd_show(store: SessionStore, args: argparse.Namespace) -> int:
    """Print the observer view of a session."""
    record = await store.get(session_path(args.session_id))
    if not isinstance(record, dict):
        print(f"ERROR: session not found: {args.session_id}", file=sys.stderr)
        return 1
    print(json.dumps(session_view(args.session_id, record), indent=2))
    return 0


async def cmd_respond(store: SessionStore, args: argparse.Namespace) -> int:
    """Answer a pending check request as the observer."""
    if not await respond_to_check(store, args.session_id, CheckStatus(args.status)):
        print(f"ERROR: no check request outstanding on {args.session_id}", file=sys.stderr)
        return 1
    print(f"Answered {args.status} on {args.session_id}")
    return 0


async def cmd_sweep(store: SessionStore, args: argparse.Namespace) -> int:
    """Mark stale active sessions as connection_lost."""
    touched = await LivenessWatcher(store, args.timeout).sweep()
    for session_id in touched:
        print(f"  connection_lost  {session_id}")
    print(f"{len(touched)} session(s) marked")
    return 0


async def cmd_contacts(store: SessionStore, args: argparse.Namespace) -> int:
    """Manage a user's trusted contacts."""
    book = ContactBook(store)
    if args.action == "add":
        try:
            contact = await book.add(args.user_id, args.name, args.detail)
        except InvalidContact as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        print(f"Added {contact.name} ({contact.kind.value}) as {contact.contact_id}")
    elif args.action == "remove":
        await book.remove(args.user_id, args.contact_id)
        print(f"Removed {args.contact_id}")
    else:
        contacts = await book.list(args.user_id)
        if not contacts:
            print("No trusted contacts added.")
        for contact in contacts:
            kind = contact.kind.value if contact.kind else "invalid"
            print(f"  {contact.contact_id}  {contact.name:20s}  {contact.detail}  [{kind}]")
    return 0


async def cmd_replay(store: SessionStore, args: argparse.Namespace) -> int:
    """Run a tracking session from recorded fixes."""
    sampler = ReplaySampler.from_jsonl(args.fixes, interval_seconds=args.interval, restamp=True)
    tracker = SessionTracker(store, sampler, ConsoleUI())
    tracker.ctx.user_id = args.user_id
    session_id = await tracker.start_tracking()
    if session_id is None:
        print("ERROR: tracking did not start", file=sys.stderr)
        return 1
    print(f"Session {session_id}: {tracker.link}")
    try:
        while sampler.active_watches:
            await asyncio.sleep(args.interval)
    finally:
        if args.keep:
            await tracker.close()
        else:
            await tracker.stop_tracking()
    return 0


async def _run(args: argparse.Namespace) -> int:
    store = RedisSessionStore()
    try:
        return await args.func(store, args)
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="safetrack",
        description="SafeTrack session tooling",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # show
    p_show = sub.add_parser("show", help="Print a session as the observer sees it")
    p_show.add_argument("session_id")
    p_show.set_defaults(func=cmd_show)

    # respond
    p_respond = sub.add_parser("respond", help="Answer a check request")
    p_respond.add_argument("session_id")
    p_respond.add_argument("status", choices=[CheckStatus.OK.value, CheckStatus.DANGER.value])
    p_respond.set_defaults(func=cmd_respond)

    # sweep
    p_sweep = sub.add_parser("sweep", help="Mark sessions with stale heartbeats")
    p_sweep.add_argument("--timeout", type=float, default=None, help="Heartbeat age in seconds")
    p_sweep.set_defaults(func=cmd_sweep)

    # contacts
    p_contacts = sub.add_parser("contacts", help="Manage trusted contacts")
    contacts_sub = p_contacts.add_subparsers(dest="action", required=True)
    p_add = contacts_sub.add_parser("add")
    p_add.add_argument("user_id")
    p_add.add_argument("name")
    p_add.add_argument("detail", help="BR phone, @handle or email")
    p_list = contacts_sub.add_parser("list")
    p_list.add_argument("user_id")
    p_remove = contacts_sub.add_parser("remove")
    p_remove.add_argument("user_id")
    p_remove.add_argument("contact_id")
    p_contacts.set_defaults(func=cmd_contacts)

    # replay
    p_replay = sub.add_parser("replay", help="Track a session from a JSON-lines fix file")
    p_replay.add_argument("user_id")
    p_replay.add_argument("fixes", help="Path to fixes.jsonl")
    p_replay.add_argument("--interval", type=float, default=1.0, help="Seconds between fixes")
    p_replay.add_argument("--keep", action="store_true", help="Leave the session open when done")
    p_replay.set_defaults(func=cmd_replay)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
