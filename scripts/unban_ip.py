#!/usr/bin/env python3
"""Inspect and lift IP bans.

Usage:
    python scripts/unban_ip.py 203.0.113.7     # lift the ban on one address
    python scripts/unban_ip.py --list          # show active bans
    python scripts/unban_ip.py --expired       # delete bans that have run out

Environment Variables:
    SHARED_FS_ROOT: Directory holding the persisted store state
"""
from __future__ import annotations

import argparse
import os
import sys


def format_ban(ban) -> str:
    return (
        f"{ban.ip:<40} reason={ban.reason:<20} attempts={ban.attempts:<3} "
        f"banned_at={ban.banned_at.isoformat()} expires_at={ban.expires_at.isoformat()}"
    )


def run(gate, *, ip=None, list_bans=False, expired=False) -> int:
    """Apply the requested action to ``gate`` and return the affected row count."""
    if list_bans:
        bans = gate.list_banned()
        if not bans:
            print("No active bans.")
        for ban in bans:
            print(format_ban(ban))
        return len(bans)
    if expired:
        removed = gate.unban_expired()
        print(f"Removed {removed} expired ban(s).")
        return removed
    removed = gate.unban_ip(ip)
    if removed:
        print(f"Unbanned {ip}.")
    else:
        print(f"No ban found for {ip}.")
    return removed


def main():
    parser = argparse.ArgumentParser(
        description="Lift or list IP bans",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("ip", nargs="?", help="Address to unban")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--list", dest="list_bans", action="store_true", help="List active bans")
    group.add_argument("--expired", action="store_true", help="Delete expired bans")
    args = parser.parse_args()

    if not args.ip and not args.list_bans and not args.expired:
        parser.print_usage()
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from rbacauth.service.runtime import get_runtime

    run(get_runtime().bans, ip=args.ip, list_bans=args.list_bans, expired=args.expired)


if __name__ == "__main__":
    main()
