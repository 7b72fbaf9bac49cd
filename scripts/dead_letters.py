from __future__ import annotations

import argparse
import asyncio
import json
import sys

from inboxrag.services.container import get_container, reset_container


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List or requeue dead-lettered jobs")
    parser.add_argument("--limit", type=int, default=50, help="Maximum entries to list")
    parser.add_argument("--requeue", default=None, help="Job key to move back to the queue")
    return parser


async def run(args: argparse.Namespace) -> int:
    container = get_container()
    try:
        if args.requeue:
            moved = await container.queue.requeue_dead_letter(args.requeue)
            print(f"requeued={moved} key={args.requeue}")
            return 0 if moved else 1
        for letter in await container.queue.dead_letters(args.limit):
            print(
                json.dumps(
                    {
                        "key": letter.key,
                        "kind": letter.kind,
                        "attempts": letter.attempts,
                        "last_error": letter.last_error,
                    }
                )
            )
        return 0
    finally:
        await reset_container()


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(run(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or queue errors
        print(f"dead_letters failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
