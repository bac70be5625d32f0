"""
batched_lookup.py — Minimal superload example.

Three concurrent "requests" look up overlapping user ids; the loader sees one
call with each id once.

Usage:
    SUPERLOAD_DELAY_S=0.01 python examples/batched_lookup.py
"""

import asyncio
import logging

from superload import BatchCoalescer, CoalescerPolicy, item_error

USERS = {"u1": "Ada", "u2": "Grace", "u3": "Linus"}


async def fetch_users(ids: list[str]) -> list[object]:
    print(f"loader called with {ids}")
    await asyncio.sleep(0.05)
    return [USERS[i] if i in USERS else item_error(KeyError(i)) for i in ids]


async def handle_request(users: BatchCoalescer, ids: list[str]) -> None:
    try:
        print(ids, "->", await users.load_many(ids))
    except KeyError as exc:
        print(ids, "-> missing", exc)


async def main() -> None:
    users = BatchCoalescer(
        fetch_users, identity=str, policy=CoalescerPolicy.from_env()
    )
    await asyncio.gather(
        handle_request(users, ["u1", "u2"]),
        handle_request(users, ["u2", "u3"]),
        handle_request(users, ["u3", "u4"]),
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    asyncio.run(main())
