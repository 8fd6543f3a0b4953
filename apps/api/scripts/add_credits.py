import argparse
import asyncio
import os
import sys

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker, engine
import models  # noqa: F401
from services.credits import grant_credits
from services.users import ensure_user


async def add_credits_async(user_id: str, amount: int, description: str, bonus: bool) -> None:
    print(f"💳 Granting {amount} credits to {user_id}...")
    async with async_session_maker() as db:
        await ensure_user(db, user_id)
        new_balance = await grant_credits(user_id, amount, db, description=description, bonus=bonus)
    await engine.dispose()
    print(f"✅ New balance: {new_balance}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Grant credits to a user's subscription.")
    parser.add_argument("user_id")
    parser.add_argument("amount", type=int)
    parser.add_argument("--description", default="Manual credit grant")
    parser.add_argument("--bonus", action="store_true", help="Add to the extra-credits pool")
    args = parser.parse_args()
    if args.amount <= 0:
        parser.error("amount must be greater than 0")
    asyncio.run(add_credits_async(args.user_id, args.amount, args.description, args.bonus))


if __name__ == "__main__":
    main()
