#!/usr/bin/env python
"""Create an API user so the vendor endpoints can be called with a token.

Usage:
    python scripts/seed_user.py --email user@example.com --name "Jane" --password "secret"
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Allow importing vendorlens from the project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import select  # noqa: E402

from vendorlens.auth import hash_password  # noqa: E402
from vendorlens.database import AsyncSessionLocal, create_tables  # noqa: E402
from vendorlens.models import User  # noqa: E402


async def main() -> None:
    parser = argparse.ArgumentParser(description="Create a vendorlens API user")
    parser.add_argument("--email", required=True, help="Login email address")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--password", required=True, help="Plain-text password")
    args = parser.parse_args()

    # Seeding may run before the API has ever started
    await create_tables()

    async with AsyncSessionLocal() as db:
        user = (
            await db.execute(select(User).where(User.email == args.email))
        ).scalar_one_or_none()
        if user is not None:
            print(f"User '{args.email}' already exists (id={user.id})")
            return

        user = User(
            email=args.email,
            name=args.name,
            password_hash=hash_password(args.password),
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        print(f"Created API user id={user.id} email='{user.email}'")


if __name__ == "__main__":
    asyncio.run(main())
