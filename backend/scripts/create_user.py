"""Create a user account from the command line.

Usage:
    python -m scripts.create_user --username alice --email alice@example.com --password yourpassword [--admin]
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent dir to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sqlalchemy import or_, select

from todo_api.core.database import async_session, engine, init_db
from todo_api.core.security import hash_password
from todo_api.models.user import User


async def create_user(username: str, email: str, password: str, is_admin: bool = False) -> bool:
    await init_db()
    try:
        async with async_session() as session:
            existing = (
                await session.execute(
                    select(User).where(or_(User.email == email, User.username == username))
                )
            ).scalars().first()

            if existing:
                print(f"User with email {email} or username {username} already exists.")
                return False

            session.add(User(
                username=username,
                email=email,
                hashed_password=hash_password(password),
                is_admin=is_admin,
            ))
            await session.commit()
            print(f"{'Admin' if is_admin else 'User'} created: {email}")
            return True
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Create a user")
    parser.add_argument("--username", required=True, help="Username (3-30 chars)")
    parser.add_argument("--email", required=True, help="Email address")
    parser.add_argument("--password", required=True, help="Password")
    parser.add_argument("--admin", action="store_true", help="Allow running notification sweeps over the API")
    args = parser.parse_args()

    created = asyncio.run(create_user(args.username.lower(), args.email.lower(), args.password, args.admin))
    sys.exit(0 if created else 1)


if __name__ == "__main__":
    main()
