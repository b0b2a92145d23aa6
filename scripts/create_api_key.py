from __future__ import annotations

import argparse
import asyncio
import sys

from newsletter_api.persistence.db import SessionLocal
from newsletter_api.persistence.repos import users as users_repo
from newsletter_api.services.auth.users import issue_api_key, provision_user_with_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a newsletter author")
    parser.add_argument("--username", required=True, help="Author username; created when missing")
    parser.add_argument("--email", default=None, help="Author email, required for new authors")
    parser.add_argument("--name", default="default", help="Key label")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        user = await users_repo.get_user_by_username(session, args.username)
        if user is None:
            if not args.email:
                raise ValueError("--email is required when creating a new author")
            provisioned = await provision_user_with_api_key(
                session, username=args.username, email=args.email, key_name=args.name
            )
        else:
            provisioned = await issue_api_key(session, user=user, key_name=args.name)
        await session.commit()

    print("API key created:")
    print(f"  user_id: {provisioned.user_id}")
    print(f"  username: {provisioned.username}")
    print(f"  key_id: {provisioned.api_key_id}")
    print("  api_key: ")
    print(f"    {provisioned.raw_api_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
