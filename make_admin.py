"""Promote an existing user to the admin role.

Usage: python make_admin.py <username>
"""

import argparse
import logging
import sys
from typing import Optional

from pymongo import ReturnDocument

import database

logger = logging.getLogger(__name__)


def make_admin(username: str) -> Optional[dict]:
    if database.db is None:
        raise RuntimeError("Database not available: set DATABASE_URL")
    return database.db["user"].find_one_and_update(
        {"username": username},
        {"$set": {"role": "admin"}},
        return_document=ReturnDocument.AFTER,
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Promote a user to admin")
    parser.add_argument("username")
    args = parser.parse_args(argv)

    user = make_admin(args.username)
    if not user:
        print(f"❌ User {args.username} not found")
        return 1
    print(f"✅ User {args.username} has been promoted to admin")
    print(f"User details: {user.get('first_name')} {user.get('last_name')} ({user.get('email')})")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(main())
