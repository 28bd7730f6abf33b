"""
Grant credits to a user by email.

Usage: python scripts/grant_credits.py --email=user@example.com [--amount=100]
Without --email, lists users and their balances.
"""

import argparse
import asyncio
import os
import sys

import httpx

# Add parent dir to path to find config/database
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from database import async_session_maker
from services.auth_provider import AuthServiceError, SupabaseAuthClient
from services.credits import credit_idempotent, get_balance
from services.errors import InvalidAmount


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Grant credits to a registered user.")
    parser.add_argument("--email", help="Email of the user to credit")
    parser.add_argument("--amount", type=int, default=100, help="Credits to add (default: 100)")
    return parser.parse_args(argv)


async def list_users(auth_client: SupabaseAuthClient) -> None:
    users = await auth_client.list_users()
    async with async_session_maker() as db:
        for user in users:
            balance = await get_balance(user.id, db)
            print(f"- {user.email} (ID: {user.id[:8]}...) - Credits: {balance}")


async def grant(auth_client: SupabaseAuthClient, email: str, amount: int) -> int:
    print(f"🔍 Looking for user: {email}...")
    user = await auth_client.find_user_by_email(email)
    if not user:
        print(f"❌ User not found: {email}")
        return 1

    print(f"Found user ID: {user.id}")
    async with async_session_maker() as db:
        print(f"Current balance: {await get_balance(user.id, db)}")
        result = await credit_idempotent(user.id, db, amount=amount)
    print(f"✅ Successfully added {amount} credits!")
    print(f"New Balance: {result['balance']}")
    return 0


async def main_async(argv=None) -> int:
    args = parse_args(argv)
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        print("Error: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required in .env")
        return 1

    async with httpx.AsyncClient(timeout=30.0) as client:
        auth_client = SupabaseAuthClient(client)
        try:
            if not args.email:
                print("Usage: python scripts/grant_credits.py --email=user@example.com [--amount=100]")
                print("\nAvailable Users:")
                await list_users(auth_client)
                return 0
            return await grant(auth_client, args.email, args.amount)
        except (AuthServiceError, InvalidAmount) as exc:
            print(f"❌ {exc.message}")
            return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main_async()))
