"""
CRM - Seed import user (dev/staging only)
Creates one user allowed to run client imports and prints a session token.
Run: python scripts/seed_import_user.py [email]
Reset: python scripts/seed_import_user.py --reset
"""

import asyncio
import os
import secrets
import sys
import uuid
from datetime import datetime, timezone, timedelta

from motor.motor_asyncio import AsyncIOMotorClient

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "crm_database")

DEFAULT_EMAIL = "importer@test.local"
SESSION_DAYS = 7


async def reset(db):
    """Delete all test.local users and their sessions"""
    users = await db.users.find({"email": {"$regex": "@test\\.local$"}}, {"id": 1}).to_list(None)
    ids = [u["id"] for u in users if u.get("id")]
    await db.sessions.delete_many({"user_id": {"$in": ids}})
    result = await db.users.delete_many({"email": {"$regex": "@test\\.local$"}})
    print(f"Deleted {result.deleted_count} test users")


async def seed(db, email: str) -> str:
    """Create/update the import user, open a session, return its token"""
    existing = await db.users.find_one({"email": email})
    if existing:
        user_id = existing["id"]
        await db.users.update_one({"id": user_id}, {"$set": {"is_active": True}})
        print(f"  Updated: {email}")
    else:
        user_id = str(uuid.uuid4())
        await db.users.insert_one({
            "id": user_id,
            "email": email,
            "name": "Import User",
            "role": "admin",
            "is_active": True,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        print(f"  Created: {email}")

    token = secrets.token_urlsafe(32)
    now = datetime.now(timezone.utc)
    await db.sessions.insert_one({
        "token": token,
        "user_id": user_id,
        "created_at": now.isoformat(),
        "expires_at": (now + timedelta(days=SESSION_DAYS)).isoformat(),
    })
    return token


async def main():
    client = AsyncIOMotorClient(MONGO_URL)
    db = client[DB_NAME]

    if "--reset" in sys.argv:
        await reset(db)
        print("Reset complete. Run without --reset to re-seed.")
    else:
        args = [a for a in sys.argv[1:] if not a.startswith("--")]
        token = await seed(db, (args[0] if args else DEFAULT_EMAIL).lower())
        print(f"\nSession token (valid {SESSION_DAYS} days): {token}")
        print('Use: curl -H "Authorization: Bearer <token>" -F file=@clients.csv .../api/clients/import')

    client.close()


if __name__ == "__main__":
    asyncio.run(main())
