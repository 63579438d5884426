"""
Visa CRM - Migration: backfill clients.email_normalized before the unique index.
Reports clients sharing the same normalized email (they block the index);
nothing is deleted, those groups must be merged by hand.

Run: cd backend && python3 scripts/migrate_client_emails.py
"""

import asyncio
import sys
from collections import defaultdict
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import client, db, normalize_email


async def backfill_email_keys(database) -> dict:
    total = await database.clients.count_documents({})

    modified = 0
    missing_email = 0
    groups = defaultdict(list)

    cursor = database.clients.find({}, {"_id": 0, "id": 1, "email": 1, "email_normalized": 1})

    async for doc in cursor:
        key = normalize_email(doc.get("email", ""))
        if not key:
            missing_email += 1
            continue

        groups[key].append(doc.get("id"))

        if doc.get("email_normalized") != key:
            await database.clients.update_one(
                {"id": doc.get("id")},
                {"$set": {"email_normalized": key}}
            )
            modified += 1

    duplicates = {k: ids for k, ids in groups.items() if len(ids) > 1}

    return {
        "total": total,
        "modified": modified,
        "missing_email": missing_email,
        "duplicates": duplicates,
    }


async def migrate():
    report = await backfill_email_keys(db)
    client.close()

    print("\n════════════════════════════════════")
    print("  MIGRATION REPORT")
    print("════════════════════════════════════")
    print(f"  Total clients:        {report['total']}")
    print(f"  Keys backfilled:      {report['modified']}")
    print(f"  Without email:        {report['missing_email']}")
    print(f"  Duplicate emails:     {len(report['duplicates'])}")
    print("════════════════════════════════════")

    for email, ids in list(report["duplicates"].items())[:20]:
        print(f"  {email}: {', '.join(ids)}")

    return report


if __name__ == "__main__":
    asyncio.run(migrate())
