"""
Visa CRM - Repair: re-run the conflict reconciliation for one enquiry.
Use after a conversion answered conflict_unresolved, or when an enquiry is
listed on a client but still shows is_client=false.

Run: cd backend && python3 scripts/repair_conversion.py <enquiry_id> [team_member_id]
"""

import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import client, db
from services.conversion_errors import ConversionError
from services.conversion_service import ConversionService


async def repair(enquiry_id: str, team_member_id: str = None) -> int:
    service = ConversionService(db)
    try:
        result = await service.repair_conversion(
            enquiry_id,
            assigned_team_member_id=team_member_id,
            user="repair_script"
        )
    except ConversionError as e:
        print(f"Repair failed [{e.code}] retryable={e.retryable}: {e.message}")
        return 1
    finally:
        client.close()

    print("\n════════════════════════════════════")
    print("  REPAIR REPORT")
    print("════════════════════════════════════")
    print(f"  Enquiry:     {result.enquiry_id}")
    print(f"  Client:      {result.client_id}")
    print(f"  Status:      {result.status.value}")
    print(f"  Reconciled:  {result.reconciled}")
    print("════════════════════════════════════")
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python3 scripts/repair_conversion.py <enquiry_id> [team_member_id]")
        sys.exit(1)
    member = sys.argv[2] if len(sys.argv) > 2 else None
    sys.exit(asyncio.run(repair(sys.argv[1], member)))
