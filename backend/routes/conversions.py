"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Routes Conversion (enquiry → client)                             ║
║                                                                              ║
║  Two-call flow for the UI:                                                   ║
║   POST /enquiries/{id}/check-duplicate     → match info, no write            ║
║   POST /enquiries/{id}/commit-conversion   → apply the user's decision       ║
║  Single call:                                                                ║
║   POST /enquiries/{id}/convert             → converted | merged | aborted    ║
║  Operator repair:                                                            ║
║   POST /enquiries/{id}/repair-conversion                                     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from fastapi import APIRouter, Depends

from config import get_db
from models import (
    ConvertRequest,
    CommitConversionRequest,
    RepairConversionRequest,
    DuplicateUserCheck,
)
from routes.auth import get_current_user
from services.conversion_service import ConversionService

router = APIRouter(tags=["Conversions"])


def get_conversion_service(db=Depends(get_db)) -> ConversionService:
    return ConversionService(db)


@router.get("/team-members")
async def list_team_members(
    user: dict = Depends(get_current_user),
    service: ConversionService = Depends(get_conversion_service)
):
    """Assignment choices shown before converting"""
    members = await service.list_team_members()
    return {
        "team_members": [m.model_dump() for m in members],
        "count": len(members)
    }


@router.post("/enquiries/check-duplicate-user")
async def check_duplicate_user(
    data: DuplicateUserCheck,
    user: dict = Depends(get_current_user),
    service: ConversionService = Depends(get_conversion_service)
):
    """Intake hint: existing enquiry or client with this email or phone"""
    return await service.check_duplicate_contact(data.email, data.phone)


@router.post("/enquiries/{enquiry_id}/check-duplicate")
async def check_duplicate(
    enquiry_id: str,
    user: dict = Depends(get_current_user),
    service: ConversionService = Depends(get_conversion_service)
):
    return await service.check_duplicate(enquiry_id)


@router.post("/enquiries/{enquiry_id}/convert")
async def convert_enquiry(
    enquiry_id: str,
    data: ConvertRequest,
    user: dict = Depends(get_current_user),
    service: ConversionService = Depends(get_conversion_service)
):
    """
    Convert an enquiry into a client.

    - status "aborted": a client already has this email; show it and call
      again with allow_duplicate=true once the user confirms the merge
    - status "converted" / "merged": navigate to client_id
    """
    result = await service.convert(
        enquiry_id,
        assigned_team_member_id=data.assigned_team_member_id,
        allow_duplicate=data.allow_duplicate,
        skip_assignment=data.skip_assignment,
        user=user.get("email", "system")
    )
    return {"success": True, **result.model_dump(mode="json")}


@router.post("/enquiries/{enquiry_id}/commit-conversion")
async def commit_conversion(
    enquiry_id: str,
    data: CommitConversionRequest,
    user: dict = Depends(get_current_user),
    service: ConversionService = Depends(get_conversion_service)
):
    result = await service.commit_conversion(
        enquiry_id,
        data.decision,
        assigned_team_member_id=data.assigned_team_member_id,
        matched_client_id=data.matched_client_id,
        skip_assignment=data.skip_assignment,
        user=user.get("email", "system")
    )
    return {"success": True, **result.model_dump(mode="json")}


@router.post("/enquiries/{enquiry_id}/repair-conversion")
async def repair_conversion(
    enquiry_id: str,
    data: RepairConversionRequest,
    user: dict = Depends(get_current_user),
    service: ConversionService = Depends(get_conversion_service)
):
    """Re-run reconciliation after a conflict_unresolved answer"""
    result = await service.repair_conversion(
        enquiry_id,
        assigned_team_member_id=data.assigned_team_member_id,
        user=user.get("email", "system")
    )
    return {"success": True, **result.model_dump(mode="json")}
