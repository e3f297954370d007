from fastapi import APIRouter, Depends

from message_notifications.database.connection import mongo_db_dependency
from message_notifications.repositories.device_repository import DeviceRepository
from message_notifications.schemas.notifications import DeviceRegistration
from message_notifications.utils.dependencies import get_current_user


router = APIRouter(prefix="/devices", tags=["push"])


@router.post("/register")
async def register_device(payload: DeviceRegistration, current_user: dict = Depends(get_current_user), db=Depends(mongo_db_dependency)):
    repo = DeviceRepository(db)
    doc = await repo.register(current_user["_id"], payload.platform, payload.token)
    return {"ok": True, "device": {"platform": doc["platform"], "token": doc["token"]}}
