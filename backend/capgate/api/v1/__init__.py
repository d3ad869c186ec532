from fastapi import APIRouter

from capgate.api.v1 import capabilities

api_router = APIRouter()
api_router.include_router(capabilities.router, prefix="/capabilities", tags=["capabilities"])
