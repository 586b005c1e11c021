from fastapi import APIRouter

from farmassist.api.v1 import chat, progress

api_router = APIRouter()
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(progress.router, prefix="/chat", tags=["progress"])
