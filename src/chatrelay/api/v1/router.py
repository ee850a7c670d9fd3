"""V1 API router for the chat endpoints."""

from fastapi import APIRouter

from chatrelay.api.v1.conversations import router as conversations_router

v1_router = APIRouter(prefix="/v1", tags=["Chat"])

v1_router.include_router(conversations_router)
