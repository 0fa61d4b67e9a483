#backend/regateo/api/v1/api.py
from fastapi import APIRouter
from regateo.api.v1.endpoints import offers, conversations

api_router = APIRouter()

# Incluir routers para diferentes recursos
api_router.include_router(offers.router, prefix="/offers", tags=["offers"])
api_router.include_router(conversations.router, prefix="/conversations", tags=["conversations"])
