"""
FastAPI dependencies shared by the routers
"""

from typing import AsyncIterator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import async_session_maker
from ingestion.coordinator import RunCoordinator


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_coordinator(request: Request) -> RunCoordinator:
    """The RunCoordinator created at application startup"""
    return request.app.state.coordinator
