"""
FastAPI dependencies
"""

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from tracking.services import TrackingServices


def get_services(request: Request) -> TrackingServices:
    return request.app.state.services


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield a database session bound to the app's services"""
    services: TrackingServices = request.app.state.services
    async with services.session_factory() as session:
        yield session
