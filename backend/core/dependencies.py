from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import get_db
from services.pipeline import OrderPipeline


async def get_pipeline(db: AsyncSession = Depends(get_db)) -> OrderPipeline:
    """Order pipeline bound to the request's database session.

    Routes depend on this instead of building services themselves so tests
    can override it with a pipeline wired to fake collaborators.
    """
    return OrderPipeline(db)
