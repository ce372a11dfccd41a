from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.db.session import get_db_session
from gigmarket.payments.gateway import PaymentGateway
from gigmarket.payments.provider import get_gateway

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

# Payment gateway selected by settings; tests override get_gateway
Gateway = Annotated[PaymentGateway, Depends(get_gateway)]
