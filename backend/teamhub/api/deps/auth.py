from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.core.security import bearer_scheme, decode_access_token
from teamhub.db.session import get_db
from teamhub.models.user import User


async def get_current_user(
    credentials=Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Dependency for protected endpoints: bearer JWT `sub` -> active User.
    """
    user = await db.get(User, decode_access_token(credentials.credentials))
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User inactive")

    return user
