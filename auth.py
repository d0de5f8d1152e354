from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_session
from models import Principal, User


async def get_current_user(
    x_user_id: int | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> Principal:
    """Resolve the caller set by the authentication gateway.

    Identity and role always come from the stored user record; anything the
    client puts in the request body about who it is gets ignored.
    """
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token is missing")

    user = await session.get(User, x_user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found for token")
    return Principal.from_user(user)
