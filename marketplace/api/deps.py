"""
FastAPI dependencies for authentication, authorization and service wiring.

Tokens are issued by the external authentication service; this API only
verifies them and loads the matching user record.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger, set_user_id
from marketplace.database.connection import get_db
from marketplace.database.models.user import User
from marketplace.services.notifications.dispatcher import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from marketplace.services.orders.enums import UserRole
from marketplace.services.orders.service import OrderService
from marketplace.services.payments.gateway import PaynowGateway, get_payment_gateway
from marketplace.services.settlement.aggregator import SettlementAggregator

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def get_app_settings() -> Settings:
    return get_settings()


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> User:
    """
    Validate the bearer token and load the user it names.

    Raises:
        HTTPException: 401 if the token is missing, invalid or names no user;
            403 if the account is inactive
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.warning(
            "Authentication failed: JWT validation error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise credentials_exception

    user_id_str: Optional[str] = payload.get("sub")
    if user_id_str is None:
        logger.warning("Authentication failed: Token missing 'sub' claim")
        raise credentials_exception

    try:
        user_id = UUID(user_id_str)
    except ValueError:
        logger.warning("Authentication failed: Invalid user ID format", user_id=user_id_str)
        raise credentials_exception

    try:
        user = await db.get(User, user_id)
    except SQLAlchemyError as e:
        logger.error("Database error during user retrieval", user_id=str(user_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        )

    if user is None:
        logger.warning("Authentication failed: User not found", user_id=str(user_id))
        raise credentials_exception

    if not user.is_active:
        logger.warning("Authentication failed: User account is inactive", user_id=str(user.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive user account",
        )

    set_user_id(str(user.id))
    return user


def require_role(*allowed_roles: UserRole):
    """
    Create a dependency that requires one of ``allowed_roles``.

    Example:
        @router.get("/seller/earnings")
        async def earnings(user: Annotated[User, Depends(require_role(UserRole.SELLER))]):
            ...
    """

    async def role_checker(
        current_user: Annotated[User, Depends(get_current_user)],
    ) -> User:
        if current_user.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                user_id=str(current_user.id),
                user_role=current_user.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current_user

    return role_checker


def get_gateway() -> PaynowGateway:
    return get_payment_gateway()


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


def get_order_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    gateway: Annotated[PaynowGateway, Depends(get_gateway)],
    dispatcher: Annotated[NotificationDispatcher, Depends(get_dispatcher)],
) -> OrderService:
    return OrderService(db, settings=settings, gateway=gateway, dispatcher=dispatcher)


def get_settlement_aggregator(
    db: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> SettlementAggregator:
    return SettlementAggregator(db, settings=settings)


CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentSeller = Annotated[User, Depends(require_role(UserRole.SELLER))]
CurrentSellerOrAdmin = Annotated[User, Depends(require_role(UserRole.SELLER, UserRole.ADMIN))]
CurrentAdmin = Annotated[User, Depends(require_role(UserRole.ADMIN))]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
SettlementDep = Annotated[SettlementAggregator, Depends(get_settlement_aggregator)]
