"""Property listings: creation, host permissions and pricing updates."""

from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import get_property
from .config import settings
from .errors import AuthorizationError, NotFoundError
from .models import Property, PropertyManager, User, UserRole
from .schemas import CurrentUser, PropertyCreateRequest, PropertyUpdateRequest

logger = structlog.get_logger(__name__)

HOST_ROLES = (UserRole.HOST, UserRole.PROPERTY_MANAGER, UserRole.ADMIN)


def can_manage_property(user: CurrentUser, prop: Property) -> bool:
    return user.is_admin or prop.owner_id == user.id or user.id in prop.manager_ids


async def get_managed_property(db: AsyncSession, user: CurrentUser, property_id: UUID) -> Property:
    prop = await get_property(db, property_id)
    if not can_manage_property(user, prop):
        raise AuthorizationError("You do not have permission to manage this property")
    return prop


async def create_property(
    db: AsyncSession,
    user: CurrentUser,
    request: PropertyCreateRequest,
) -> Property:
    if user.role not in HOST_ROLES:
        raise AuthorizationError("Only hosts can create properties")

    owner = await db.get(User, user.id)
    if owner is None:
        raise NotFoundError("User")

    prop = Property(
        owner_id=owner.id,
        title=request.title,
        description=request.description,
        address=request.address,
        city=request.city,
        country=request.country,
        price=request.price,
        cleaning_fee=request.cleaning_fee,
        service_fee=request.service_fee,
        max_guests=request.max_guests,
        is_published=request.is_published,
        currency=(request.currency or settings.DEFAULT_CURRENCY).upper(),
    )
    for manager_id in dict.fromkeys(request.manager_ids):
        if await db.get(User, manager_id) is None:
            raise NotFoundError("Manager")
        prop.managers.append(PropertyManager(manager_id=manager_id))

    db.add(prop)
    await db.commit()

    logger.info("Property created", property_id=str(prop.id), owner_id=str(owner.id))
    return prop


async def update_property(
    db: AsyncSession,
    user: CurrentUser,
    property_id: UUID,
    request: PropertyUpdateRequest,
) -> Property:
    """Apply the fields present in the request. Owner and identity never change."""
    prop = await get_managed_property(db, user, property_id)

    changes = request.model_dump(exclude_unset=True)
    for name, value in changes.items():
        # Required columns cannot be cleared
        if value is None and name in ("title", "description", "price", "max_guests", "is_published"):
            continue
        setattr(prop, name, value)

    await db.commit()

    logger.info("Property updated", property_id=str(prop.id), fields=sorted(changes))
    return prop
