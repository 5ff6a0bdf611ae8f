from typing import Any, Dict, List, Optional

from models.entities.couchbase.common import utc_now
from models.entities.couchbase.users import User, UserData, UserRole
from models.errors import InvalidStateError, NotFoundError
from models.operations.common import Page, build_entity_data, paginate

# Profile fields a user may set on onboarding or profile update
PROFILE_FIELDS = {
    "role",
    "name",
    "phone",
    "address",
    "profile_image",
    "farmer_details",
    "buyer_details",
    "transporter_details",
    "wallet_address",
}


async def user_get_data_for_frontend(user_id: str) -> Dict[str, Any]:
    user = await User.get(user_id)
    if not user:
        raise NotFoundError(f"User with ID {user_id} not found")
    return {"user": {"id": user.id, **user.data.model_dump(mode="json")}}


async def user_get(user_id: str) -> Optional[User]:
    return await User.get(user_id)


async def user_create_if_not_exists_and_get(
    user_id: str,
    email: str,
    role: Optional[UserRole] = None,
    name: Optional[str] = None,
) -> User:
    existing_user = await User.get(user_id)
    if existing_user:
        return existing_user
    new_user_data = UserData(email=email, role=role, name=name, last_login=utc_now())
    return await User.create(new_user_data, key=user_id, user_id=user_id)


async def user_update_onboarding(user_id: str, data: Dict[str, Any]) -> User:
    user = await User.get(user_id)
    if not user:
        raise NotFoundError(f"User with ID {user_id} not found")

    changes = {k: v for k, v in data.items() if k in PROFILE_FIELDS}
    if user.data.role and changes.get("role") and changes["role"] != user.data.role:
        raise InvalidStateError("Role cannot be changed once set")

    updated = build_entity_data(UserData, {**user.data.model_dump(), **changes})
    for key in changes:
        setattr(user.data, key, getattr(updated, key))
    return await User.update(user)


async def user_deactivate(user_id: str) -> User:
    user = await User.get(user_id)
    if not user:
        raise NotFoundError(f"User with ID {user_id} not found")
    user.data.active = False
    return await User.update(user)


async def user_list(
    role: Optional[UserRole] = None,
    city: Optional[str] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[User]:
    conditions: List = [("active", "=", True)]
    if role:
        conditions.append(("role", "=", role))
    if city:
        conditions.append(("address.city", "ICONTAINS", city))
    return await paginate(User, conditions, ["created_at DESC"], page, limit)
