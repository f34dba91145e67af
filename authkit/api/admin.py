# =============================================================================
# Admin API Routes
# =============================================================================
#
# Every endpoint here requires the configured admin role.
#
#   Roles:        GET/POST /admin/roles
#                 GET/PATCH/DELETE /admin/roles/{role_id}
#                 PUT /admin/roles/{role_id}/permissions
#   Permissions:  GET/POST /admin/permissions
#                 GET/PATCH/DELETE /admin/permissions/{permission_id}
#   Users:        GET/POST /admin/users
#                 GET /admin/users/{user_id}
#                 PUT /admin/users/{user_id}/roles
#                 POST /admin/users/{user_id}/ban, /unban
#
# =============================================================================

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

from authkit.api.state import AppState, get_kit
from authkit.auth.policies import Protect, guarded
from authkit.core.models import Permission, Role, RoleWithPermissions, UserFilter, UserProfile

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(guarded(Protect(admin=True)))],
)


# =============================================================================
# Request Models
# =============================================================================

class CreateRoleRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    description: str | None = None
    permission_ids: list[str] = Field(default_factory=list)


class UpdateRoleRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=64)
    description: str | None = None


class SetPermissionsRequest(BaseModel):
    permission_ids: list[str]


class CreatePermissionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None


class UpdatePermissionRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None


class CreateUserRequest(BaseModel):
    email: EmailStr
    password: str
    username: str | None = Field(default=None, min_length=3, max_length=40)
    full_name: str | None = None
    phone_number: str | None = None
    role_ids: list[str] = Field(default_factory=list)


class SetRolesRequest(BaseModel):
    role_ids: list[str]


# =============================================================================
# Roles
# =============================================================================

@router.get("/roles", response_model=list[RoleWithPermissions])
async def list_roles(kit: AppState = Depends(get_kit)):
    return await kit.roles.list()


@router.post("/roles", response_model=RoleWithPermissions, status_code=201)
async def create_role(data: CreateRoleRequest, kit: AppState = Depends(get_kit)):
    return await kit.roles.create(data.name, data.description, data.permission_ids)


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(role_id: str, kit: AppState = Depends(get_kit)):
    return await kit.roles.get(role_id)


@router.patch("/roles/{role_id}", response_model=RoleWithPermissions)
async def update_role(role_id: str, data: UpdateRoleRequest, kit: AppState = Depends(get_kit)):
    return await kit.roles.update(role_id, name=data.name, description=data.description)


@router.put("/roles/{role_id}/permissions", response_model=RoleWithPermissions)
async def set_role_permissions(role_id: str, data: SetPermissionsRequest, kit: AppState = Depends(get_kit)):
    return await kit.roles.set_permissions(role_id, data.permission_ids)


@router.delete("/roles/{role_id}", response_model=Role)
async def delete_role(role_id: str, kit: AppState = Depends(get_kit)):
    return await kit.roles.delete(role_id)


# =============================================================================
# Permissions
# =============================================================================

@router.get("/permissions", response_model=list[Permission])
async def list_permissions(kit: AppState = Depends(get_kit)):
    return await kit.permissions.list()


@router.post("/permissions", response_model=Permission, status_code=201)
async def create_permission(data: CreatePermissionRequest, kit: AppState = Depends(get_kit)):
    return await kit.permissions.create(data.name, data.description)


@router.get("/permissions/{permission_id}", response_model=Permission)
async def get_permission(permission_id: str, kit: AppState = Depends(get_kit)):
    return await kit.permissions.get(permission_id)


@router.patch("/permissions/{permission_id}", response_model=Permission)
async def update_permission(permission_id: str, data: UpdatePermissionRequest, kit: AppState = Depends(get_kit)):
    return await kit.permissions.update(permission_id, name=data.name, description=data.description)


@router.delete("/permissions/{permission_id}", response_model=Permission)
async def delete_permission(permission_id: str, kit: AppState = Depends(get_kit)):
    return await kit.permissions.delete(permission_id)


# =============================================================================
# Users
# =============================================================================

@router.get("/users", response_model=list[UserProfile])
async def list_users(
    email: str | None = None,
    username: str | None = None,
    limit: int = 100,
    offset: int = 0,
    kit: AppState = Depends(get_kit),
):
    filters = UserFilter(email=email, username=username, limit=min(max(limit, 1), 500), offset=max(offset, 0))
    return await kit.users.list(filters)


@router.post("/users", response_model=UserProfile, status_code=201)
async def create_user(data: CreateUserRequest, kit: AppState = Depends(get_kit)):
    """Create a pre-verified account."""
    return await kit.users.create(
        email=data.email,
        password=data.password,
        username=data.username,
        full_name=data.full_name,
        phone_number=data.phone_number,
        role_ids=data.role_ids,
    )


@router.get("/users/{user_id}", response_model=UserProfile)
async def get_user(user_id: str, kit: AppState = Depends(get_kit)):
    return await kit.users.get(user_id)


@router.put("/users/{user_id}/roles", response_model=UserProfile)
async def set_user_roles(user_id: str, data: SetRolesRequest, kit: AppState = Depends(get_kit)):
    return await kit.users.update_roles(user_id, data.role_ids)


@router.post("/users/{user_id}/ban", response_model=UserProfile)
async def ban_user(user_id: str, kit: AppState = Depends(get_kit)):
    return await kit.users.set_ban(user_id, True)


@router.post("/users/{user_id}/unban", response_model=UserProfile)
async def unban_user(user_id: str, kit: AppState = Depends(get_kit)):
    return await kit.users.set_ban(user_id, False)
