# api/__init__.py
from api.auth import (
    AuthConfig,
    get_current_user,
    require_roles,
    require_admin,
)

__all__ = [
    "AuthConfig",
    "get_current_user",
    "require_roles",
    "require_admin",
]
