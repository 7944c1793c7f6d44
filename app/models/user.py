# app/models/user.py - CRM user roles and Smartflo agent identity

from enum import Enum

class UserRole(str, Enum):
    """User roles enumeration"""
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    USER = "user"

# Roles that may own unassigned inbound calls and see every call log
ADMIN_ROLES = [UserRole.SUPER_ADMIN.value, UserRole.ADMIN.value]

def is_admin(user: dict) -> bool:
    return (user or {}).get("role") in ADMIN_ROLES
