"""
Sales Targets - Auth helpers
Session token -> user, role checks for the admin / manager endpoints.
"""

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import db, now_iso

security = HTTPBearer(auto_error=False)

ADMIN_ROLES = ("admin", "super_admin")
MANAGER_ROLES = ADMIN_ROLES + ("sales_manager",)


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Récupère l'utilisateur connecté depuis le token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Non authentifié")

    token = credentials.credentials
    session = await db.sessions.find_one({
        "token": token,
        "expires_at": {"$gt": now_iso()}
    })

    if not session:
        raise HTTPException(status_code=401, detail="Session expirée")

    user = await db.users.find_one(
        {"id": session["user_id"]},
        {"_id": 0, "password": 0}
    )

    if not user:
        raise HTTPException(status_code=401, detail="Utilisateur non trouvé")

    if not user.get("is_active", user.get("active", True)):
        raise HTTPException(status_code=403, detail="Compte désactivé")

    return user


async def require_admin(user: dict = Depends(get_current_user)):
    """Admin or super_admin access."""
    if user.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Accès admin requis")
    return user


async def require_manager(user: dict = Depends(get_current_user)):
    """Admin or sales manager access."""
    if user.get("role") not in MANAGER_ROLES:
        raise HTTPException(status_code=403, detail="Accès manager requis")
    return user
