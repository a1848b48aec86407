"""
Tokens JWT et dépendances d'authentification.

- Token de site : émis par POST /api/sync/login, porte site_id et coordination_id.
- Token utilisateur : émis par le service d'authentification (même secret), porte le rôle ;
  seuls les rôles de settings.ADMIN_ROLES accèdent aux annulations du journal.
- API externe : header X-API-Token comparé à settings.API_TOKENS.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.exceptions import AuthError
from app.schemas.journal import JournalActor

bearer_scheme = HTTPBearer(auto_error=False)


def create_site_token(site_id: str, coordination_id: int, expires_hours: Optional[int] = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=expires_hours or settings.SITE_TOKEN_EXPIRE_HOURS)
    payload = {
        "site_id": site_id,
        "coordination_id": coordination_id,
        "type": "site",
        "exp": expire,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_user_token(
    user_id: int,
    username: str,
    role: str,
    coordination: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {
        "sub": str(user_id),
        "username": username,
        "role": role,
        "coordination": coordination,
        "type": "user",
        "exp": expire,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str, expected_type: str) -> Dict[str, Any]:
    """Vérifie signature, expiration et type. Lève AuthError."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Token expiré.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("Token invalide.") from exc

    if payload.get("type") != expected_type:
        raise AuthError("Type de token invalide.")
    return payload


def _bearer_payload(credentials: Optional[HTTPAuthorizationCredentials], expected_type: str) -> Dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Token manquant ou format invalide.")
    try:
        return decode_token(credentials.credentials, expected_type)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


def get_current_site(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
):
    """Dépendance FastAPI — site authentifié et toujours actif."""
    from app.services.sync_service import get_active_site

    payload = _bearer_payload(credentials, "site")
    site = get_active_site(db, payload.get("site_id"))
    if site is None:
        raise HTTPException(status_code=401, detail="Site inactif ou inexistant.")
    if site.coordination_id != payload.get("coordination_id"):
        raise HTTPException(status_code=401, detail="Token invalide pour cette coordination.")
    return site


def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> JournalActor:
    """Dépendance FastAPI — administrateur autorisé à consulter et annuler le journal."""
    payload = _bearer_payload(credentials, "user")
    if payload.get("role") not in settings.ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Accès réservé aux administrateurs.")
    return JournalActor(
        name=payload.get("username") or payload.get("sub"),
        role=payload["role"],
        user_id=int(payload["sub"]) if str(payload.get("sub", "")).isdigit() else None,
        coordination=payload.get("coordination"),
        ip=request.client.host if request.client else None,
    )


def verify_api_token(x_api_token: Optional[str] = Header(None)) -> str:
    """Dépendance FastAPI — token de l'API externe."""
    if not x_api_token:
        raise HTTPException(status_code=401, detail="Token API manquant.")
    if not any(hmac.compare_digest(x_api_token.encode(), allowed.encode()) for allowed in settings.API_TOKENS):
        raise HTTPException(status_code=403, detail="Token API invalide.")
    return x_api_token
