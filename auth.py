import hashlib
import logging
import secrets
import time
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings

logger = logging.getLogger("agronex_api.auth")

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> str:
    """Valida un JWT y devuelve el id de usuario (claim userId o sub)."""
    if not settings.jwt_secret:
        raise RuntimeError("JWT_SECRET no configurado")
    payload = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise jwt.InvalidTokenError("El token no contiene usuario")
    return str(user_id)


def create_token(user_id: str, expires_in: int = 7 * 24 * 3600) -> str:
    """Emite un token firmado para un usuario (uso interno y pruebas)."""
    now = int(time.time())
    return jwt.encode(
        {"userId": str(user_id), "iat": now, "exp": now + expires_in},
        settings.jwt_secret,
        algorithm="HS256",
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Se requiere token de acceso")
    if not settings.jwt_secret:
        logger.error("JWT_SECRET no configurado en el servidor")
        raise HTTPException(status_code=500, detail="Error de configuración del servidor")
    try:
        return decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(status_code=403, detail="Token inválido o expirado")


# Tokens de dispositivo: solo se guarda el hash

def generate_device_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(str(token).encode("utf-8")).hexdigest()


def generate_device_id() -> str:
    return f"dev_{int(time.time() * 1000):x}_{secrets.token_hex(4)}"
