"""Dependencies de autenticación para FastAPI"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional, Dict
from pydantic import ValidationError

from shared.auth.jwt_handler import decode_token
from services.ticket_purchase.models.ticket import Account


security = HTTPBearer()


def _account_from_payload(payload: Dict) -> Optional[Account]:
    user_id = payload.get('sub') or payload.get('user_id')
    email = payload.get('email')
    if not user_id or not email:
        return None
    try:
        return Account(id=str(user_id), email=email)
    except ValidationError:
        return None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Account:
    '''Obtener la cuenta actual desde el token JWT'''
    payload = decode_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido o expirado',
            headers={'WWW-Authenticate': 'Bearer'},
        )

    account = _account_from_payload(payload)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido: falta user_id o email',
        )
    return account


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False))
) -> Optional[Account]:
    '''Obtener la cuenta si está autenticada, None si no (endpoints públicos)'''
    if not credentials:
        return None

    payload = decode_token(credentials.credentials)
    if payload is None:
        return None
    return _account_from_payload(payload)
