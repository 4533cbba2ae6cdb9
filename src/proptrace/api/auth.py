"""Token-based auth helpers for the proptrace API.

Tokens come from ``settings.api.tokens`` (token -> caller id). Tokens listed in
``settings.api.admin_tokens`` may also use operator endpoints.
"""

from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, status

from proptrace.settings import get_settings


def resolve_caller(token: Optional[str]) -> Optional[Dict[str, str]]:
    """Return caller info for ``token`` or ``None`` when it is unknown."""

    if not token:
        return None
    api = get_settings().api
    caller_id = api.tokens.get(token)
    if not caller_id:
        return None
    role = "admin" if token in api.admin_tokens else "caller"
    return {"caller_id": caller_id, "role": role}


def require_token(x_api_key: Optional[str] = Header(None)) -> Dict[str, str]:
    """Validate the ``X-API-KEY`` header and return caller info.

    Raises:
        HTTPException: 401 if missing, 403 if unknown.
    """
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-API-KEY")
    caller = resolve_caller(x_api_key)
    if not caller:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
    return caller


def require_admin(caller: Dict[str, str] = Depends(require_token)) -> Dict[str, str]:
    if caller.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    return caller
