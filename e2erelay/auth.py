"""
Authentication for relay requests.

Devices authenticate with their device id as bearer token.
"""

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

bearer_scheme = HTTPBearer()


def current_device(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> str:
    """
    Extract the calling device id from the Authorization header.

    Returns:
        Device id
    """
    device_id = credentials.credentials.strip()
    if not device_id:
        raise HTTPException(status_code=401, detail="Missing device id")
    return device_id
