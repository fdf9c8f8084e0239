"""
Shared request dependencies.
The tenant is taken from the X-Org-Id header (authentication is handled upstream).
"""
import uuid
from fastapi import Header, HTTPException


def parse_uuid(value: str, label: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


async def get_org_id(x_org_id: str = Header(..., alias="X-Org-Id")) -> uuid.UUID:
    return parse_uuid(x_org_id, "X-Org-Id header")
