"""Shared router dependencies."""

from typing import Optional

from fastapi import Header

from sequencer.config import get_settings


async def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    """Tenant scope for the request, from the X-Tenant-ID header."""
    return x_tenant_id or get_settings().default_tenant_id
