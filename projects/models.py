"""
projects/models.py -- Domain dataclass for the tenant-owned Project entity.

Pure data container with zero logic. Tenant scoping lives in projects/store.py.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class Project:
    """A valuation project. Owned by exactly one tenant for its whole life.

    tenant_id is set by the store from the caller's AuthContext on insert and
    is never updated afterwards.

    id is empty before the record is written to the database.
    """

    name: str
    tenant_id: str = ""
    id: str = ""
    address: Optional[str] = None
    created_by: str = ""
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""
