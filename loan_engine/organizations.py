"""
Organizations Module

Registry of lending organizations. Loans, charges and settings are scoped
to an organization; the scheduled engine job iterates the active ones.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from .audit import AuditTrail, AuditEventType
from .errors import LoanValidationError, NotFoundError
from .storage import StorageInterface


@dataclass
class Organization:
    """A lending institution using the engine"""
    id: str
    name: str
    code: str  # Unique short code, e.g. "ACME_MFI"
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Organization':
        """Create Organization from dictionary"""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class OrganizationManager:
    """Creates and lists organizations"""

    ORGANIZATION_TABLE = "organizations"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail

    def create_organization(self, name: str, code: str,
                            organization_id: Optional[str] = None) -> Organization:
        """Create a new organization with a unique code"""
        if not name or not name.strip():
            raise LoanValidationError("Organization name is required")
        if self.get_organization_by_code(code):
            raise LoanValidationError(f"Organization code '{code}' already exists")

        organization = Organization(
            id=organization_id or str(uuid.uuid4()),
            name=name,
            code=code,
        )
        self.storage.save(self.ORGANIZATION_TABLE, organization.id, organization.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ORGANIZATION_CREATED,
                entity_type="organization",
                entity_id=organization.id,
                metadata={"name": name, "code": code}
            )
        return organization

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        data = self.storage.load(self.ORGANIZATION_TABLE, organization_id)
        if data:
            return Organization.from_dict(data)
        return None

    def get_organization_by_code(self, code: str) -> Optional[Organization]:
        rows = self.storage.find(self.ORGANIZATION_TABLE, {'code': code})
        if rows:
            return Organization.from_dict(rows[0])
        return None

    def list_active_organizations(self) -> List[Organization]:
        """Active organizations ordered by name"""
        rows = self.storage.find(self.ORGANIZATION_TABLE, {'is_active': True})
        organizations = [Organization.from_dict(row) for row in rows]
        organizations.sort(key=lambda o: o.name)
        return organizations

    def deactivate_organization(self, organization_id: str) -> Organization:
        organization = self.get_organization(organization_id)
        if organization is None:
            raise NotFoundError(f"Organization {organization_id} not found")
        organization.is_active = False
        organization.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.ORGANIZATION_TABLE, organization.id, organization.to_dict())
        return organization
