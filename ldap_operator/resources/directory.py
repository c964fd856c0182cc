"""
The directory root kind (LDAPDirectory).

A directory root names a managed directory instance: its domain (which fixes
the DN suffix), organization, endpoint and TLS material.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional

from .base import (
    Resource,
    NamedDirectoryObject,
    ReconcilableObject,
    ObservedStatus,
    LocalReference,
    InvalidSpecError,
)


def domain_to_dn(domain: str) -> str:
    """Convert a dotted domain to a DN suffix ("a.b.c" -> "dc=a,dc=b,dc=c")."""
    labels = [label.strip() for label in (domain or '').strip().strip('.').split('.')]
    if not labels or any(not label for label in labels):
        raise InvalidSpecError(f"Invalid domain: {domain!r}")
    return ','.join(f"dc={label}" for label in labels)


@dataclass
class DirectorySpec:
    domain: str = ''
    organization: str = ''
    certificate_secret_ref: Optional[LocalReference] = None
    image: str = ''
    address_override: str = ''
    debug_level: Optional[int] = None
    file_descriptor_limit: Optional[int] = None
    resources: Dict[str, Any] = field(default_factory=dict)
    volume_mounts: List[Dict[str, Any]] = field(default_factory=list)
    volume_claim_templates: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DirectoryStatus(ObservedStatus):
    # DN suffix recorded on first successful reconcile; never recomputed afterwards
    base_dn: str = ''
    
    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.base_dn:
            data['baseDN'] = self.base_dn
        return data


class DirectoryRoot(Resource, NamedDirectoryObject, ReconcilableObject):
    """The top of a managed directory tree."""
    
    KIND = 'LDAPDirectory'
    
    @classmethod
    def new_status(cls) -> DirectoryStatus:
        return DirectoryStatus()
    
    @classmethod
    def parse_spec(cls, data: Dict[str, Any]) -> DirectorySpec:
        return DirectorySpec(
            domain=str(data.get('domain') or ''),
            organization=str(data.get('organization') or ''),
            certificate_secret_ref=LocalReference.from_dict(
                data.get('certificateSecretRef'), 'certificateSecretRef'),
            image=str(data.get('image') or ''),
            address_override=str(data.get('addressOverride') or ''),
            debug_level=data.get('debugLevel'),
            file_descriptor_limit=data.get('fileDescriptorLimit'),
            resources=dict(data.get('resources') or {}),
            volume_mounts=list(data.get('volumeMounts') or []),
            volume_claim_templates=list(data.get('volumeClaimTemplates') or []),
        )
    
    def spec_to_dict(self) -> Dict[str, Any]:
        spec = self.spec
        data = {
            'domain': spec.domain,
            'organization': spec.organization,
            'image': spec.image,
        }
        if spec.certificate_secret_ref:
            data['certificateSecretRef'] = spec.certificate_secret_ref.to_dict()
        if spec.address_override:
            data['addressOverride'] = spec.address_override
        if spec.debug_level is not None:
            data['debugLevel'] = spec.debug_level
        if spec.file_descriptor_limit is not None:
            data['fileDescriptorLimit'] = spec.file_descriptor_limit
        if spec.resources:
            data['resources'] = spec.resources
        if spec.volume_mounts:
            data['volumeMounts'] = spec.volume_mounts
        if spec.volume_claim_templates:
            data['volumeClaimTemplates'] = spec.volume_claim_templates
        return data
    
    def validate(self) -> List[str]:
        errors = []
        try:
            domain_to_dn(self.spec.domain)
        except InvalidSpecError as e:
            errors.append(f"spec.domain: {e}")
        if not self.spec.organization:
            errors.append("spec.organization is required")
        if self.spec.certificate_secret_ref is None:
            errors.append("spec.certificateSecretRef is required")
        return errors
    
    @property
    def admin_password_secret_name(self) -> str:
        return f"ldap-{self.metadata.name}-admin-password"
    
    @property
    def service_name(self) -> str:
        return f"ldap-{self.metadata.name}"
    
    def computed_base_dn(self) -> str:
        return domain_to_dn(self.spec.domain)
    
    def get_distinguished_name(self, dn_computer=None, visited=None) -> str:
        """The DN suffix: the recorded one once set, otherwise derived from the domain."""
        if self.status.base_dn:
            return self.status.base_dn
        return self.computed_base_dn()
    
    def admin_bind_dn(self) -> str:
        return f"cn=admin,{self.get_distinguished_name()}"
    
    def resolve_references(self, resolver):
        return resolver.resolve_secret(self.spec.certificate_secret_ref, self)
