"""The organizational unit kind (LDAPOrganizationalUnit)."""

from dataclasses import dataclass
from typing import Dict, List, Any

from .base import DirectoryObject, DirectoryObjectSpec


@dataclass
class OrganizationalUnitSpec(DirectoryObjectSpec):
    name: str = ''
    description: str = ''


class OrganizationalUnit(DirectoryObject):
    
    KIND = 'LDAPOrganizationalUnit'
    RDN_ATTRIBUTE = 'ou'
    
    @classmethod
    def parse_spec(cls, data: Dict[str, Any]) -> OrganizationalUnitSpec:
        return OrganizationalUnitSpec(
            name=str(data.get('name') or ''),
            description=str(data.get('description') or ''),
            **DirectoryObjectSpec.parse_common(data),
        )
    
    def spec_to_dict(self) -> Dict[str, Any]:
        data = self.spec.common_to_dict()
        data['name'] = self.spec.name
        if self.spec.description:
            data['description'] = self.spec.description
        return data
    
    def rdn_value(self) -> str:
        return self.spec.name
    
    def validate(self) -> List[str]:
        errors = super().validate()
        if not self.spec.name:
            errors.append("spec.name is required")
        return errors
