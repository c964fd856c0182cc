"""The group kind (LDAPGroup), a groupOfNames with at least one member."""

from dataclasses import dataclass, field
from typing import Dict, List, Any

from .base import DirectoryObject, DirectoryObjectSpec, InvalidSpecError


@dataclass
class GroupSpec(DirectoryObjectSpec):
    name: str = ''
    description: str = ''
    members: List[str] = field(default_factory=list)


class Group(DirectoryObject):
    
    KIND = 'LDAPGroup'
    RDN_ATTRIBUTE = 'cn'
    
    @classmethod
    def parse_spec(cls, data: Dict[str, Any]) -> GroupSpec:
        members = data.get('members') or []
        if not isinstance(members, list):
            raise InvalidSpecError("spec.members must be a list of distinguished names")
        
        # Ordered, duplicates collapsed
        unique_members = []
        for member in members:
            member = str(member).strip()
            if member and member not in unique_members:
                unique_members.append(member)
        
        return GroupSpec(
            name=str(data.get('name') or ''),
            description=str(data.get('description') or ''),
            members=unique_members,
            **DirectoryObjectSpec.parse_common(data),
        )
    
    def spec_to_dict(self) -> Dict[str, Any]:
        data = self.spec.common_to_dict()
        data['name'] = self.spec.name
        if self.spec.description:
            data['description'] = self.spec.description
        data['members'] = list(self.spec.members)
        return data
    
    def rdn_value(self) -> str:
        return self.spec.name
    
    def validate(self) -> List[str]:
        errors = super().validate()
        if not self.spec.name:
            errors.append("spec.name is required")
        if not self.spec.members:
            errors.append("spec.members must contain at least one distinguished name")
        return errors
