"""The user kind (LDAPUser), an inetOrgPerson named by its uid."""

from dataclasses import dataclass
from typing import Dict, List, Any, Optional

from .base import DirectoryObject, DirectoryObjectSpec, LocalReference

PASSWORD_SECRET_KEY = 'password'


@dataclass
class UserSpec(DirectoryObjectSpec):
    username: str = ''
    name: str = ''
    surname: str = ''
    email: str = ''
    password_secret_ref: Optional[LocalReference] = None


class User(DirectoryObject):
    
    KIND = 'LDAPUser'
    RDN_ATTRIBUTE = 'uid'
    
    @classmethod
    def parse_spec(cls, data: Dict[str, Any]) -> UserSpec:
        return UserSpec(
            username=str(data.get('username') or ''),
            name=str(data.get('name') or ''),
            surname=str(data.get('surname') or ''),
            email=str(data.get('email') or ''),
            password_secret_ref=LocalReference.from_dict(
                data.get('passwordSecretRef'), 'passwordSecretRef'),
            **DirectoryObjectSpec.parse_common(data),
        )
    
    def spec_to_dict(self) -> Dict[str, Any]:
        data = self.spec.common_to_dict()
        data.update({
            'username': self.spec.username,
            'name': self.spec.name,
            'surname': self.spec.surname,
        })
        if self.spec.email:
            data['email'] = self.spec.email
        if self.spec.password_secret_ref:
            data['passwordSecretRef'] = self.spec.password_secret_ref.to_dict()
        return data
    
    def rdn_value(self) -> str:
        return self.spec.username
    
    def secret_references(self) -> List[LocalReference]:
        if self.spec.password_secret_ref is None:
            return []
        return [self.spec.password_secret_ref]
    
    def validate(self) -> List[str]:
        errors = super().validate()
        for field_name in ('username', 'name', 'surname'):
            if not getattr(self.spec, field_name):
                errors.append(f"spec.{field_name} is required")
        return errors
