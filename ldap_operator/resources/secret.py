"""Opaque secrets holding credentials and TLS material."""

from typing import Dict, Any, Optional

from .base import Resource, ObjectMeta, InvalidSpecError


class Secret(Resource):
    """
    A mapping of string keys to string values.
    
    The manifest field is ``data`` rather than ``spec``, and values are never
    included in the object's repr.
    """
    
    KIND = 'Secret'
    API_VERSION = 'v1'
    
    @classmethod
    def spec_field(cls) -> str:
        return 'data'
    
    @classmethod
    def parse_spec(cls, data: Dict[str, Any]) -> Dict[str, str]:
        parsed = {}
        for key, value in data.items():
            if value is None:
                raise InvalidSpecError(f"Secret key {key!r} has no value")
            parsed[str(key)] = str(value)
        return parsed
    
    @classmethod
    def create(cls, name: str, namespace: str, data: Dict[str, str]) -> 'Secret':
        return cls(ObjectMeta(name=name, namespace=namespace), dict(data))
    
    def spec_to_dict(self) -> Dict[str, Any]:
        return {key: '****' for key in self.spec}
    
    def get(self, key: str) -> Optional[str]:
        return self.spec.get(key)
