"""
Control-plane resource kinds managed by the operator.

Every kind is a plain class; nothing is registered implicitly. Build a
KindRegistry with ``ldap_operator.registry.default_registry()`` and pass it to
the components that need kind dispatch.
"""

from .base import (
    API_GROUP,
    API_VERSION,
    FINALIZER_NAME,
    PHASE_PENDING,
    PHASE_READY,
    PHASE_FAILED,
    LIFECYCLE_ACTIVE,
    LIFECYCLE_DELETING,
    InvalidSpecError,
    ObjectKey,
    ObjectMeta,
    LocalReference,
    ObjectReference,
    Condition,
    ObservedStatus,
    Resource,
    NamedDirectoryObject,
    ReconcilableObject,
    DirectoryObjectStatus,
    DirectoryObject,
)
from .directory import DirectoryRoot, DirectoryStatus, domain_to_dn
from .organizational_unit import OrganizationalUnit
from .group import Group
from .user import User, PASSWORD_SECRET_KEY
from .secret import Secret
