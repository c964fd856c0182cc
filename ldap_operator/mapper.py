"""
Mapping of directory object specs to LDAP entries.

Each mapping function is pure: given an object, its computed DN and the
secrets it references, it returns the DirectoryEntry the directory should
hold. Optional fields that are empty are left out of the entry so that the
client removes them on update instead of storing empty strings.
"""

import logging
from typing import Callable, Dict, Optional

from argon2 import PasswordHasher
from argon2.exceptions import VerificationError, InvalidHashError

from ldap_operator.ldap_client import DirectoryEntry
from ldap_operator.resources import (
    DirectoryObject,
    OrganizationalUnit,
    Group,
    User,
    Secret,
    InvalidSpecError,
    PASSWORD_SECRET_KEY,
)

logger = logging.getLogger(__name__)

PASSWORD_SCHEME = '{ARGON2}'

OU_OBJECT_CLASSES = ['top', 'organizationalUnit']
GROUP_OBJECT_CLASSES = ['top', 'groupOfNames']
USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'inetOrgPerson']

_hasher = PasswordHasher()

EntryMapper = Callable[[DirectoryObject, str, Dict[str, Secret]], DirectoryEntry]


class HashedPassword(str):
    """
    A userPassword value: the scheme-prefixed Argon2id hash of a password.
    
    The value keeps a private reference to the plaintext so that matches()
    can tell whether a hash already stored in the directory was produced from
    the same password. The plaintext is never part of str() or repr().
    """
    
    def __new__(cls, plaintext: str, hasher: Optional[PasswordHasher] = None):
        hasher = hasher or _hasher
        value = super().__new__(cls, PASSWORD_SCHEME + hasher.hash(plaintext))
        value._plaintext = plaintext
        value._hasher = hasher
        return value
    
    def matches(self, stored: str) -> bool:
        """True when stored is an Argon2 userPassword value for the same plaintext."""
        return password_matches(stored, self._plaintext, self._hasher)
    
    def __reduce__(self):
        return (str, (str(self),))
    
    def __repr__(self):
        return "HashedPassword('{ARGON2}****')"


def hash_password(plaintext: str) -> HashedPassword:
    return HashedPassword(plaintext)


def password_matches(stored: Optional[str], plaintext: str,
                     hasher: Optional[PasswordHasher] = None) -> bool:
    if not stored or not stored.startswith(PASSWORD_SCHEME):
        return False
    hasher = hasher or _hasher
    try:
        return hasher.verify(stored[len(PASSWORD_SCHEME):], plaintext)
    except (VerificationError, InvalidHashError):
        return False


def organizational_unit_to_entry(ou: OrganizationalUnit, dn: str,
                                 secrets: Optional[Dict[str, Secret]] = None) -> DirectoryEntry:
    entry = DirectoryEntry(dn)
    entry.set('objectClass', OU_OBJECT_CLASSES)
    entry.set('ou', ou.spec.name)
    entry.set('description', ou.spec.description)
    return entry


def group_to_entry(group: Group, dn: str,
                   secrets: Optional[Dict[str, Secret]] = None) -> DirectoryEntry:
    entry = DirectoryEntry(dn)
    entry.set('objectClass', GROUP_OBJECT_CLASSES)
    entry.set('cn', group.spec.name)
    entry.set('description', group.spec.description)
    # Raw DNs; existence of the member entries is not checked
    entry.set('member', list(group.spec.members))
    return entry


def user_to_entry(user: User, dn: str,
                  secrets: Optional[Dict[str, Secret]] = None) -> DirectoryEntry:
    """
    Map a user to an inetOrgPerson entry.
    
    Args:
        user: The user object
        dn: The user's computed DN
        secrets: Referenced secrets by name; must hold the password secret if one is referenced
    
    Raises:
        InvalidSpecError: If the referenced password secret is missing or has no password key
    """
    entry = DirectoryEntry(dn)
    entry.set('objectClass', USER_OBJECT_CLASSES)
    entry.set('cn', user.spec.name)
    entry.set('sn', user.spec.surname)
    entry.set('uid', user.spec.username)
    entry.set('mail', user.spec.email)
    
    if user.spec.password_secret_ref is not None:
        secret_name = user.spec.password_secret_ref.name
        secret = (secrets or {}).get(secret_name)
        if secret is None:
            raise InvalidSpecError(f"{user.key}: password secret {secret_name} was not provided")
        plaintext = secret.get(PASSWORD_SECRET_KEY)
        if not plaintext:
            raise InvalidSpecError(
                f"{user.key}: secret {secret_name} has no {PASSWORD_SECRET_KEY!r} key")
        entry.set('userPassword', hash_password(plaintext))
    
    return entry


MAPPERS: Dict[str, EntryMapper] = {
    OrganizationalUnit.KIND: organizational_unit_to_entry,
    Group.KIND: group_to_entry,
    User.KIND: user_to_entry,
}
