#!/usr/bin/env python3
"""
Unit tests for resource kinds, status handling and the kind registry.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_operator.registry import KindRegistry, UnknownKindError, default_registry
from ldap_operator.resources import (
    DirectoryRoot,
    OrganizationalUnit,
    Group,
    User,
    Secret,
    ObjectKey,
    ObservedStatus,
    InvalidSpecError,
    domain_to_dn,
    API_VERSION,
    PHASE_PENDING,
    PHASE_READY,
    LIFECYCLE_ACTIVE,
    LIFECYCLE_DELETING,
)
from ldap_operator.resources.base import utcnow


DIRECTORY_MANIFEST = {
    'apiVersion': API_VERSION,
    'kind': 'LDAPDirectory',
    'metadata': {'name': 'example', 'namespace': 'identity'},
    'spec': {
        'domain': 'example.com',
        'organization': 'Example Inc.',
        'certificateSecretRef': {'name': 'example-tls'},
        'addressOverride': 'ldaps://ldap.example.com:636',
        'debugLevel': 256,
    },
}


class TestDomainToDN(unittest.TestCase):
    
    def test_dotted_domain(self):
        self.assertEqual(domain_to_dn('example.com'), 'dc=example,dc=com')
        self.assertEqual(domain_to_dn('a.b.c'), 'dc=a,dc=b,dc=c')
        self.assertEqual(domain_to_dn('corp.example.com.'), 'dc=corp,dc=example,dc=com')
    
    def test_invalid_domains(self):
        for domain in ('', 'example..com', '.'):
            with self.assertRaises(InvalidSpecError):
                domain_to_dn(domain)


class TestDirectoryRoot(unittest.TestCase):
    
    def setUp(self):
        self.directory = DirectoryRoot.from_manifest(DIRECTORY_MANIFEST)
    
    def test_parse_spec(self):
        self.assertEqual(self.directory.key, ObjectKey('LDAPDirectory', 'identity', 'example'))
        self.assertEqual(self.directory.spec.organization, 'Example Inc.')
        self.assertEqual(self.directory.spec.certificate_secret_ref.name, 'example-tls')
        self.assertEqual(self.directory.spec.debug_level, 256)
        self.assertEqual(self.directory.validate(), [])
    
    def test_derived_names(self):
        self.assertEqual(self.directory.admin_password_secret_name, 'ldap-example-admin-password')
        self.assertEqual(self.directory.service_name, 'ldap-example')
        self.assertEqual(self.directory.get_distinguished_name(), 'dc=example,dc=com')
        self.assertEqual(self.directory.admin_bind_dn(), 'cn=admin,dc=example,dc=com')
    
    def test_recorded_base_dn_wins(self):
        self.directory.status.base_dn = 'dc=old,dc=example'
        self.directory.spec.domain = 'new.example'
        self.assertEqual(self.directory.get_distinguished_name(), 'dc=old,dc=example')
        self.assertEqual(self.directory.computed_base_dn(), 'dc=new,dc=example')
    
    def test_validation_errors(self):
        directory = DirectoryRoot.from_manifest({
            'kind': 'LDAPDirectory',
            'metadata': {'name': 'broken'},
            'spec': {'domain': 'bad..domain'},
        })
        errors = directory.validate()
        self.assertEqual(len(errors), 3)
        self.assertEqual(directory.metadata.namespace, 'default')
    
    def test_status_to_dict_includes_base_dn(self):
        self.directory.status.base_dn = 'dc=example,dc=com'
        self.assertEqual(self.directory.to_manifest()['status']['baseDN'], 'dc=example,dc=com')


class TestDirectoryObjects(unittest.TestCase):
    
    def test_group_members_deduplicated_in_order(self):
        group = Group.from_manifest({
            'kind': 'LDAPGroup',
            'metadata': {'name': 'admins'},
            'spec': {
                'directoryRef': {'name': 'example'},
                'name': 'admins',
                'members': ['uid=bob,dc=example,dc=com', 'uid=alice,dc=example,dc=com',
                            'uid=bob,dc=example,dc=com'],
            },
        })
        self.assertEqual(group.spec.members, ['uid=bob,dc=example,dc=com', 'uid=alice,dc=example,dc=com'])
        self.assertEqual(group.relative_dn(), 'cn=admins')
        self.assertEqual(group.validate(), [])
    
    def test_group_requires_members(self):
        group = Group.from_manifest({
            'kind': 'LDAPGroup',
            'metadata': {'name': 'empty'},
            'spec': {'directoryRef': {'name': 'example'}, 'name': 'empty'},
        })
        self.assertIn('spec.members must contain at least one distinguished name', group.validate())
    
    def test_group_members_must_be_list(self):
        with self.assertRaises(InvalidSpecError):
            Group.parse_spec({'name': 'admins', 'members': 'uid=bob'})
    
    def test_user_fields(self):
        user = User.from_manifest({
            'kind': 'LDAPUser',
            'metadata': {'name': 'alice'},
            'spec': {
                'directoryRef': {'name': 'example'},
                'parentRef': {'kind': 'LDAPOrganizationalUnit', 'name': 'users'},
                'username': 'alice',
                'name': 'Alice Liddell',
                'surname': 'Liddell',
                'passwordSecretRef': {'name': 'alice-password'},
            },
        })
        self.assertEqual(user.relative_dn(), 'uid=alice')
        self.assertEqual(user.spec.parent_ref.kind, 'LDAPOrganizationalUnit')
        self.assertEqual([ref.name for ref in user.secret_references()], ['alice-password'])
        self.assertEqual(user.validate(), [])
    
    def test_user_requires_directory_and_names(self):
        user = User.from_manifest({'kind': 'LDAPUser', 'metadata': {'name': 'nobody'}, 'spec': {}})
        errors = user.validate()
        self.assertIn('spec.directoryRef is required', errors)
        self.assertIn('spec.username is required', errors)
        self.assertIn('spec.surname is required', errors)
    
    def test_rdn_value_is_escaped(self):
        ou = OrganizationalUnit.from_manifest({
            'kind': 'LDAPOrganizationalUnit',
            'metadata': {'name': 'sales'},
            'spec': {'directoryRef': {'name': 'example'}, 'name': 'Sales, EMEA'},
        })
        self.assertEqual(ou.relative_dn(), 'ou=Sales\\, EMEA')
    
    def test_reference_requires_name(self):
        with self.assertRaises(InvalidSpecError):
            OrganizationalUnit.parse_spec({'directoryRef': {}, 'name': 'users'})
    
    def test_metadata_requires_name(self):
        with self.assertRaises(InvalidSpecError):
            OrganizationalUnit.from_manifest({'kind': 'LDAPOrganizationalUnit', 'metadata': {}, 'spec': {}})


class TestSecret(unittest.TestCase):
    
    def test_values_masked_in_manifest(self):
        secret = Secret.create('alice-password', 'default', {'password': 'changeme'})
        self.assertEqual(secret.get('password'), 'changeme')
        self.assertEqual(secret.to_manifest()['data'], {'password': '****'})
        self.assertEqual(secret.to_manifest()['apiVersion'], 'v1')


class TestObservedStatus(unittest.TestCase):
    
    def test_set_phase_flips_conditions(self):
        status = ObservedStatus()
        status.set_phase(PHASE_PENDING, 1, 'NotReady', 'waiting')
        status.set_phase(PHASE_READY, 1, 'Ready', 'done')
        
        self.assertEqual(status.phase, PHASE_READY)
        self.assertEqual(status.get_condition(PHASE_READY).status, 'True')
        self.assertEqual(status.get_condition(PHASE_PENDING).status, 'False')
        self.assertIsNone(status.get_condition('Failed'))
    
    def test_transition_time_only_moves_on_change(self):
        status = ObservedStatus()
        status.set_phase(PHASE_READY, 1, 'Ready', 'done')
        first = status.get_condition(PHASE_READY).last_transition_time
        
        status.set_phase(PHASE_READY, 2, 'Ready', 'still done')
        condition = status.get_condition(PHASE_READY)
        self.assertEqual(condition.last_transition_time, first)
        self.assertEqual(condition.observed_generation, 2)
        self.assertEqual(condition.message, 'still done')
    
    def test_unknown_phase_rejected(self):
        with self.assertRaises(ValueError):
            ObservedStatus().set_phase('Unknown', 1, 'x', 'y')


class TestLifecycle(unittest.TestCase):
    
    def test_lifecycle_tag(self):
        ou = OrganizationalUnit.from_manifest({
            'kind': 'LDAPOrganizationalUnit',
            'metadata': {'name': 'users'},
            'spec': {'directoryRef': {'name': 'example'}, 'name': 'users'},
        })
        self.assertEqual(ou.metadata.lifecycle, LIFECYCLE_ACTIVE)
        ou.metadata.deletion_timestamp = utcnow()
        self.assertEqual(ou.metadata.lifecycle, LIFECYCLE_DELETING)
    
    def test_finalizers_idempotent(self):
        ou = OrganizationalUnit.from_manifest({
            'kind': 'LDAPOrganizationalUnit',
            'metadata': {'name': 'users'},
            'spec': {'directoryRef': {'name': 'example'}, 'name': 'users'},
        })
        self.assertTrue(ou.metadata.add_finalizer('x'))
        self.assertFalse(ou.metadata.add_finalizer('x'))
        self.assertTrue(ou.metadata.remove_finalizer('x'))
        self.assertFalse(ou.metadata.remove_finalizer('x'))


class TestKindRegistry(unittest.TestCase):
    
    def test_default_registry(self):
        registry = default_registry()
        self.assertEqual(set(registry.kinds()),
                         {'Secret', 'LDAPDirectory', 'LDAPOrganizationalUnit', 'LDAPGroup', 'LDAPUser'})
        self.assertIs(registry.get('LDAPUser'), User)
        self.assertIs(registry.get('LDAPUser', API_VERSION), User)
    
    def test_unknown_kind(self):
        with self.assertRaises(UnknownKindError):
            default_registry().get('Deployment')
    
    def test_api_version_mismatch(self):
        with self.assertRaises(UnknownKindError):
            default_registry().get('LDAPUser', 'ldap.example.com/v2')
    
    def test_conflicting_registration(self):
        registry = KindRegistry()
        registry.register(User)
        registry.register(User)
        
        class OtherUser(User):
            pass
        
        with self.assertRaises(ValueError):
            registry.register(OtherUser)
    
    def test_registries_are_independent(self):
        registry = KindRegistry()
        registry.register(Secret)
        self.assertFalse(registry.is_registered('LDAPUser'))
        self.assertTrue(default_registry().is_registered('LDAPUser'))


if __name__ == '__main__':
    unittest.main()
