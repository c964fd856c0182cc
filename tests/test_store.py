#!/usr/bin/env python3
"""
Unit tests for the in-memory object store and manifest loading.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import Mock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_operator.registry import default_registry
from ldap_operator.notifications import Event
from ldap_operator.resources import OrganizationalUnit, ObjectKey, FINALIZER_NAME, LIFECYCLE_DELETING
from ldap_operator.store import (
    InMemoryObjectStore,
    ObjectNotFoundError,
    AlreadyExistsError,
    ManifestError,
    parse_manifests,
    load_manifests,
    apply_manifests,
)

MANIFESTS = """
apiVersion: ldap.gpu-ninja.com/v1alpha1
kind: LDAPDirectory
metadata:
  name: example
spec:
  domain: example.com
  organization: Example Inc.
  certificateSecretRef:
    name: example-tls
---
apiVersion: v1
kind: Secret
metadata:
  name: example-tls
data:
  ca.crt: "-----BEGIN CERTIFICATE-----"
---
apiVersion: ldap.gpu-ninja.com/v1alpha1
kind: LDAPOrganizationalUnit
metadata:
  name: users
spec:
  directoryRef:
    name: example
  name: users
  description: People
"""

OU_KEY = ObjectKey('LDAPOrganizationalUnit', 'default', 'users')


def make_ou(description='People'):
    return OrganizationalUnit.from_manifest({
        'kind': 'LDAPOrganizationalUnit',
        'metadata': {'name': 'users'},
        'spec': {'directoryRef': {'name': 'example'}, 'name': 'users', 'description': description},
    })


class TestInMemoryObjectStore(unittest.TestCase):
    """Test cases for InMemoryObjectStore."""
    
    def setUp(self):
        self.store = InMemoryObjectStore()
        self.listener = Mock()
        self.store.subscribe(self.listener)
    
    def test_create_and_get_returns_copies(self):
        self.store.create(make_ou())
        
        first = self.store.get_by_key(OU_KEY)
        first.spec.description = 'mutated'
        
        self.assertEqual(self.store.get_by_key(OU_KEY).spec.description, 'People')
        self.assertEqual(first.metadata.generation, 1)
        self.listener.assert_called_once_with(OU_KEY)
    
    def test_create_duplicate(self):
        self.store.create(make_ou())
        with self.assertRaises(AlreadyExistsError):
            self.store.create(make_ou())
    
    def test_apply_bumps_generation_on_spec_change(self):
        self.store.apply(make_ou())
        self.store.apply(make_ou())
        self.assertEqual(self.store.get_by_key(OU_KEY).metadata.generation, 1)
        self.assertEqual(self.listener.call_count, 1)
        
        self.store.apply(make_ou(description='Staff'))
        stored = self.store.get_by_key(OU_KEY)
        self.assertEqual(stored.metadata.generation, 2)
        self.assertEqual(stored.spec.description, 'Staff')
        self.assertEqual(self.listener.call_count, 2)
    
    def test_apply_keeps_status(self):
        self.store.apply(make_ou())
        self.store.update_status(OU_KEY, lambda status: status.set_phase('Ready', 1, 'Ready', 'ok'))
        self.store.apply(make_ou(description='Staff'))
        
        self.assertEqual(self.store.get_by_key(OU_KEY).get_phase(), 'Ready')
    
    def test_update_status_does_not_notify(self):
        self.store.create(make_ou())
        self.listener.reset_mock()
        
        updated = self.store.update_status(OU_KEY, lambda status: status.set_phase('Pending', 1, 'NotReady', 'wait'))
        
        self.assertEqual(updated.get_phase(), 'Pending')
        self.listener.assert_not_called()
    
    def test_update_status_missing_object(self):
        with self.assertRaises(ObjectNotFoundError):
            self.store.update_status(OU_KEY, lambda status: None)
    
    def test_delete_without_finalizers_removes(self):
        self.store.create(make_ou())
        self.store.delete(OU_KEY)
        self.assertIsNone(self.store.get_by_key(OU_KEY))
    
    def test_delete_with_finalizer_marks_deleting(self):
        self.store.create(make_ou())
        self.store.patch(OU_KEY, lambda obj: obj.metadata.add_finalizer(FINALIZER_NAME))
        
        self.store.delete(OU_KEY)
        marked = self.store.get_by_key(OU_KEY)
        self.assertEqual(marked.metadata.lifecycle, LIFECYCLE_DELETING)
        
        result = self.store.patch(OU_KEY, lambda obj: obj.metadata.remove_finalizer(FINALIZER_NAME))
        self.assertIsNone(result)
        self.assertIsNone(self.store.get_by_key(OU_KEY))
    
    def test_patch_only_changes_metadata(self):
        self.store.create(make_ou())
        
        def mutate(obj):
            obj.metadata.labels['team'] = 'identity'
            obj.spec.description = 'ignored'
        
        patched = self.store.patch(OU_KEY, mutate)
        self.assertEqual(patched.metadata.labels, {'team': 'identity'})
        self.assertEqual(patched.spec.description, 'People')
    
    def test_delete_missing_object(self):
        with self.assertRaises(ObjectNotFoundError):
            self.store.delete(OU_KEY)
    
    def test_list_filters(self):
        apply_manifests(self.store, parse_manifests(MANIFESTS, default_registry()))
        
        self.assertEqual(len(self.store.list()), 3)
        self.assertEqual([obj.metadata.name for obj in self.store.list(kind='Secret')], ['example-tls'])
        self.assertEqual(self.store.list(namespace='other'), [])
    
    def test_events_deduplicated(self):
        self.store.record_event(Event(OU_KEY, 'Warning', 'NotReady', 'waiting'))
        self.store.record_event(Event(OU_KEY, 'Warning', 'NotReady', 'waiting'))
        self.store.record_event(Event(OU_KEY, 'Normal', 'Ready', 'done'))
        
        events = self.store.events(OU_KEY)
        self.assertEqual(len(events), 2)
        self.assertEqual({(event.reason, event.count) for event in events}, {('NotReady', 2), ('Ready', 1)})
    
    def test_events_are_capped(self):
        store = InMemoryObjectStore(max_events=2)
        store.record_event(Event(OU_KEY, 'Warning', 'NotReady', 'first'))
        store.record_event(Event(OU_KEY, 'Warning', 'NotReady', 'second'))
        store.record_event(Event(OU_KEY, 'Warning', 'NotReady', 'first'))
        store.record_event(Event(OU_KEY, 'Warning', 'NotReady', 'third'))
        
        self.assertEqual(sorted(event.message for event in store.events()), ['first', 'third'])
    
    def test_recreated_object_starts_without_events(self):
        self.store.create(make_ou())
        self.store.record_event(Event(OU_KEY, 'Normal', 'Deleted', 'entry removed'))
        self.store.delete(OU_KEY)
        self.assertEqual(len(self.store.events(OU_KEY)), 1)
        
        self.store.apply(make_ou())
        self.assertEqual(self.store.events(OU_KEY), [])


class TestManifestLoading(unittest.TestCase):
    """Test cases for manifest parsing and loading."""
    
    def setUp(self):
        self.registry = default_registry()
        self.temp_dir = tempfile.mkdtemp(prefix='ldap_operator_manifests_')
    
    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)
    
    def test_parse_multi_document(self):
        resources = parse_manifests(MANIFESTS, self.registry)
        self.assertEqual([r.KIND for r in resources], ['LDAPDirectory', 'Secret', 'LDAPOrganizationalUnit'])
        self.assertEqual(resources[1].get('ca.crt'), '-----BEGIN CERTIFICATE-----')
    
    def test_unknown_kind(self):
        with self.assertRaises(ManifestError) as context:
            parse_manifests("kind: Deployment\nmetadata:\n  name: web\n", self.registry, 'web.yaml')
        self.assertIn('web.yaml document 0', str(context.exception))
    
    def test_invalid_yaml(self):
        with self.assertRaises(ManifestError):
            parse_manifests("kind: [unclosed", self.registry)
    
    def test_document_must_be_mapping(self):
        with self.assertRaises(ManifestError):
            parse_manifests("- just\n- a list\n", self.registry)
    
    def test_invalid_spec(self):
        text = "kind: LDAPGroup\nmetadata:\n  name: admins\nspec:\n  members: not-a-list\n"
        with self.assertRaises(ManifestError):
            parse_manifests(text, self.registry)
    
    def test_load_directory(self):
        with open(os.path.join(self.temp_dir, '10-directory.yaml'), 'w') as f:
            f.write(MANIFESTS)
        with open(os.path.join(self.temp_dir, 'notes.txt'), 'w') as f:
            f.write('ignored')
        
        resources = load_manifests([self.temp_dir], self.registry)
        self.assertEqual(len(resources), 3)
    
    def test_missing_path(self):
        with self.assertRaises(ManifestError):
            load_manifests([os.path.join(self.temp_dir, 'missing.yaml')], self.registry)


if __name__ == '__main__':
    unittest.main()
