#!/usr/bin/env python3
"""
Unit tests for the operator entry point.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import Server, Connection, MOCK_SYNC, NONE

from ldap_operator.ldap_client import DirectoryClient
from ldap_operator.main import (
    Operator,
    main,
    EXIT_OK,
    EXIT_FAILURES,
    EXIT_CONFIG_ERROR,
    EXIT_UNEXPECTED,
)
from ldap_operator.resources import PHASE_READY

ADMIN_PASSWORD = 'admin-password'

CONFIG = """
manager:
  workers: 2
  resync_interval_seconds: 60
reconcile:
  retry_interval_seconds: 0.05
ldap:
  max_retries: 1
  retry_wait_seconds: 0
logging:
  level: INFO
  console_output: false
"""

DIRECTORY = """
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
  ca.crt: PEM
---
apiVersion: v1
kind: Secret
metadata:
  name: ldap-example-admin-password
data:
  password: admin-password
"""

OBJECTS = """
apiVersion: ldap.gpu-ninja.com/v1alpha1
kind: LDAPOrganizationalUnit
metadata:
  name: users
spec:
  directoryRef:
    name: example
  name: users
---
apiVersion: ldap.gpu-ninja.com/v1alpha1
kind: LDAPUser
metadata:
  name: alice
spec:
  directoryRef:
    name: example
  parentRef:
    kind: LDAPOrganizationalUnit
    name: users
  username: alice
  name: Alice Liddell
  surname: Liddell
---
apiVersion: ldap.gpu-ninja.com/v1alpha1
kind: LDAPGroup
metadata:
  name: admins
spec:
  directoryRef:
    name: example
  name: admins
  members:
    - uid=alice,ou=users,dc=example,dc=com
"""


def make_mock_directory():
    server = Server('fake_directory', get_info=NONE)
    seed = Connection(server, client_strategy=MOCK_SYNC)
    seed.strategy.add_entry('dc=example,dc=com', {'objectClass': ['top', 'domain'], 'dc': 'example'})
    seed.strategy.add_entry('cn=admin,dc=example,dc=com', {
        'objectClass': ['top', 'person'],
        'cn': 'admin',
        'sn': 'admin',
        'userPassword': ADMIN_PASSWORD,
    })
    return server


class OperatorTestCase(unittest.TestCase):
    
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = self.write('config.yaml', CONFIG)
        self.manifest_dir = os.path.join(self.temp_dir, 'manifests')
        os.makedirs(self.manifest_dir)
        self.write('manifests/directory.yaml', DIRECTORY)
        self.server = make_mock_directory()
    
    def tearDown(self):
        shutil.rmtree(self.temp_dir)
    
    def write(self, name, content):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            f.write(content)
        return path
    
    def client_factory(self, settings):
        return DirectoryClient(settings, server=self.server, client_strategy=MOCK_SYNC)
    
    def make_operator(self, config_path=None):
        return Operator(config_path=config_path or self.config_path, manifest_paths=[self.manifest_dir],
                        client_factory=self.client_factory)


class TestOperatorRun(OperatorTestCase):
    
    def test_once_all_ready(self):
        self.write('manifests/objects.yaml', OBJECTS)
        operator = self.make_operator()
        
        self.assertEqual(operator.run(once=True, timeout=10), EXIT_OK)
        
        for kind, name in (('LDAPDirectory', 'example'), ('LDAPOrganizationalUnit', 'users'),
                           ('LDAPUser', 'alice'), ('LDAPGroup', 'admins')):
            self.assertEqual(operator.store.get(kind, 'default', name).get_phase(), PHASE_READY)
        
        reader = self.client_factory({'bind_dn': 'cn=admin,dc=example,dc=com', 'bind_password': ADMIN_PASSWORD})
        self.assertEqual(reader.get_entry('uid=alice,ou=users,dc=example,dc=com').get('sn'), 'Liddell')
        reader.disconnect()
    
    def test_failed_object(self):
        self.write('manifests/objects.yaml', """
kind: LDAPGroup
metadata:
  name: empty
spec:
  directoryRef:
    name: example
  name: empty
""")
        operator = self.make_operator()
        
        self.assertEqual(operator.run(once=True, timeout=10), EXIT_FAILURES)
        self.assertIn(('LDAPGroup', 'empty'), [(k.kind, k.name) for k in operator.manager.failures])
    
    def test_not_settled(self):
        self.write('manifests/directory.yaml', DIRECTORY.replace('name: example-tls', 'name: missing-tls', 1))
        operator = self.make_operator()
        
        self.assertEqual(operator.run(once=True, timeout=0.5), EXIT_FAILURES)
    
    def test_missing_config_without_manifests(self):
        operator = Operator(config_path=os.path.join(self.temp_dir, 'missing.yaml'))
        self.assertEqual(operator.run(once=True), EXIT_CONFIG_ERROR)
    
    def test_missing_config_with_manifests_uses_defaults(self):
        operator = self.make_operator(config_path=os.path.join(self.temp_dir, 'missing.yaml'))
        operator._load_configuration()
        self.assertEqual(operator.config['manager']['workers'], 4)
    
    def test_invalid_manifest(self):
        self.write('manifests/broken.yaml', "kind: Deployment\nmetadata:\n  name: web\n")
        self.assertEqual(self.make_operator().run(once=True), EXIT_CONFIG_ERROR)
    
    def test_unexpected_error(self):
        operator = self.make_operator()
        with patch.object(Operator, '_build', side_effect=RuntimeError('boom')):
            self.assertEqual(operator.run(once=True), EXIT_UNEXPECTED)


class TestHealthCheck(OperatorTestCase):
    
    def test_healthy(self):
        health = self.make_operator().health_check()
        
        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['configuration']['status'], 'pass')
        self.assertEqual(health['checks']['manifests']['message'], '3 manifests loaded')
        self.assertEqual(health['checks']['directories']['default/example']['status'], 'pass')
        self.assertEqual(health['checks']['notifications']['status'], 'skip')
    
    def test_credentials_not_generated_yet(self):
        self.write('manifests/directory.yaml', DIRECTORY.split('---')[0] + '---' + DIRECTORY.split('---')[1])
        health = self.make_operator().health_check()
        
        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['directories']['default/example']['status'], 'skip')
    
    def test_unreachable_directory(self):
        self.write('manifests/directory.yaml', DIRECTORY.replace('password: admin-password', 'password: wrong'))
        health = self.make_operator().health_check()
        
        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['directories']['default/example']['status'], 'fail')
    
    def test_bad_configuration(self):
        path = self.write('bad.yaml', "manager:\n  workers: 0\n")
        health = self.make_operator(config_path=path).health_check()
        
        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['configuration']['status'], 'fail')
        self.assertNotIn('manifests', health['checks'])


class TestMain(unittest.TestCase):
    
    @patch('ldap_operator.main.Operator')
    def test_once(self, mock_operator):
        mock_operator.return_value.run.return_value = EXIT_OK
        argv = ['ldap-operator', '--config', 'config.yaml', '-m', 'a.yaml', '-m', 'manifests', '--once',
                '--timeout', '30']
        
        with patch.object(sys, 'argv', argv):
            with self.assertRaises(SystemExit) as context:
                main()
        
        self.assertEqual(context.exception.code, EXIT_OK)
        mock_operator.assert_called_once_with(config_path='config.yaml', manifest_paths=['a.yaml', 'manifests'])
        mock_operator.return_value.run.assert_called_once_with(once=True, timeout=30.0)
    
    @patch('ldap_operator.main.Operator')
    def test_health_check(self, mock_operator):
        mock_operator.return_value.health_check.return_value = {'status': 'unhealthy', 'checks': {}}
        
        with patch.object(sys, 'argv', ['ldap-operator', '--health-check']):
            with patch('builtins.print'):
                with self.assertRaises(SystemExit) as context:
                    main()
        
        self.assertEqual(context.exception.code, 1)
    
    @patch('ldap_operator.main.send_test_email')
    def test_test_email(self, mock_send):
        mock_send.return_value = True
        temp_dir = tempfile.mkdtemp()
        try:
            path = os.path.join(temp_dir, 'config.yaml')
            with open(path, 'w') as f:
                f.write("notifications:\n  smtp_server: smtp.example.com\n  email_to: [ops@example.com]\n")
            
            with patch.object(sys, 'argv', ['ldap-operator', '--config', path, '--test-email']):
                with patch('builtins.print'):
                    with self.assertRaises(SystemExit) as context:
                        main()
        finally:
            shutil.rmtree(temp_dir)
        
        self.assertEqual(context.exception.code, 0)
        self.assertEqual(mock_send.call_args[0][0]['smtp_server'], 'smtp.example.com')


if __name__ == '__main__':
    unittest.main()
