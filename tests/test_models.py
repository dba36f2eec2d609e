#!/usr/bin/env python3
"""
Unit tests for the configuration model.

Covers building SyncPolicy, SchemaMapping, DomainEndpoint and
DirectorySyncConfig from raw mappings, their defaults, immutability and
serialization back to the raw shape.
"""

import os
import sys
import unittest
from dataclasses import FrozenInstanceError

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.models import (
    DEFAULT_FIELDS_MAPPING,
    ConfigurationError,
    DirectorySyncConfig,
    DomainEndpoint,
    SchemaMapping,
    SyncPolicy,
    join_dn,
    merge_fields_mapping,
)


def make_block(**overrides):
    """A minimal valid directorySync block with one domain."""
    block = {
        'enabled': True,
        'defaultUser': 'ada@passbolt.com',
        'defaultGroupAdminUser': 'ada@passbolt.com',
        'ldap': {
            'domains': {
                'passbolt': {
                    'domain_name': 'passbolt.local',
                    'username': 'cn=readonly,dc=passbolt,dc=local',
                    'password': 'readonly',
                    'base_dn': 'dc=passbolt,dc=local',
                    'hosts': ['ldap1.passbolt.local'],
                    'user_path': 'ou=users',
                    'group_path': 'ou=groups',
                }
            }
        }
    }
    block.update(overrides)
    return block


class TestSyncPolicy(unittest.TestCase):
    """Test cases for SyncPolicy."""

    def test_reads_camel_case_keys(self):
        errors = []
        policy = SyncPolicy.from_mapping({
            'enabled': True,
            'defaultUser': 'ada@passbolt.com',
            'defaultGroupAdminUser': 'betty@passbolt.com',
            'enabledUsersOnly': True,
            'useEmailPrefixSuffix': False,
            'userCustomFilters': '(ou=staff)',
        }, errors)

        self.assertEqual(errors, [])
        self.assertTrue(policy.enabled)
        self.assertEqual(policy.default_user, 'ada@passbolt.com')
        self.assertEqual(policy.default_group_admin_user, 'betty@passbolt.com')
        self.assertTrue(policy.enabled_users_only)
        self.assertEqual(policy.user_custom_filters, '(ou=staff)')
        self.assertIsNone(policy.group_custom_filters)

    def test_empty_filter_is_none(self):
        policy = SyncPolicy.from_mapping({'userCustomFilters': ''}, [])
        self.assertIsNone(policy.user_custom_filters)
        self.assertNotIn('userCustomFilters', policy.to_mapping())

    def test_wrong_types_are_collected(self):
        errors = []
        SyncPolicy.from_mapping({'enabled': 'yes', 'defaultUser': ['ada']}, errors, 'directorySync')
        self.assertIn("directorySync.enabled must be a boolean", errors)
        self.assertIn("directorySync.defaultUser must be a string", errors)

    def test_integer_switches_are_booleans(self):
        policy = SyncPolicy.from_mapping({'enabled': 1, 'enabledUsersOnly': 0}, [])
        self.assertIs(policy.enabled, True)
        self.assertIs(policy.enabled_users_only, False)


class TestSchemaMapping(unittest.TestCase):
    """Test cases for SchemaMapping."""

    def test_defaults(self):
        schema = SchemaMapping.from_mapping({}, [])
        self.assertEqual(schema.group_object_class, 'groupOfNames')
        self.assertEqual(schema.user_object_class, 'inetOrgPerson')
        self.assertEqual(schema.fields_for('openldap', 'group')['users'], 'member')
        self.assertEqual(schema.to_mapping(), {
            'groupObjectClass': 'groupOfNames',
            'userObjectClass': 'inetOrgPerson',
        })

    def test_configured_fields_are_merged_over_defaults(self):
        schema = SchemaMapping.from_mapping({
            'groupObjectClass': 'groupOfUniqueNames',
            'fieldsMapping': {'openldap': {'group': {'users': 'uniqueMember'}}},
        }, [])

        group_fields = schema.fields_for('openldap', 'group')
        self.assertEqual(group_fields['users'], 'uniqueMember')
        self.assertEqual(group_fields['name'], 'cn')
        self.assertEqual(schema.fields_for('ad', 'group')['users'], 'member')
        # only the configured part is written back
        self.assertEqual(schema.to_mapping()['fieldsMapping'],
                         {'openldap': {'group': {'users': 'uniqueMember'}}})

    def test_unknown_flavor_is_added(self):
        schema = SchemaMapping.from_mapping({
            'fieldsMapping': {'freeipa': {'user': {'id': 'ipaUniqueID', 'username': 'mail'}}},
        }, [])
        self.assertEqual(schema.fields_for('freeipa', 'user')['id'], 'ipaUniqueID')
        self.assertEqual(dict(schema.fields_for('freeipa', 'group')), {})

    def test_malformed_fields_mapping(self):
        errors = []
        SchemaMapping.from_mapping({'fieldsMapping': {'openldap': 'member'}}, errors, 'directorySync')
        self.assertEqual(errors, ["directorySync.fieldsMapping.openldap must be a mapping"])

    def test_attribute_names_must_be_strings(self):
        errors = []
        schema = SchemaMapping.from_mapping({'fieldsMapping': {'openldap': {
            'group': {'users': ['uniqueMember', 'member'], 'name': 'cn'},
            'user': {'id': 42, 'username': ''},
        }}}, errors, 'directorySync')

        self.assertEqual(errors, [
            "directorySync.fieldsMapping.openldap.group.users must be a non-empty attribute name",
            "directorySync.fieldsMapping.openldap.user.id must be a non-empty attribute name",
            "directorySync.fieldsMapping.openldap.user.username must be a non-empty attribute name",
        ])
        # rejected entries keep the default attribute
        self.assertEqual(schema.fields_for('openldap', 'group')['users'], 'member')

    def test_list_valued_attribute_rejected_on_load(self):
        block = make_block(fieldsMapping={'openldap': {'group': {'users': ['uniqueMember', 'member']}}})
        with self.assertRaises(ConfigurationError) as context:
            DirectorySyncConfig.from_mapping(block)
        self.assertIn("fieldsMapping.openldap.group.users", str(context.exception))

    def test_fields_mapping_is_read_only(self):
        schema = SchemaMapping.from_mapping({}, [])
        with self.assertRaises(TypeError):
            schema.fields_mapping['ad'] = {}

    def test_merge_does_not_touch_defaults(self):
        merge_fields_mapping({'ad': {'user': {'username': 'userPrincipalName'}}})
        self.assertEqual(DEFAULT_FIELDS_MAPPING['ad']['user']['username'], 'mail')


class TestDomainEndpoint(unittest.TestCase):
    """Test cases for DomainEndpoint."""

    def build(self, **data):
        errors = []
        base = {'base_dn': 'dc=example,dc=com', 'hosts': ['ldap.example.com']}
        base.update(data)
        endpoint = DomainEndpoint.from_mapping('example', base, errors, 'domain')
        return endpoint, errors

    def test_defaults(self):
        endpoint, errors = self.build()
        self.assertEqual(errors, [])
        self.assertEqual(endpoint.domain_name, 'example')
        self.assertEqual(endpoint.port, 389)
        self.assertEqual(endpoint.ldap_type, 'openldap')
        self.assertTrue(endpoint.lazy_bind)
        self.assertEqual(endpoint.server_selection, 'order')
        self.assertEqual(endpoint.bind_format, '%username%')
        self.assertEqual(endpoint.timeout, 10)
        self.assertEqual(endpoint.transport, 'plain')

    def test_ssl_defaults_to_ldaps_port(self):
        endpoint, _ = self.build(use_ssl=True)
        self.assertEqual(endpoint.port, 636)
        self.assertEqual(endpoint.transport, 'ldaps')

    def test_starttls_transport(self):
        endpoint, _ = self.build(use_tls=True, port=389)
        self.assertEqual(endpoint.transport, 'starttls')

    def test_single_host_string(self):
        endpoint, _ = self.build(hosts='ldap.example.com')
        self.assertEqual(endpoint.hosts, ('ldap.example.com',))

    def test_numeric_strings(self):
        endpoint, errors = self.build(port='3389', timeout='30')
        self.assertEqual(errors, [])
        self.assertEqual(endpoint.port, 3389)
        self.assertEqual(endpoint.timeout, 30)

    def test_missing_base_dn(self):
        errors = []
        DomainEndpoint.from_mapping('example', {'hosts': ['ldap.example.com']}, errors, 'domain')
        self.assertEqual(errors, ["Missing required field domain.base_dn"])

    def test_search_bases(self):
        endpoint, _ = self.build(user_path='ou=users', group_path='')
        self.assertEqual(endpoint.user_base, 'ou=users,dc=example,dc=com')
        self.assertEqual(endpoint.group_base, 'dc=example,dc=com')

    def test_bind_user_expands_format(self):
        endpoint, _ = self.build(username='svc-sync', domain_name='corp.example.com',
                                 bind_format='%username%@%domain%')
        self.assertEqual(endpoint.bind_user(), 'svc-sync@corp.example.com')

    def test_anonymous_bind(self):
        endpoint, _ = self.build()
        self.assertIsNone(endpoint.bind_user())

    def test_endpoint_is_frozen(self):
        endpoint, _ = self.build(options={'LDAP_OPT_REFERRALS': 0})
        with self.assertRaises(FrozenInstanceError):
            endpoint.port = 636
        with self.assertRaises(TypeError):
            endpoint.options['LDAP_OPT_REFERRALS'] = 1

    def test_options_round_trip(self):
        endpoint, _ = self.build(options={'LDAP_OPT_RESTART': 1, 'LDAP_OPT_REFERRALS': 0})
        self.assertEqual(endpoint.to_mapping()['options'],
                         {'LDAP_OPT_RESTART': 1, 'LDAP_OPT_REFERRALS': 0})


class TestDirectorySyncConfig(unittest.TestCase):
    """Test cases for DirectorySyncConfig."""

    def test_from_mapping(self):
        config = DirectorySyncConfig.from_mapping(make_block())
        self.assertTrue(config.policy.enabled)
        self.assertEqual(len(config.domains), 1)
        self.assertEqual(config.domain('passbolt').base_dn, 'dc=passbolt,dc=local')

    def test_domains_keep_source_order(self):
        block = make_block()
        domains = block['ldap']['domains']
        domains['zeta'] = dict(domains['passbolt'])
        domains['alpha'] = dict(domains['passbolt'])
        config = DirectorySyncConfig.from_mapping(block)
        self.assertEqual([d.key for d in config.domains], ['passbolt', 'zeta', 'alpha'])

    def test_unknown_domain(self):
        config = DirectorySyncConfig.from_mapping(make_block())
        with self.assertRaises(KeyError):
            config.domain('missing')

    def test_structure_errors_are_aggregated(self):
        block = make_block(enabled='maybe')
        block['ldap']['domains']['broken'] = 'not a mapping'
        with self.assertRaises(ConfigurationError) as context:
            DirectorySyncConfig.from_mapping(block)

        message = str(context.exception)
        self.assertIn("Configuration structure is invalid", message)
        self.assertIn("  - directorySync.enabled must be a boolean", message)
        self.assertIn("  - directorySync.ldap.domains.broken must be a mapping", message)

    def test_not_a_mapping(self):
        with self.assertRaises(ConfigurationError):
            DirectorySyncConfig.from_mapping(['enabled'])

    def test_empty_domains_array(self):
        config = DirectorySyncConfig.from_mapping(make_block(ldap={'domains': []}))
        self.assertEqual(config.domains, ())

    def test_to_mapping_round_trip(self):
        block = make_block(fieldsMapping={'openldap': {'group': {'users': 'uniqueMember'}}})
        config = DirectorySyncConfig.from_mapping(block)
        again = DirectorySyncConfig.from_mapping(config.to_mapping())
        self.assertEqual(again.to_mapping(), config.to_mapping())


class TestJoinDn(unittest.TestCase):

    def test_join(self):
        self.assertEqual(join_dn('ou=users', 'dc=example,dc=com'), 'ou=users,dc=example,dc=com')
        self.assertEqual(join_dn('', 'dc=example,dc=com'), 'dc=example,dc=com')
        self.assertEqual(join_dn('ou=users,', 'dc=example,dc=com'), 'ou=users,dc=example,dc=com')


if __name__ == '__main__':
    unittest.main()
