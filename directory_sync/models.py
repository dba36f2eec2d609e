"""
Typed representation of the directorySync plugin configuration.

The configuration has three parts: the sync policy (who acts as default
admin, which users are eligible), the schema mapping (object classes and the
attribute names used by each directory flavor) and the registry of named
domain endpoints. Instances are built once from the raw nested mapping and
are never mutated afterwards.
"""

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


SERVER_SELECTIONS = ('order', 'random')

DEFAULT_GROUP_OBJECT_CLASS = 'groupOfNames'
DEFAULT_USER_OBJECT_CLASS = 'inetOrgPerson'
DEFAULT_LDAP_TYPE = 'openldap'
DEFAULT_BIND_FORMAT = '%username%'
DEFAULT_TIMEOUT = 10
LDAPS_PORT = 636
LDAP_PORT = 389

# Attribute names per directory flavor; configured fieldsMapping entries are
# merged over these.
DEFAULT_FIELDS_MAPPING = {
    'ad': {
        'user': {
            'id': 'objectGuid',
            'firstname': 'givenName',
            'lastname': 'sn',
            'username': 'mail',
            'created': 'whenCreated',
            'modified': 'whenChanged',
            'groups': 'memberOf',
            'enabled': 'userAccountControl',
        },
        'group': {
            'id': 'objectGuid',
            'name': 'cn',
            'created': 'whenCreated',
            'modified': 'whenChanged',
            'users': 'member',
        },
    },
    'openldap': {
        'user': {
            'id': 'entryUuid',
            'firstname': 'givenName',
            'lastname': 'sn',
            'username': 'mail',
            'created': 'createTimestamp',
            'modified': 'modifyTimestamp',
        },
        'group': {
            'id': 'entryUuid',
            'name': 'cn',
            'created': 'createTimestamp',
            'modified': 'modifyTimestamp',
            'users': 'member',
        },
    },
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def merge_fields_mapping(configured: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Merge a configured fieldsMapping table over the built-in defaults.

    Args:
        configured: flavor -> entity type -> logical field -> attribute

    Returns:
        New nested dictionary; neither input is modified
    """
    merged = copy.deepcopy(DEFAULT_FIELDS_MAPPING)
    for flavor, entities in (configured or {}).items():
        target = merged.setdefault(flavor, {})
        for entity, fields in (entities or {}).items():
            target.setdefault(entity, {}).update(fields or {})
    return merged


def freeze(value: Any) -> Any:
    """Return a read-only copy of nested dicts and lists."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze: plain dicts and lists suitable for serialization."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class _Reader:
    """Collects type errors while pulling values out of a raw mapping."""

    def __init__(self, data: Mapping[str, Any], prefix: str, errors: List[str]):
        self.data = data
        self.prefix = prefix
        self.errors = errors

    def _path(self, key: str) -> str:
        return f"{self.prefix}.{key}" if self.prefix else key

    def string(self, key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
        value = self.data.get(key)
        if value is None:
            if required:
                self.errors.append(f"Missing required field {self._path(key)}")
            return default
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            self.errors.append(f"{self._path(key)} must be a string")
            return default
        return str(value)

    def boolean(self, key: str, default: bool = False) -> bool:
        value = self.data.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        self.errors.append(f"{self._path(key)} must be a boolean")
        return default

    def integer(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self.data.get(key)
        if value is None:
            return default
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            self.errors.append(f"{self._path(key)} must be an integer")
            return default
        return value

    def mapping(self, key: str) -> Mapping[str, Any]:
        value = self.data.get(key)
        if value is None:
            return {}
        if isinstance(value, list) and not value:
            # an empty PHP array has no keys to tell it apart from a list
            return {}
        if not isinstance(value, Mapping):
            self.errors.append(f"{self._path(key)} must be a mapping")
            return {}
        return value

    def string_list(self, key: str) -> List[str]:
        value = self.data.get(key)
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, tuple)):
            self.errors.append(f"{self._path(key)} must be a list of strings")
            return []
        result = []
        for i, item in enumerate(value):
            if not isinstance(item, str):
                self.errors.append(f"{self._path(key)}[{i}] must be a string")
                continue
            result.append(item)
        return result


@dataclass(frozen=True)
class SyncPolicy:
    """Which accounts are synchronized and who owns what gets created."""

    enabled: bool = False
    default_user: Optional[str] = None
    default_group_admin_user: Optional[str] = None
    enabled_users_only: bool = False
    use_email_prefix_suffix: bool = False
    user_custom_filters: Optional[str] = None
    group_custom_filters: Optional[str] = None
    email_prefix: Optional[str] = None
    email_suffix: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], errors: List[str], prefix: str = '') -> 'SyncPolicy':
        reader = _Reader(data, prefix, errors)
        return cls(
            enabled=reader.boolean('enabled'),
            default_user=reader.string('defaultUser'),
            default_group_admin_user=reader.string('defaultGroupAdminUser'),
            enabled_users_only=reader.boolean('enabledUsersOnly'),
            use_email_prefix_suffix=reader.boolean('useEmailPrefixSuffix'),
            user_custom_filters=reader.string('userCustomFilters') or None,
            group_custom_filters=reader.string('groupCustomFilters') or None,
            email_prefix=reader.string('emailPrefix') or None,
            email_suffix=reader.string('emailSuffix') or None,
        )

    def to_mapping(self) -> Dict[str, Any]:
        data = {
            'enabled': self.enabled,
            'defaultUser': self.default_user,
            'defaultGroupAdminUser': self.default_group_admin_user,
            'enabledUsersOnly': self.enabled_users_only,
            'useEmailPrefixSuffix': self.use_email_prefix_suffix,
        }
        optional = {
            'userCustomFilters': self.user_custom_filters,
            'groupCustomFilters': self.group_custom_filters,
            'emailPrefix': self.email_prefix,
            'emailSuffix': self.email_suffix,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass(frozen=True)
class SchemaMapping:
    """Object classes and per-flavor attribute names."""

    group_object_class: str = DEFAULT_GROUP_OBJECT_CLASS
    user_object_class: str = DEFAULT_USER_OBJECT_CLASS
    configured_fields_mapping: Mapping[str, Any] = field(default_factory=lambda: freeze({}))
    fields_mapping: Mapping[str, Any] = field(default_factory=lambda: freeze(DEFAULT_FIELDS_MAPPING))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], errors: List[str], prefix: str = '') -> 'SchemaMapping':
        reader = _Reader(data, prefix, errors)
        path = reader._path('fieldsMapping')
        configured = {}
        for flavor, entities in reader.mapping('fieldsMapping').items():
            if not isinstance(entities, Mapping):
                errors.append(f"{path}.{flavor} must be a mapping")
                continue
            configured[flavor] = {}
            for entity, fields in entities.items():
                if not isinstance(fields, Mapping):
                    errors.append(f"{path}.{flavor}.{entity} must be a mapping")
                    continue
                configured[flavor][entity] = {}
                for name, attribute in fields.items():
                    if not isinstance(attribute, str) or not attribute.strip():
                        errors.append(f"{path}.{flavor}.{entity}.{name} must be a non-empty attribute name")
                        continue
                    configured[flavor][entity][name] = attribute
        return cls(
            group_object_class=reader.string('groupObjectClass', DEFAULT_GROUP_OBJECT_CLASS),
            user_object_class=reader.string('userObjectClass', DEFAULT_USER_OBJECT_CLASS),
            configured_fields_mapping=freeze(configured),
            fields_mapping=freeze(merge_fields_mapping(configured)),
        )

    def fields_for(self, flavor: str, entity: str) -> Mapping[str, str]:
        """Logical field -> attribute name for one flavor and entity type."""
        return self.fields_mapping.get(flavor, {}).get(entity, MappingProxyType({}))

    def to_mapping(self) -> Dict[str, Any]:
        data = {
            'groupObjectClass': self.group_object_class,
            'userObjectClass': self.user_object_class,
        }
        if self.configured_fields_mapping:
            data['fieldsMapping'] = thaw(self.configured_fields_mapping)
        return data


@dataclass(frozen=True)
class DomainEndpoint:
    """One named directory endpoint with its connection and bind settings."""

    key: str
    domain_name: str
    username: Optional[str]
    password: Optional[str]
    base_dn: str
    hosts: Tuple[str, ...]
    port: int
    use_ssl: bool = False
    use_tls: bool = False
    ldap_type: str = DEFAULT_LDAP_TYPE
    lazy_bind: bool = True
    server_selection: str = 'order'
    bind_format: str = DEFAULT_BIND_FORMAT
    user_path: str = ''
    group_path: str = ''
    options: Mapping[str, Any] = field(default_factory=lambda: freeze({}))
    timeout: int = DEFAULT_TIMEOUT

    @classmethod
    def from_mapping(cls, key: str, data: Mapping[str, Any], errors: List[str],
                     prefix: str = '') -> 'DomainEndpoint':
        reader = _Reader(data, prefix, errors)
        use_ssl = reader.boolean('use_ssl')
        use_tls = reader.boolean('use_tls')
        return cls(
            key=key,
            domain_name=reader.string('domain_name', key),
            username=reader.string('username'),
            password=reader.string('password'),
            base_dn=reader.string('base_dn', '', required=True),
            hosts=tuple(reader.string_list('hosts')),
            port=reader.integer('port', LDAPS_PORT if use_ssl else LDAP_PORT),
            use_ssl=use_ssl,
            use_tls=use_tls,
            ldap_type=reader.string('ldap_type', DEFAULT_LDAP_TYPE),
            lazy_bind=reader.boolean('lazy_bind', True),
            server_selection=reader.string('server_selection', 'order'),
            bind_format=reader.string('bind_format', DEFAULT_BIND_FORMAT),
            user_path=reader.string('user_path', ''),
            group_path=reader.string('group_path', ''),
            options=freeze(reader.mapping('options')),
            timeout=reader.integer('timeout', DEFAULT_TIMEOUT),
        )

    @property
    def transport(self) -> str:
        """'ldaps', 'starttls' or 'plain'."""
        if self.use_ssl:
            return 'ldaps'
        if self.use_tls:
            return 'starttls'
        return 'plain'

    @property
    def user_base(self) -> str:
        return join_dn(self.user_path, self.base_dn)

    @property
    def group_base(self) -> str:
        return join_dn(self.group_path, self.base_dn)

    def bind_user(self) -> Optional[str]:
        """Expand bind_format into the identity presented to the server."""
        if not self.username:
            return None
        return (self.bind_format
                .replace('%username%', self.username)
                .replace('%domain%', self.domain_name))

    def to_mapping(self) -> Dict[str, Any]:
        return {
            'domain_name': self.domain_name,
            'username': self.username,
            'password': self.password,
            'base_dn': self.base_dn,
            'hosts': list(self.hosts),
            'use_ssl': self.use_ssl,
            'use_tls': self.use_tls,
            'port': self.port,
            'ldap_type': self.ldap_type,
            'lazy_bind': self.lazy_bind,
            'server_selection': self.server_selection,
            'bind_format': self.bind_format,
            'user_path': self.user_path,
            'group_path': self.group_path,
            'options': thaw(self.options),
            'timeout': self.timeout,
        }


@dataclass(frozen=True)
class DirectorySyncConfig:
    """The whole directorySync block."""

    policy: SyncPolicy
    schema: SchemaMapping
    domains: Tuple[DomainEndpoint, ...]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], prefix: str = 'directorySync') -> 'DirectorySyncConfig':
        """
        Build the configuration from the raw directorySync mapping.

        Raises:
            ConfigurationError: If the structure has the wrong shape
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"{prefix} must be a mapping")

        errors = []
        policy = SyncPolicy.from_mapping(data, errors, prefix)
        schema = SchemaMapping.from_mapping(data, errors, prefix)

        ldap = _Reader(data, prefix, errors).mapping('ldap')
        raw_domains = _Reader(ldap, f"{prefix}.ldap", errors).mapping('domains')
        domains = []
        for key, domain in raw_domains.items():
            domain_prefix = f"{prefix}.ldap.domains.{key}"
            if not isinstance(domain, Mapping):
                errors.append(f"{domain_prefix} must be a mapping")
                continue
            domains.append(DomainEndpoint.from_mapping(str(key), domain, errors, domain_prefix))

        if errors:
            raise ConfigurationError(format_errors("Configuration structure is invalid", errors))

        return cls(policy=policy, schema=schema, domains=tuple(domains))

    def domain(self, key: str) -> DomainEndpoint:
        for endpoint in self.domains:
            if endpoint.key == key:
                return endpoint
        raise KeyError(key)

    def to_mapping(self) -> Dict[str, Any]:
        data = self.policy.to_mapping()
        data.update(self.schema.to_mapping())
        data['ldap'] = {
            'domains': {endpoint.key: endpoint.to_mapping() for endpoint in self.domains}
        }
        return data


def join_dn(relative: str, base: str) -> str:
    """Prefix base with a relative DN, tolerating empty parts."""
    relative = (relative or '').strip().strip(',')
    base = (base or '').strip().strip(',')
    if relative and base:
        return f"{relative},{base}"
    return relative or base


def format_errors(title: str, errors: List[str]) -> str:
    return title + ":\n" + "\n".join(f"  - {error}" for error in errors)
