"""
Reading directories into snapshots and reconciling snapshots.

DirectoryReader walks every configured domain, searches users and groups
with the object classes and filters of the configuration, and normalizes
each entry through the fields mapping of the domain's directory flavor.
The aggregated result is a DirectorySnapshot. Two snapshots reconcile into
a ChangeSet describing what appeared, disappeared or changed in between.
"""

import os
import json
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from directory_sync.ldap_client import DomainClient, LDAPConnectionError, LDAPQueryError
from directory_sync.models import DirectorySyncConfig, DomainEndpoint

logger = logging.getLogger(__name__)

# Active Directory: accounts without the ACCOUNTDISABLE bit of userAccountControl
AD_ENABLED_USERS_FILTER = '(!(userAccountControl:1.2.840.113556.1.4.803:=2))'
AD_ACCOUNT_DISABLED = 0x2

USER_FIELDS = ('username', 'firstname', 'lastname', 'created', 'modified', 'enabled')
SNAPSHOT_VERSION = 1


class SnapshotError(Exception):
    """Raised when a snapshot file cannot be read or written."""
    pass


def _and(parts: List[str]) -> str:
    parts = [p for p in parts if p]
    if len(parts) == 1:
        return parts[0]
    return '(&' + ''.join(parts) + ')'


def build_user_filter(config: DirectorySyncConfig, endpoint: DomainEndpoint) -> str:
    """Object class, custom user filter and, on AD, the enabled-account filter."""
    parts = [f"(objectClass={config.schema.user_object_class})", config.policy.user_custom_filters]
    if config.policy.enabled_users_only and endpoint.ldap_type == 'ad':
        parts.append(AD_ENABLED_USERS_FILTER)
    return _and(parts)


def build_group_filter(config: DirectorySyncConfig, endpoint: DomainEndpoint) -> str:
    return _and([f"(objectClass={config.schema.group_object_class})", config.policy.group_custom_filters])


def _lookup(attributes: Mapping[str, Any], name: Optional[str]) -> Any:
    if not name:
        return None
    if name in attributes:
        return attributes[name]
    lowered = name.lower()
    for key, value in attributes.items():
        if key.lower() == lowered:
            return value
    return None


def _scalar(value: Any) -> Any:
    if isinstance(value, bytes):
        if len(value) == 16:
            # objectGUID is stored little-endian
            return str(uuid.UUID(bytes_le=value))
        return value.decode('utf-8', errors='replace')
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def attribute_value(attributes: Mapping[str, Any], name: Optional[str]) -> Any:
    """First value of an attribute, or None."""
    value = _lookup(attributes, name)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value in ('', None):
        return None
    return _scalar(value)


def attribute_values(attributes: Mapping[str, Any], name: Optional[str]) -> List[Any]:
    """All values of an attribute as a list."""
    value = _lookup(attributes, name)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    return [_scalar(v) for v in value if v not in ('', None)]


def _is_enabled(flavor: str, attributes: Mapping[str, Any], field_name: Optional[str]) -> bool:
    if flavor != 'ad' or not field_name:
        return True
    flags = attribute_value(attributes, field_name)
    try:
        return not int(flags) & AD_ACCOUNT_DISABLED
    except (TypeError, ValueError):
        return True


@dataclass
class DirectorySnapshot:
    """Users and groups of every domain at one point in time."""

    users: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    groups: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    domains: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    taken_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': SNAPSHOT_VERSION,
            'taken_at': self.taken_at,
            'domains': list(self.domains),
            'errors': dict(self.errors),
            'users': self.users,
            'groups': self.groups,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DirectorySnapshot':
        if data.get('version') != SNAPSHOT_VERSION:
            raise SnapshotError(f"Unsupported snapshot version: {data.get('version')!r}")
        return cls(
            users=dict(data.get('users') or {}),
            groups=dict(data.get('groups') or {}),
            domains=list(data.get('domains') or []),
            errors=dict(data.get('errors') or {}),
            taken_at=data.get('taken_at', ''),
        )

    def save(self, path: str):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as e:
            raise SnapshotError(f"Could not write snapshot {path}: {e}")
        logger.info(f"Snapshot written to {path}")

    @classmethod
    def load(cls, path: str) -> 'DirectorySnapshot':
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except OSError as e:
            raise SnapshotError(f"Could not read snapshot {path}: {e}")
        except json.JSONDecodeError as e:
            raise SnapshotError(f"Snapshot {path} is not valid JSON: {e}")
        return cls.from_dict(data)

    def domain_of(self, key: str) -> str:
        return key.split(':', 1)[0]


@dataclass
class ChangeSet:
    """Differences between two snapshots."""

    users_added: List[str] = field(default_factory=list)
    users_removed: List[str] = field(default_factory=list)
    users_updated: List[str] = field(default_factory=list)
    groups_added: List[str] = field(default_factory=list)
    groups_removed: List[str] = field(default_factory=list)
    groups_updated: List[str] = field(default_factory=list)
    membership: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not any(self.summary().values())

    def summary(self) -> Dict[str, int]:
        return {
            'users_added': len(self.users_added),
            'users_removed': len(self.users_removed),
            'users_updated': len(self.users_updated),
            'groups_added': len(self.groups_added),
            'groups_removed': len(self.groups_removed),
            'groups_updated': len(self.groups_updated),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'users_added': self.users_added,
            'users_removed': self.users_removed,
            'users_updated': self.users_updated,
            'groups_added': self.groups_added,
            'groups_removed': self.groups_removed,
            'groups_updated': self.groups_updated,
            'membership': self.membership,
        }


def reconcile(previous: DirectorySnapshot, current: DirectorySnapshot) -> ChangeSet:
    """
    Compare two snapshots.

    Entries of a domain that failed to read in `current` are never reported
    as removed; an unreachable directory is not an empty one.
    """
    changes = ChangeSet()
    failed = set(current.errors)

    def removable(key: str) -> bool:
        return current.domain_of(key) not in failed

    previous_users = set(previous.users)
    current_users = set(current.users)
    changes.users_added = sorted(current_users - previous_users)
    changes.users_removed = sorted(k for k in previous_users - current_users if removable(k))
    changes.users_updated = sorted(
        k for k in previous_users & current_users
        if any(previous.users[k].get(f) != current.users[k].get(f) for f in USER_FIELDS)
    )

    previous_groups = set(previous.groups)
    current_groups = set(current.groups)
    changes.groups_added = sorted(current_groups - previous_groups)
    changes.groups_removed = sorted(k for k in previous_groups - current_groups if removable(k))

    for key in sorted(previous_groups & current_groups):
        before = previous.groups[key]
        after = current.groups[key]
        old_members = set(before.get('members', []))
        new_members = set(after.get('members', []))
        if before.get('name') != after.get('name') or old_members != new_members:
            changes.groups_updated.append(key)
        if old_members != new_members:
            changes.membership[key] = {
                'added': sorted(new_members - old_members),
                'removed': sorted(old_members - new_members),
            }

    return changes


class DirectoryReader:
    """Reads users and groups from every configured domain."""

    def __init__(self, config: DirectorySyncConfig, error_handling: Optional[Dict[str, Any]] = None,
                 client_factory: Callable[..., DomainClient] = DomainClient):
        self.config = config
        self.error_handling = error_handling or {}
        self.client_factory = client_factory

    def user_attributes(self, endpoint: DomainEndpoint) -> List[str]:
        fields = self.config.schema.fields_for(endpoint.ldap_type, 'user')
        attributes = set(fields.values())
        if self.config.policy.use_email_prefix_suffix and self.config.policy.email_prefix:
            attributes.add(self.config.policy.email_prefix)
        return sorted(attributes)

    def group_attributes(self, endpoint: DomainEndpoint) -> List[str]:
        return sorted(set(self.config.schema.fields_for(endpoint.ldap_type, 'group').values()))

    def read(self) -> DirectorySnapshot:
        """
        Read all domains.

        A domain that cannot be reached or searched is recorded in
        snapshot.errors and the remaining domains are still read.
        """
        snapshot = DirectorySnapshot()
        for endpoint in self.config.domains:
            snapshot.domains.append(endpoint.key)
            try:
                users, groups = self.read_domain(endpoint)
            except (LDAPConnectionError, LDAPQueryError) as e:
                logger.error(f"Failed to read domain {endpoint.key}: {e}")
                snapshot.errors[endpoint.key] = str(e)
                continue

            for user in users:
                snapshot.users[f"{endpoint.key}:{user['id']}"] = user
            for group in groups:
                snapshot.groups[f"{endpoint.key}:{group['id']}"] = group
            logger.info(f"Domain {endpoint.key}: {len(users)} users, {len(groups)} groups")

        return snapshot

    def read_domain(self, endpoint: DomainEndpoint):
        """Return (users, groups) of one domain, both normalized."""
        with self.client_factory(endpoint, self.error_handling) as client:
            client.connect()
            user_entries = client.search_users(build_user_filter(self.config, endpoint),
                                               self.user_attributes(endpoint))
            group_entries = client.search_groups(build_group_filter(self.config, endpoint),
                                                 self.group_attributes(endpoint))

        users = [u for u in (self.normalize_user(endpoint, e) for e in user_entries) if u]
        groups = [self.normalize_group(endpoint, e) for e in group_entries]
        return users, groups

    def normalize_user(self, endpoint: DomainEndpoint, entry: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Map a user entry to logical fields; None when it has no username."""
        fields = self.config.schema.fields_for(endpoint.ldap_type, 'user')
        attributes = entry.get('attributes', {})
        policy = self.config.policy

        if policy.use_email_prefix_suffix:
            prefix = attribute_value(attributes, policy.email_prefix)
            username = f"{prefix}{policy.email_suffix}" if prefix else None
        else:
            username = attribute_value(attributes, fields.get('username'))

        if not username:
            logger.warning(f"User entry has no username: {entry.get('dn')}")
            return None

        return {
            'id': str(attribute_value(attributes, fields.get('id')) or entry['dn']),
            'dn': entry['dn'],
            'domain': endpoint.key,
            'username': str(username).lower(),
            'firstname': attribute_value(attributes, fields.get('firstname')),
            'lastname': attribute_value(attributes, fields.get('lastname')),
            'created': attribute_value(attributes, fields.get('created')),
            'modified': attribute_value(attributes, fields.get('modified')),
            'enabled': _is_enabled(endpoint.ldap_type, attributes, fields.get('enabled')),
        }

    def normalize_group(self, endpoint: DomainEndpoint, entry: Mapping[str, Any]) -> Dict[str, Any]:
        """Map a group entry to logical fields; members are the member DNs."""
        fields = self.config.schema.fields_for(endpoint.ldap_type, 'group')
        attributes = entry.get('attributes', {})
        return {
            'id': str(attribute_value(attributes, fields.get('id')) or entry['dn']),
            'dn': entry['dn'],
            'domain': endpoint.key,
            'name': attribute_value(attributes, fields.get('name')),
            'created': attribute_value(attributes, fields.get('created')),
            'modified': attribute_value(attributes, fields.get('modified')),
            'members': sorted(str(m) for m in attribute_values(attributes, fields.get('users'))),
        }



def carry_over_failed_domains(previous: DirectorySnapshot, current: DirectorySnapshot) -> int:
    """
    Copy entries of domains that failed in `current` from `previous`.

    Returns:
        Number of users and groups carried over
    """
    carried = 0
    for source, target in ((previous.users, current.users), (previous.groups, current.groups)):
        for key, value in source.items():
            if current.domain_of(key) in current.errors and key not in target:
                target[key] = value
                carried += 1
    if carried:
        logger.info(f"Kept {carried} entries from the previous snapshot for unreachable domains")
    return carried
