"""
Local identity store.

This module defines the interface the sync engine uses to read and mutate
local users and groups, and a dictionary backed implementation that can be
persisted as a YAML snapshot.
"""

import os
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import yaml

from identity_sync.identities import ExternalIdentityRef, LocalPrincipalRecord, MembershipMode

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the local store cannot complete an operation."""
    pass


class LocalStore(ABC):
    """
    Abstract local identity/authorization store.

    Direct group memberships are owned by the store. The caller serializes
    access so that one sync call works against one consistent view.
    """

    @abstractmethod
    def get_record(self, record_id: str) -> Optional[LocalPrincipalRecord]:
        pass

    @abstractmethod
    def create_user(self, record_id: str, principal_name: str, ref: Optional[ExternalIdentityRef],
                    mode: MembershipMode) -> LocalPrincipalRecord:
        pass

    @abstractmethod
    def create_group(self, record_id: str, principal_name: str, ref: Optional[ExternalIdentityRef],
                     mode: MembershipMode) -> LocalPrincipalRecord:
        pass

    @abstractmethod
    def remove_record(self, record_id: str) -> None:
        pass

    @abstractmethod
    def iter_records(self) -> Iterator[LocalPrincipalRecord]:
        pass

    @abstractmethod
    def declared_member_of(self, record: LocalPrincipalRecord) -> List[LocalPrincipalRecord]:
        """Groups the record is a direct member of."""
        pass

    @abstractmethod
    def declared_members(self, group: LocalPrincipalRecord) -> List[LocalPrincipalRecord]:
        """Direct members of a group."""
        pass

    @abstractmethod
    def add_member(self, group: LocalPrincipalRecord, record: LocalPrincipalRecord) -> bool:
        pass

    @abstractmethod
    def remove_member(self, group: LocalPrincipalRecord, record: LocalPrincipalRecord) -> bool:
        pass

    def get_external_principal_names(self, record: LocalPrincipalRecord) -> Optional[Set[str]]:
        return record.external_principal_names

    def set_external_principal_names(self, record: LocalPrincipalRecord, names: Iterable[str]) -> None:
        """
        Replace the flattened principal names of a DYNAMIC record.

        Raises:
            StoreError: If the record is still in LEGACY mode
        """
        if record.is_legacy:
            raise StoreError(f"Record {record.id} is in legacy mode; convert it before setting principal names")
        record.external_principal_names = set(names)

    def convert_to_dynamic(self, record: LocalPrincipalRecord, names: Iterable[str]) -> None:
        record.convert_to_dynamic(set(names))


class InMemoryStore(LocalStore):
    """Dictionary backed LocalStore."""

    def __init__(self):
        self._records: Dict[str, LocalPrincipalRecord] = {}
        # group id -> ids of direct members, in insertion order
        self._members: Dict[str, Dict[str, None]] = {}

    def get_record(self, record_id: str) -> Optional[LocalPrincipalRecord]:
        return self._records.get(record_id)

    def create_user(self, record_id, principal_name, ref, mode=MembershipMode.DYNAMIC):
        return self._create(record_id, False, principal_name, ref, mode)

    def create_group(self, record_id, principal_name, ref, mode=MembershipMode.DYNAMIC):
        return self._create(record_id, True, principal_name, ref, mode)

    def _create(self, record_id, is_group, principal_name, ref, mode) -> LocalPrincipalRecord:
        if record_id in self._records:
            raise StoreError(f"Record already exists: {record_id}")
        record = LocalPrincipalRecord(id=record_id, is_group=is_group, principal_name=principal_name,
                                      external_id=ref, mode=mode)
        self._records[record_id] = record
        if is_group:
            self._members[record_id] = {}
        logger.debug(f"Created {'group' if is_group else 'user'} record {record_id}")
        return record

    def remove_record(self, record_id: str) -> None:
        if record_id not in self._records:
            raise StoreError(f"Record not found: {record_id}")
        del self._records[record_id]
        self._members.pop(record_id, None)
        for members in self._members.values():
            members.pop(record_id, None)
        logger.debug(f"Removed record {record_id}")

    def iter_records(self) -> Iterator[LocalPrincipalRecord]:
        return iter(list(self._records.values()))

    def declared_member_of(self, record: LocalPrincipalRecord) -> List[LocalPrincipalRecord]:
        return [self._records[group_id] for group_id, members in self._members.items()
                if record.id in members]

    def declared_members(self, group: LocalPrincipalRecord) -> List[LocalPrincipalRecord]:
        members = self._group_members(group)
        return [self._records[member_id] for member_id in members]

    def add_member(self, group: LocalPrincipalRecord, record: LocalPrincipalRecord) -> bool:
        members = self._group_members(group)
        if record.id not in self._records:
            raise StoreError(f"Record not found: {record.id}")
        if record.id in members:
            return False
        members[record.id] = None
        return True

    def remove_member(self, group: LocalPrincipalRecord, record: LocalPrincipalRecord) -> bool:
        members = self._group_members(group)
        if record.id not in members:
            return False
        del members[record.id]
        return True

    def _group_members(self, group: LocalPrincipalRecord) -> Dict[str, None]:
        if not group.is_group or group.id not in self._members:
            raise StoreError(f"Not a group: {group.id}")
        return self._members[group.id]

    @contextmanager
    def transaction(self):
        """
        Apply the changes made inside the block as one unit.

        If the block raises, every record and membership is reset to its state
        before the block and the exception propagates. Record objects fetched
        inside a failed block no longer belong to the store afterwards.
        """
        snapshot = copy.deepcopy(self.to_dict())
        try:
            yield self
        except Exception:
            restored = InMemoryStore.from_dict(snapshot)
            self._records, self._members = restored._records, restored._members
            logger.debug(f"Rolled back store to {len(self._records)} records")
            raise

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the store into a plain snapshot mapping."""
        records = []
        for record in self._records.values():
            entry = {
                'id': record.id,
                'group': record.is_group,
                'principal_name': record.principal_name,
                'mode': record.mode.value,
            }
            if record.external_id is not None:
                entry['external_id'] = record.external_id.to_string()
            if record.last_synced is not None:
                entry['last_synced'] = record.last_synced
            if record.external_principal_names is not None:
                entry['external_principal_names'] = sorted(record.external_principal_names)
            if record.properties:
                entry['properties'] = dict(record.properties)
            records.append(entry)
        memberships = {group_id: list(members) for group_id, members in self._members.items() if members}
        return {'records': records, 'memberships': memberships}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InMemoryStore':
        """
        Build a store from a snapshot mapping.

        Records without an explicit ``mode`` are classified once here: a record
        with a sync timestamp and no principal names was written by the legacy
        sync path.
        """
        store = cls()
        for entry in data.get('records', []) or []:
            names = entry.get('external_principal_names')
            if 'mode' in entry:
                mode = MembershipMode(entry['mode'])
            elif entry.get('last_synced') is not None and names is None:
                mode = MembershipMode.LEGACY
            else:
                mode = MembershipMode.DYNAMIC
            ref = entry.get('external_id')
            record = store._create(entry['id'], bool(entry.get('group', False)),
                                   entry.get('principal_name', entry['id']),
                                   ExternalIdentityRef.from_string(ref) if ref else None, mode)
            record.last_synced = entry.get('last_synced')
            record.external_principal_names = set(names) if names is not None else None
            record.properties = dict(entry.get('properties') or {})
        for group_id, member_ids in (data.get('memberships') or {}).items():
            group = store.get_record(group_id)
            if group is None:
                raise StoreError(f"Membership references unknown group: {group_id}")
            for member_id in member_ids:
                member = store.get_record(member_id)
                if member is None:
                    raise StoreError(f"Membership references unknown record: {member_id}")
                store.add_member(group, member)
        return store

    @classmethod
    def load(cls, path: str) -> 'InMemoryStore':
        """Load a YAML snapshot; a missing file yields an empty store."""
        if not os.path.exists(path):
            logger.info(f"Store snapshot {path} not found, starting with an empty store")
            return cls()
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise StoreError(f"Invalid YAML in store snapshot {path}: {e}")
        store = cls.from_dict(data)
        logger.info(f"Loaded {len(store._records)} records from {path}")
        return store

    def dump(self, path: str) -> None:
        try:
            with open(path, 'w') as f:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise StoreError(f"Failed to write store snapshot {path}: {e}")
        logger.info(f"Saved {len(self._records)} records to {path}")
