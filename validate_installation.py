#!/usr/bin/env python3
"""
Installation check for Identity Sync.

Verifies that the third-party libraries and the identity_sync modules import,
then syncs a nested group membership against the in-memory provider and store.
"""

import sys
import importlib

REQUIRED_IMPORTS = [
    # (distribution, import name)
    ("ldap3", "ldap3"),
    ("PyYAML", "yaml"),
    ("cryptography", "cryptography.hazmat.primitives.serialization.pkcs12"),
    ("pytest", "pytest"),
]

PACKAGE_MODULES = [
    "identity_sync.config",
    "identity_sync.context",
    "identity_sync.main",
    "identity_sync.store",
    "identity_sync.providers.ldap_provider",
    "identity_sync.providers.memory",
]


def can_import(module_name):
    try:
        importlib.import_module(module_name)
    except ImportError as e:
        return False, str(e)
    return True, ""


def report_imports(title, entries):
    """Print one line per import and return whether all of them succeeded."""
    print(f"\n=== {title} ===")
    failures = 0
    for label, module_name in entries:
        ok, error = can_import(module_name)
        print(f"  {'✓' if ok else '✗'} {label}" + ("" if ok else f": {error}"))
        failures += not ok
    return failures == 0


def check_nested_sync():
    """Sync one user whose group is nested in another and check the flattened names."""
    print("\n=== Functionality ===")
    from identity_sync.context import create_sync_context
    from identity_sync.policy import SyncPolicy, UserPolicy
    from identity_sync.providers.memory import InMemoryIdentityProvider
    from identity_sync.store import InMemoryStore

    provider = InMemoryIdentityProvider('validate')
    provider.add_group('outer')
    provider.add_group('inner', ['outer'])
    user = provider.add_user('alice', ['inner'])

    store = InMemoryStore()
    policy = SyncPolicy('validate', user=UserPolicy(membership_nesting_depth=2, dynamic_membership=True))
    result = create_sync_context(policy, provider, store).sync(user)

    names = store.get_record('alice').external_principal_names
    if names != {'inner', 'outer'}:
        print(f"  ✗ Unexpected principal names after {result.status.value}: {names}")
        return False
    print(f"  ✓ Nested membership flattened ({result.status.value}): {sorted(names)}")
    return True


def main():
    print("Identity Sync - Installation Validation")
    print("=" * 50)

    results = [
        report_imports("Dependencies", REQUIRED_IMPORTS),
        report_imports("Package modules", [(name, name) for name in PACKAGE_MODULES]),
    ]
    # the functional check needs the package modules
    if results[-1]:
        results.append(check_nested_sync())

    print("\n=== Summary ===")
    if not all(results):
        print("✗ Some validations failed!")
        return 1

    print("✓ All validations passed!")
    print("\nNext steps:")
    print("  1. Copy config.example.yaml to config.yaml and adjust it")
    print("  2. Test with: identity-sync --health-check")
    print("  3. Run sync: identity-sync --all-users")
    return 0


if __name__ == "__main__":
    sys.exit(main())
