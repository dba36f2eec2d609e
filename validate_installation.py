#!/usr/bin/env python3
"""
Validation script for the Directory Sync application.

This script validates that all dependencies are installed correctly
and that all core functionality is working as expected.
"""

import os
import sys
import importlib

FIXTURES = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'tests', 'fixtures')
VARIANTS = ('plaintext', 'ldaps', 'aggregation', 'starttls')


DEPENDENCIES = [
    ("ldap3", "ldap3"),
    ("PyYAML", "yaml"),
    ("pyparsing", "pyparsing"),
    ("cryptography", "cryptography"),
]

TEST_DEPENDENCIES = [
    ("pytest", "pytest"),
]

MODULES = [
    "models", "php_config", "config", "validation", "ldap_options",
    "ldap_client", "directory", "retry", "logging_setup", "main",
]


def check_imports(items):
    """Import each (label, module) pair, print a line per item and return True if all imported."""
    all_ok = True
    for label, import_name in items:
        try:
            importlib.import_module(import_name)
            print(f"  ✓ {label} available")
        except ImportError as e:
            print(f"  ✗ {label} missing: {e}")
            all_ok = False
    return all_ok


def validate_dependencies():
    print("=== Dependency Validation ===")
    ok = check_imports(DEPENDENCIES)

    # test tools are reported but not required to run a sync
    print("\n  Test dependencies:")
    check_imports(TEST_DEPENDENCIES)
    return ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")
    return check_imports((f"directory_sync.{m}", f"directory_sync.{m}") for m in MODULES)


def validate_functionality():
    """Validate key functionality."""
    print("\n=== Functionality Validation ===")

    try:
        from directory_sync.config import ConfigLoader, dump_config
        from directory_sync.ldap_client import DomainClient

        for variant in VARIANTS:
            yaml_config = ConfigLoader(os.path.join(FIXTURES, f"{variant}.yaml")).load().directory_sync
            php_config = ConfigLoader(os.path.join(FIXTURES, f"{variant}.php")).load().directory_sync
            if yaml_config.to_mapping() != php_config.to_mapping():
                raise ValueError(f"{variant}: YAML and PHP renditions differ")
            print(f"  ✓ {variant} configuration (YAML and PHP)")

            for endpoint in yaml_config.domains:
                DomainClient(endpoint)._create_server_pool()
            print(f"  ✓ {variant} server pools")

            dump_config(yaml_config, 'yaml')
        print("  ✓ Configuration serialization")

        from directory_sync.retry import retry_call
        retry_call(lambda: "test", max_attempts=1, delay=0, exceptions=())
        print("  ✓ Retry mechanism")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "directory_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
        else:
            print("  ✗ Help command failed")
            return False

        result = subprocess.run([sys.executable, "-m", "directory_sync.main", "--validate",
                                 "--config", os.path.join(FIXTURES, "ldaps.php")],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Validate command working")
        else:
            print(f"  ✗ Validate command failed: {result.stdout.strip()}")
            return False

        return True

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("Directory Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("✓ Directory Sync is ready for use")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and describe your domains")
        print("  2. Check it with: python -m directory_sync.main --validate")
        print("  3. Test connectivity with: python -m directory_sync.main --health-check")
        print("  4. Run sync: python -m directory_sync.main")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
