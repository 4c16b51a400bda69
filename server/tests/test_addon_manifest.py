from __future__ import annotations

import pytest

from featherpanel.services.addons.manifest import (
    AddonManifest,
    ManifestError,
    check_dependency,
    check_panel_version,
    compare_versions,
    is_addon_identifier,
    is_registry_identifier,
)


def test_parse_manifest_fields():
    manifest = AddonManifest.parse(
        """
plugin:
  identifier: billing
  name: Billing
  version: 1.4.0
  author: Feather
  entrypoint: billing_hooks
  dependencies:
    - plugin=invoices
    - python>=3.8
  requiredConfigs:
    - api_key
"""
    )
    assert manifest.identifier == "billing"
    assert manifest.version == "1.4.0"
    assert manifest.entrypoint == "billing_hooks"
    assert manifest.dependencies == ("plugin=invoices", "python>=3.8")
    assert manifest.required_configs == ("api_key",)


@pytest.mark.parametrize("text", ["plugin: [unclosed", "- just\n- a list", "plugin:\n  dependencies: nope"])
def test_parse_rejects_malformed_manifests(text):
    with pytest.raises(ManifestError):
        AddonManifest.parse(text)


def test_load_requires_conf_file(tmp_path):
    with pytest.raises(ManifestError):
        AddonManifest.load(tmp_path)


def test_identifier_rules():
    assert is_registry_identifier("Billing-Pro_2")
    assert not is_registry_identifier("billing/../etc")
    assert not is_registry_identifier("")
    assert is_addon_identifier("billing_pro-2")
    assert not is_addon_identifier("Billing")
    assert not is_addon_identifier(None)
    assert not is_registry_identifier("billing\n")
    assert not is_addon_identifier("billing\n")


def test_compare_versions_ignores_prefix_and_trailing_zeros():
    assert compare_versions("v1.2.0", "1.2") == 0
    assert compare_versions("1.10.0", "1.9.9") == 1
    assert compare_versions("1.0.0", "1.0.1") == -1


def test_panel_version_bounds():
    assert check_panel_version("1.2.0", "1.0.0", "2.0.0").ok
    too_old = check_panel_version("0.9.0", "1.0.0")
    assert not too_old.ok
    assert "1.0.0 or higher" in too_old.message
    too_new = check_panel_version("3.0.0", None, "2.0.0")
    assert not too_new.ok
    assert "2.0.0 or lower" in too_new.message


def test_dependency_checks():
    assert check_dependency("plugin=invoices", ["invoices"]).met
    assert not check_dependency("plugin=invoices", []).met
    assert check_dependency("python>=3.0", []).met
    assert not check_dependency("pip=surely-not-installed-package-xyz", []).met
    assert check_dependency("pip=PyYAML", []).met

    php = check_dependency("php=8.1", [])
    assert php.met
    assert "not applicable" in php.message

    unknown = check_dependency("whatever", [])
    assert unknown.met
    assert unknown.message.startswith("Unknown dependency format")
