from __future__ import annotations

import re
import sys
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from featherpanel.services.addons.archive import MANIFEST_NAME

REGISTRY_IDENTIFIER_RE = re.compile(r"[a-zA-Z0-9_\-]+")
ADDON_IDENTIFIER_RE = re.compile(r"[a-z0-9_\-]+")
_VERSION_PART_RE = re.compile(r"\d+")
_DEPENDENCY_RE = re.compile(r"^\s*([A-Za-z][\w\-]*)\s*>?=\s*(\S.*?)\s*$")

NOT_APPLICABLE_KINDS = {
    "composer": "Composer package",
    "php": "PHP version",
    "php-ext": "PHP extension",
}


class ManifestError(ValueError):
    """Raised when ``conf.yml`` is missing or malformed."""


def is_registry_identifier(value: Optional[str]) -> bool:
    return bool(value) and REGISTRY_IDENTIFIER_RE.fullmatch(str(value)) is not None


def is_addon_identifier(value: Optional[str]) -> bool:
    return bool(value) and ADDON_IDENTIFIER_RE.fullmatch(str(value)) is not None


@dataclass(frozen=True)
class AddonManifest:
    identifier: Optional[str]
    name: Optional[str]
    version: Optional[str]
    description: Optional[str] = None
    author: Optional[str] = None
    entrypoint: Optional[str] = None
    dependencies: tuple[str, ...] = ()
    required_configs: tuple[str, ...] = ()
    min_panel_version: Optional[str] = None
    max_panel_version: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def parse(cls, text: str) -> "AddonManifest":
        try:
            document = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ManifestError(f"conf.yml is not valid YAML: {exc}") from exc
        if not isinstance(document, dict):
            raise ManifestError("conf.yml must be a mapping")
        plugin = document.get("plugin") or {}
        if not isinstance(plugin, dict):
            raise ManifestError("conf.yml 'plugin' section must be a mapping")

        dependencies = plugin.get("dependencies") or []
        if not isinstance(dependencies, list):
            raise ManifestError("plugin.dependencies must be a list")
        required = plugin.get("requiredConfigs") or plugin.get("required_configs") or []
        if not isinstance(required, list):
            raise ManifestError("plugin.requiredConfigs must be a list")

        return cls(
            identifier=_as_text(plugin.get("identifier")),
            name=_as_text(plugin.get("name")),
            version=_as_text(plugin.get("version")),
            description=_as_text(plugin.get("description")),
            author=_as_text(plugin.get("author")),
            entrypoint=_as_text(plugin.get("entrypoint")),
            dependencies=tuple(str(item).strip() for item in dependencies if str(item).strip()),
            required_configs=tuple(str(item).strip() for item in required if str(item).strip()),
            min_panel_version=_as_text(plugin.get("min_panel_version")),
            max_panel_version=_as_text(plugin.get("max_panel_version")),
            raw=document,
        )

    @classmethod
    def load(cls, directory: Path) -> "AddonManifest":
        path = Path(directory) / MANIFEST_NAME
        if not path.is_file():
            raise ManifestError("missing conf.yml")
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ManifestError(str(exc)) from exc
        return cls.parse(text)


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ----------------------------------------------------------------------
# Versions
# ----------------------------------------------------------------------
def normalize_version(version: str) -> str:
    return version.strip().lstrip("vV")


def _version_key(version: str) -> tuple[int, ...]:
    parts = [int(part) for part in _VERSION_PART_RE.findall(normalize_version(version))]
    while parts and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 comparing dotted numeric versions, ignoring a ``v`` prefix."""

    left_key, right_key = _version_key(left), _version_key(right)
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


@dataclass(frozen=True)
class PanelVersionCheck:
    ok: bool
    message: Optional[str]
    minimum: Optional[str]
    maximum: Optional[str]

    def as_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "message": self.message, "min": self.minimum, "max": self.maximum}


def check_panel_version(
    current: str,
    minimum: Optional[str] = None,
    maximum: Optional[str] = None,
) -> PanelVersionCheck:
    ok = True
    message: Optional[str] = None
    if minimum and compare_versions(current, minimum) < 0:
        ok = False
        message = f"Requires panel version {minimum} or higher (current: {current})"
    if maximum and compare_versions(current, maximum) > 0:
        ok = False
        message = f"Requires panel version {maximum} or lower (current: {current})"
    return PanelVersionCheck(ok=ok, message=message, minimum=minimum, maximum=maximum)


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DependencyCheck:
    dependency: str
    met: bool
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"dependency": self.dependency, "met": self.met, "message": self.message}


def _distribution_installed(requirement: str) -> bool:
    name, _, minimum = requirement.partition(">=")
    try:
        installed = metadata.version(name.strip())
    except metadata.PackageNotFoundError:
        return False
    return not minimum.strip() or compare_versions(installed, minimum.strip()) >= 0


def _python_satisfies(required: str) -> bool:
    current = ".".join(str(part) for part in sys.version_info[:3])
    return compare_versions(current, required.lstrip(">=")) >= 0


def check_dependency(dependency: str, installed_addons: Iterable[str]) -> DependencyCheck:
    """Check one ``kind=value`` dependency; ``python>=3.10`` is accepted as well."""

    match = _DEPENDENCY_RE.match(dependency)
    if match is None:
        return DependencyCheck(dependency, True, f"Unknown dependency format: {dependency}")

    kind, value = match.group(1).lower(), match.group(2)
    if kind == "plugin":
        met = value in set(installed_addons)
        message = "Plugin installed" if met else f"Plugin required: {value}"
    elif kind == "pip":
        met = _distribution_installed(value)
        message = "Python package installed" if met else f"Python package required: {value}"
    elif kind == "python":
        met = _python_satisfies(value)
        message = "Python version requirement met" if met else f"Python version required: {value}"
    elif kind in NOT_APPLICABLE_KINDS:
        met = True
        message = f"{NOT_APPLICABLE_KINDS[kind]} requirement not applicable: {value}"
    else:
        met = True
        message = f"Unknown dependency format: {dependency}"
    return DependencyCheck(dependency, met, message)


def check_dependencies(dependencies: Iterable[str], installed_addons: Iterable[str]) -> list[DependencyCheck]:
    installed = list(installed_addons)
    return [check_dependency(dependency, installed) for dependency in dependencies]


__all__ = [
    "AddonManifest",
    "ManifestError",
    "DependencyCheck",
    "PanelVersionCheck",
    "check_dependency",
    "check_dependencies",
    "check_panel_version",
    "compare_versions",
    "normalize_version",
    "is_addon_identifier",
    "is_registry_identifier",
]
