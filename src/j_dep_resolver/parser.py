"""Read and write Maven pom.xml files using lxml."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Callable, Mapping

from lxml import etree

from j_dep_resolver.exceptions import PomModelError, PomNotFoundError, PomParseError
from j_dep_resolver.models import GAV, UNKNOWN_VERSION, Dependency, Pom, Scope


logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")
POM_NAMESPACE = "http://maven.apache.org/POM/4.0.0"

PomResolver = Callable[[Dependency], "Pom | None"]


def _text_first(node: etree._Element, xpath_expr: str) -> str | None:
    """Get text of the first matching element using namespace-agnostic XPath.

    Args:
        node: Root element to query under.
        xpath_expr: XPath expression (should use local-name()).

    Returns:
        Text content if found and non-empty, otherwise None.
    """
    found = node.xpath(xpath_expr)
    if not found:
        return None
    first = found[0]
    if isinstance(first, etree._Element):
        text = (first.text or "").strip()
        return text or None
    if isinstance(first, str):
        text = first.strip()
        return text or None
    return None


def _child_text(node: etree._Element, name: str) -> str | None:
    return _text_first(node, f"./*[local-name()='{name}']")


def _bool_text(value: str | None) -> bool | None:
    """Convert Maven boolean-ish text to bool.

    Args:
        value: String like 'true'/'false' or None.

    Returns:
        True/False for recognized values, otherwise None.
    """
    if value is None:
        return None
    v = value.strip().lower()
    if v == "true":
        return True
    if v == "false":
        return False
    return None


def _parse_xml(path: Path) -> etree._Element:
    """Parse an XML file and return its root element.

    Args:
        path: Path to the pom.xml file.

    Raises:
        PomNotFoundError: If the file does not exist.
        PomParseError: If XML cannot be parsed.

    Returns:
        Root XML element.
    """
    if not path.exists():
        raise PomNotFoundError(f"pom.xml not found: {path}")
    try:
        parser = etree.XMLParser(resolve_entities=False, no_network=True, recover=False)
        tree = etree.parse(str(path), parser=parser)
        return tree.getroot()
    except (OSError, etree.XMLSyntaxError) as exc:
        raise PomParseError(f"Failed to parse pom.xml: {path}") from exc


def _resolve_placeholders(value: str, props: Mapping[str, str]) -> str:
    """Resolve ${...} placeholders using provided properties.

    Unknown placeholders are preserved as-is.
    """
    current = value
    for _ in range(5):
        changed = False

        def _sub(m: re.Match[str]) -> str:
            nonlocal changed
            key = m.group(1)
            replacement = props.get(key)
            if replacement is None and key.startswith("env."):
                replacement = os.environ.get(key[4:])
            if replacement:
                changed = True
                return replacement
            return m.group(0)

        nxt = _PLACEHOLDER_RE.sub(_sub, current)
        current = nxt
        if not changed:
            break
    return current


def _resolve(value: str | None, props: Mapping[str, str]) -> str | None:
    if value is None:
        return None
    return _resolve_placeholders(value, props).strip() or None


def _normalize_version(value: str | None, props: Mapping[str, str], where: str) -> str | None:
    """Resolve a dependency version.

    Rules:
      - Missing version => None (filled later from dependency management)
      - If placeholders remain after resolution, the version is unresolved => None
    """
    if value is None:
        return None

    resolved = _resolve_placeholders(value, props).strip()
    if not resolved:
        return None

    if _PLACEHOLDER_RE.search(resolved):
        logger.warning("Unresolved version %s for %s", resolved, where)
        return None

    return resolved


def _parse_properties(root: etree._Element) -> dict[str, str]:
    props: dict[str, str] = {}
    nodes = root.xpath("/*[local-name()='project']/*[local-name()='properties']/*")
    for n in nodes:
        if not isinstance(n, etree._Element):
            continue
        key = etree.QName(n).localname
        val = (n.text or "").strip()
        if key and val:
            props[key] = val
    return props


def _parse_exclusions(node: etree._Element, props: Mapping[str, str]) -> set[str]:
    exclusions: set[str] = set()
    for ex in node.xpath("./*[local-name()='exclusions']/*[local-name()='exclusion']"):
        group_id = _resolve(_child_text(ex, "groupId"), props)
        artifact_id = _resolve(_child_text(ex, "artifactId"), props)
        if not group_id:
            continue
        exclusions.add(f"{group_id}:{artifact_id}" if artifact_id else group_id)
    return exclusions


def _parse_dependency(
    node: etree._Element, props: Mapping[str, str], where: str
) -> tuple[Dependency, Scope | None] | None:
    group_id = _resolve(_child_text(node, "groupId"), props)
    artifact_id = _resolve(_child_text(node, "artifactId"), props)
    if group_id is None or artifact_id is None:
        return None

    scope_text = _child_text(node, "scope")
    scope = Scope.from_string(_resolve(scope_text, props))
    if scope_text and scope is None:
        logger.warning("Unknown scope %s for %s:%s in %s", scope_text, group_id, artifact_id, where)

    system_path = _resolve(_child_text(node, "systemPath"), props)
    dep = Dependency(
        group_id=group_id,
        artifact_id=artifact_id,
        version=_normalize_version(_child_text(node, "version"), props, f"{group_id}:{artifact_id}"),
        classifier=_resolve(_child_text(node, "classifier"), props),
        type=_resolve(_child_text(node, "type"), props) or "jar",
        optional=_bool_text(_child_text(node, "optional")) is True,
        exclusions=_parse_exclusions(node, props),
        path=system_path if scope is Scope.SYSTEM else None,
    )
    return dep, scope


def parse_pom(
    path: str | Path,
    *,
    resolve_parent: PomResolver | None = None,
    resolve_import: PomResolver | None = None,
) -> Pom:
    """Parse a Maven pom.xml into a `Pom`.

    Notes:
        - Namespace handling: uses `local-name()` XPath so it works with or without XML namespaces.
        - Properties, dependency management and dependencies are inherited from the parent
          POM returned by `resolve_parent`. When the parent is not available yet only its
          coordinates are used.
        - `import` entries in dependencyManagement are recorded in `Pom.imports`; when
          `resolve_import` returns the imported POM its managed tables are merged.
        - Versions that cannot be resolved are left empty and logged.

    Args:
        path: Path to a pom.xml.
        resolve_parent: Callback returning the parsed parent POM, or None.
        resolve_import: Callback returning a parsed BOM, or None.

    Raises:
        PomModelError: If required fields are missing.

    Returns:
        A `Pom` model.
    """
    pom_path = Path(path)
    root = _parse_xml(pom_path)

    raw_group_id = _text_first(root, "/*[local-name()='project']/*[local-name()='groupId']")
    raw_artifact_id = _text_first(root, "/*[local-name()='project']/*[local-name()='artifactId']")
    raw_version = _text_first(root, "/*[local-name()='project']/*[local-name()='version']")
    packaging = _text_first(root, "/*[local-name()='project']/*[local-name()='packaging']") or "jar"

    parent_group_id = _text_first(
        root,
        "/*[local-name()='project']/*[local-name()='parent']/*[local-name()='groupId']",
    )
    parent_artifact_id = _text_first(
        root,
        "/*[local-name()='project']/*[local-name()='parent']/*[local-name()='artifactId']",
    )
    parent_version = _text_first(
        root,
        "/*[local-name()='project']/*[local-name()='parent']/*[local-name()='version']",
    )

    if raw_artifact_id is None:
        raise PomModelError(f"Missing required <artifactId> in {pom_path}")

    raw_group_id = raw_group_id or parent_group_id
    raw_version = raw_version or parent_version

    if raw_group_id is None:
        raise PomModelError(f"Missing required <groupId> (or parent <groupId>) in {pom_path}")

    parent: GAV | None = None
    parent_pom: Pom | None = None
    if parent_group_id and parent_artifact_id and parent_version:
        parent = GAV(group_id=parent_group_id, artifact_id=parent_artifact_id, version=parent_version)
        if resolve_parent is not None:
            parent_pom = resolve_parent(
                Dependency(
                    group_id=parent_group_id,
                    artifact_id=parent_artifact_id,
                    version=parent_version,
                    type="pom",
                )
            )

    props = _parse_properties(root)
    if parent_pom is not None:
        for key, value in parent_pom.properties.items():
            props.setdefault(key, value)

    effective_version = raw_version or UNKNOWN_VERSION
    builtins: dict[str, str] = {
        "project.groupId": raw_group_id,
        "project.artifactId": raw_artifact_id,
        "project.version": effective_version,
        "project.packaging": packaging,
        "pom.groupId": raw_group_id,
        "pom.artifactId": raw_artifact_id,
        "pom.version": effective_version,
        "groupId": raw_group_id,
        "artifactId": raw_artifact_id,
        "version": effective_version,
    }
    if parent is not None:
        builtins.update(
            {
                "project.parent.groupId": parent.group_id,
                "project.parent.artifactId": parent.artifact_id,
                "project.parent.version": parent.version,
                "parent.groupId": parent.group_id,
                "parent.artifactId": parent.artifact_id,
                "parent.version": parent.version,
            }
        )
    merged_props = {**props, **builtins}

    group_id = _resolve_placeholders(raw_group_id, merged_props)
    version = _resolve_placeholders(effective_version, merged_props).strip() or UNKNOWN_VERSION

    pom = Pom(
        project=GAV(group_id=group_id, artifact_id=raw_artifact_id, version=version),
        packaging=packaging,
        parent=parent,
        properties=props,
    )
    where = pom.coordinates

    managed_nodes = root.xpath(
        "/*[local-name()='project']"
        "/*[local-name()='dependencyManagement']"
        "/*[local-name()='dependencies']"
        "/*[local-name()='dependency']"
    )
    for node in managed_nodes:
        parsed = _parse_dependency(node, merged_props, where)
        if parsed is None:
            continue
        dep, scope = parsed
        if scope is Scope.IMPORT:
            dep.scope = Scope.IMPORT
            pom.imports.append(dep)
            imported = resolve_import(dep) if resolve_import is not None else None
            if imported is not None:
                pom.import_managed_dependencies(imported)
        else:
            pom.add_managed_dependency(dep, scope)

    if parent_pom is not None:
        pom.inherit(parent_pom)
        for dep in parent_pom.imports:
            if dep not in pom.imports:
                pom.imports.append(dep)

    dep_nodes = root.xpath(
        "/*[local-name()='project']"
        "/*[local-name()='dependencies']"
        "/*[local-name()='dependency']"
    )
    for node in dep_nodes:
        parsed = _parse_dependency(node, merged_props, where)
        if parsed is None:
            continue
        dep, scope = parsed
        pom.add_dependency(dep, scope)

    if parent_pom is not None:
        # declarations in this POM take precedence over inherited ones
        for scope, deps in parent_pom.dependencies.items():
            for dep in deps:
                pom.add_dependency(dep, scope)

    return pom


def read_packaging(path: str | Path) -> str:
    """Return the `<packaging>` of a pom.xml, defaulting to jar."""
    root = _parse_xml(Path(path))
    return _text_first(root, "/*[local-name()='project']/*[local-name()='packaging']") or "jar"


def render_pom(pom: Pom) -> bytes:
    """Serialize a `Pom` as a minimal pom.xml.

    Only Maven scopes are written; resolver-specific scopes are dropped.
    """
    nsmap = {None: POM_NAMESPACE}
    project = etree.Element(f"{{{POM_NAMESPACE}}}project", nsmap=nsmap)

    def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
        el = etree.SubElement(parent, f"{{{POM_NAMESPACE}}}{tag}")
        if text is not None:
            el.text = text
        return el

    _sub(project, "modelVersion", "4.0.0")
    if pom.parent is not None:
        parent = _sub(project, "parent")
        _sub(parent, "groupId", pom.parent.group_id)
        _sub(parent, "artifactId", pom.parent.artifact_id)
        _sub(parent, "version", pom.parent.version)
    _sub(project, "groupId", pom.project.group_id)
    _sub(project, "artifactId", pom.project.artifact_id)
    _sub(project, "version", pom.project.version)
    _sub(project, "packaging", pom.packaging)

    if pom.managed_versions:
        managed = _sub(_sub(project, "dependencyManagement"), "dependencies")
        for management_id, managed_version in sorted(pom.managed_versions.items()):
            group_id, _, artifact_id = management_id.partition(":")
            node = _sub(managed, "dependency")
            _sub(node, "groupId", group_id)
            _sub(node, "artifactId", artifact_id)
            _sub(node, "version", managed_version)
            managed_scope = pom.managed_scopes.get(management_id)
            if managed_scope is not None:
                _sub(node, "scope", managed_scope.value)

    maven_scopes = [s for s in pom.scopes if s.is_maven_scope]
    if maven_scopes:
        deps_node = _sub(project, "dependencies")
        for scope in maven_scopes:
            for dep in pom.dependencies[scope]:
                node = _sub(deps_node, "dependency")
                _sub(node, "groupId", dep.group_id)
                _sub(node, "artifactId", dep.artifact_id)
                if dep.version:
                    _sub(node, "version", dep.version)
                if dep.type != "jar":
                    _sub(node, "type", dep.type)
                if dep.classifier:
                    _sub(node, "classifier", dep.classifier)
                _sub(node, "scope", scope.value)
                if dep.path:
                    _sub(node, "systemPath", dep.path)
                if dep.optional:
                    _sub(node, "optional", "true")
                excludes = set(dep.exclusions)
                if not dep.resolve_dependencies:
                    excludes.add("*:*")
                if excludes:
                    exclusions = _sub(node, "exclusions")
                    for pattern in sorted(excludes):
                        ex_group, _, ex_artifact = pattern.partition(":")
                        ex = _sub(exclusions, "exclusion")
                        _sub(ex, "groupId", ex_group)
                        if ex_artifact:
                            _sub(ex, "artifactId", ex_artifact)

    return etree.tostring(project, xml_declaration=True, encoding="UTF-8", pretty_print=True)
