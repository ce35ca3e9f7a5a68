# sigrid: Addon application. Writes addon files into a workspace, merges package.json dependencies,
# appends AI_RULES.md, and records internal paths in .sigrid/addons.json for the snapshotter.

import json
import logging
import pathlib
import threading
from typing import Any, Dict, List, Set, Union

from pydantic import ValidationError

from .context import Storage
from .errors import PreconditionError
from .fs import atomic_write_text, normalize_path, now_iso, resolve_inside_root
from .models import Addon, AddonResult

logger = logging.getLogger(__name__)

AI_RULES_FILE = "AI_RULES.md"
AI_RULES_HEADER = "# AI Rules\n\nProject-specific instructions for AI assistants.\n"
MINIMAL_PACKAGE_JSON = {"name": "workspace", "version": "1.0.0", "dependencies": {}}

# In-process registrations, keyed by resolved workspace root
_internal_paths_lock = threading.Lock()
_internal_paths: Dict[pathlib.Path, Set[str]] = {}


def register_internal_paths(root: pathlib.Path, paths: List[str]) -> None:
    """Add paths the snapshotter must omit for this workspace for the rest of the process lifetime."""
    key = pathlib.Path(root).resolve()
    with _internal_paths_lock:
        _internal_paths.setdefault(key, set()).update(normalize_path(p) for p in paths)


def get_addon_internal_paths(root: pathlib.Path) -> List[str]:
    """Union of the workspace registry's internalPaths and in-process registrations, sorted."""
    key = pathlib.Path(root).resolve()
    paths: Set[str] = set()
    for entry in Storage(key).load_addons()["applied"].values():
        if isinstance(entry, dict):
            paths.update(normalize_path(p) for p in entry.get("internalPaths") or [])
    with _internal_paths_lock:
        paths.update(_internal_paths.get(key, set()))
    return sorted(paths)


def _coerce_addon(addon: Union[Addon, Dict[str, Any]]) -> Addon:
    if isinstance(addon, Addon):
        return addon
    if not isinstance(addon, dict):
        raise PreconditionError("Addon must be an object")
    if not addon.get("name"):
        raise PreconditionError("Addon must have a name")
    if not isinstance(addon.get("files"), dict):
        raise PreconditionError("Addon must have a files object")
    try:
        return Addon.model_validate(addon)
    except ValidationError as e:
        raise PreconditionError(f"Invalid addon {addon.get('name')}: {e}") from e


def generate_ai_rules_from_api(addon: Union[Addon, Dict[str, Any]]) -> str:
    """
    Render AI_RULES.md text from an addon's structured api metadata.

    Returns "" when the addon has no api section.
    """
    a = _coerce_addon(addon)
    if not a.api:
        return ""
    title = a.name[:1].upper() + a.name[1:]
    content = f"\n## {title}\n\n{a.description or f'Provides {a.name} functionality'}"

    bullets: List[str] = []
    for import_path, api_def in a.api.items():
        export_names = list((api_def or {}).get("exports") or {})
        if export_names:
            bullets.append(f"**Import**: `import {{ {', '.join(export_names)} }} from '{import_path}'`")
    if a.docs:
        bullets.append(f"**Documentation**: See `{a.docs}` for complete API reference and examples")
    if a.technology:
        bullets.append(f"**Technology**: {a.technology}")
    if a.use_cases:
        bullets.append(f"**Use Case**: {a.use_cases}")
    if bullets:
        content += ":\n\n" + "\n".join(f"- {b}" for b in bullets)

    methods: List[str] = []
    for api_def in a.api.values():
        methods.extend((api_def or {}).get("methods") or {})
    if methods:
        content += "\n\nMain API: " + ", ".join(f"`{m}`" for m in methods) + "."
        if a.docs:
            content += " See the docs for usage patterns."
    return content + "\n"


def validate_addon_api(addon: Union[Addon, Dict[str, Any]]) -> None:
    """Check every api module maps to a bundled src/ file that defines its exports. Raises PreconditionError."""
    a = _coerce_addon(addon)
    if not a.api:
        return
    errors: List[str] = []
    for import_path, api_def in a.api.items():
        base = import_path.replace("@/", "src/", 1)
        file_path = next((p for p in (base + ext for ext in (".js", ".ts", ".jsx", ".tsx")) if p in a.files), None)
        if file_path is None:
            errors.append(f'API defines "{import_path}" but no matching file found in files object')
            continue
        source = a.files[file_path]
        for name in (api_def or {}).get("exports") or {}:
            patterns = (
                f"export function {name}",
                f"export const {name}",
                f"export async function {name}",
                f"export {{ {name}",
                f"function {name}",
            )
            if not any(p in source for p in patterns):
                errors.append(f'API defines export "{name}" in {import_path} but it does not exist in {file_path}')
    if errors:
        raise PreconditionError("Addon API validation failed:\n  - " + "\n  - ".join(errors))


def _rules_text(a: Addon) -> str:
    return a.ai_rules_addition or generate_ai_rules_from_api(a)


def _merge_dependencies(root: pathlib.Path, deps: Dict[str, str]) -> None:
    pkg_path = root / "package.json"
    if pkg_path.exists():
        package = json.loads(pkg_path.read_text(encoding="utf-8"))
    else:
        package = json.loads(json.dumps(MINIMAL_PACKAGE_JSON))
    package["dependencies"] = {**(package.get("dependencies") or {}), **deps}
    atomic_write_text(pkg_path, json.dumps(package, indent=2, ensure_ascii=False) + "\n")


def apply_addon(root: pathlib.Path, addon: Union[Addon, Dict[str, Any]]) -> AddonResult:
    """
    Apply an addon to the workspace at root.

    A name@version already present in .sigrid/addons.json is left untouched and
    reported with already_applied=True, so applying twice is a no-op.
    """
    root = pathlib.Path(root).resolve()
    a = _coerce_addon(addon)
    key = f"{a.name}@{a.version}"
    storage = Storage(root)
    registry = storage.load_addons()
    if key in registry["applied"]:
        logger.info("Addon %s already applied to %s", key, root)
        return AddonResult(addon=a.name, version=a.version, already_applied=True)

    validate_addon_api(a)
    result = AddonResult(addon=a.name, version=a.version)

    for rel, content in a.files.items():
        target = resolve_inside_root(rel, root)
        target.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(target, content)
        result.files_added.append(normalize_path(rel))

    if a.internal:
        register_internal_paths(root, a.internal)

    if a.dependencies:
        _merge_dependencies(root, a.dependencies)
        result.dependencies_added = sorted(a.dependencies)

    rules = _rules_text(a)
    if rules:
        rules_path = root / AI_RULES_FILE
        current = rules_path.read_text(encoding="utf-8") if rules_path.exists() else AI_RULES_HEADER
        atomic_write_text(rules_path, current + rules)
        result.ai_rules_updated = True

    registry["applied"][key] = {
        "internalPaths": list(a.internal),
        "appliedAt": now_iso(),
        "files": list(result.files_added),
        "dependencies": dict(a.dependencies),
    }
    storage.save_addons(registry)
    logger.info("Applied addon %s to %s (%d files)", key, root, len(result.files_added))
    return result


def is_addon_applied(root: pathlib.Path, addon: Union[Addon, Dict[str, Any]]) -> bool:
    """True when package.json carries every addon dependency and AI_RULES.md contains the addon's rules marker."""
    root = pathlib.Path(root)
    a = _coerce_addon(addon)
    if a.dependencies:
        pkg_path = root / "package.json"
        if not pkg_path.exists():
            return False
        deps = json.loads(pkg_path.read_text(encoding="utf-8")).get("dependencies") or {}
        if any(name not in deps for name in a.dependencies):
            return False
    rules = _rules_text(a)
    if rules:
        rules_path = root / AI_RULES_FILE
        if not rules_path.exists():
            return False
        marker = rules.strip()[:50]
        if marker not in rules_path.read_text(encoding="utf-8"):
            return False
    return True
