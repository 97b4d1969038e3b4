"""Inline bundler.

Compiles one untrusted source document, plus any local modules supplied
with it, into a single self-contained browser ES module:
- JSX/TypeScript modules are transpiled through esbuild first
- Local (relative) imports are inlined through a small module registry
- Bare imports are resolved to CDN URLs and left for the browser to fetch
- The finished text must pass the bare-import scan before it is returned

Output is a pure function of the inputs and the resolver cache, so the
same source and policy always bundle to identical bytes.
"""

from __future__ import annotations

import json
import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from bundlepipe.bundler.scan import assert_no_bare_imports
from bundlepipe.bundler.transpile import BundleError, loader_for, transpile
from bundlepipe.resolver.specifier import is_bare_specifier, is_relative
from bundlepipe.types import ImportPolicy

if TYPE_CHECKING:
    from bundlepipe.config import Settings
    from bundlepipe.resolver.service import ImportResolver

logger = logging.getLogger(__name__)

LOCAL_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js", ".mjs")
MAX_LOCAL_MODULES = 200

# Statements may start a line or follow ; { } ) on the same line
STATEMENT_START = r"(?:^|(?<=[;{})]))"

STATIC_IMPORT_RE = re.compile(
    STATEMENT_START + r"""(?P<indent>[ \t]*)import\s+(?P<clause>[\w$*{}\s,]+?)\s*from\s*"""
    r"""(?P<quote>["'])(?P<specifier>[^"'\n]+)(?P=quote)[ \t]*;?""",
    re.MULTILINE,
)
SIDE_EFFECT_IMPORT_RE = re.compile(
    STATEMENT_START + r"""(?P<indent>[ \t]*)import\s*(?P<quote>["'])(?P<specifier>[^"'\n]+)(?P=quote)[ \t]*;?""",
    re.MULTILINE,
)
EXPORT_FROM_RE = re.compile(
    STATEMENT_START + r"""(?P<indent>[ \t]*)export\s*(?P<clause>\*(?:\s*as\s+[\w$]+)?|\{[^}]*\})\s*from\s*"""
    r"""(?P<quote>["'])(?P<specifier>[^"'\n]+)(?P=quote)[ \t]*;?""",
    re.MULTILINE,
)
DYNAMIC_IMPORT_RE = re.compile(
    r"""(?<![\w$.])import\s*\(\s*(?P<quote>["'`])(?P<specifier>[^"'`\n]+)(?P=quote)\s*\)"""
)
EXPORT_DEFAULT_DECL_RE = re.compile(
    STATEMENT_START + r"(?P<indent>[ \t]*)export\s+default\s+"
    r"(?P<kw>(?:async\s+)?function\s*\*?\s*|class\s+)(?!extends\b)(?P<name>[\w$]+)",
    re.MULTILINE,
)
EXPORT_DEFAULT_RE = re.compile(STATEMENT_START + r"(?P<indent>[ \t]*)export\s+default\s+", re.MULTILINE)
EXPORT_DECL_RE = re.compile(
    STATEMENT_START + r"(?P<indent>[ \t]*)export\s+"
    r"(?P<kw>(?:async\s+)?function\s*\*?\s*|class\s+|(?:const|let|var)\s+)(?P<name>[\w$]+)",
    re.MULTILINE,
)
EXPORT_DESTRUCTURE_RE = re.compile(STATEMENT_START + r"[ \t]*export\s+(?:const|let|var)\s*[{\[]", re.MULTILINE)
EXPORT_LIST_RE = re.compile(
    STATEMENT_START + r"(?P<indent>[ \t]*)export\s*\{(?P<names>[^}]*)\}(?!\s*from\b)[ \t]*;?",
    re.MULTILINE,
)
LEFTOVER_EXPORT_RE = re.compile(STATEMENT_START + r"[ \t]*export\b", re.MULTILINE)
STAR_ALIAS_RE = re.compile(r"\*\s*as\s+([\w$]+)")

RUNTIME_PRELUDE = """\
const __defs = Object.create(null);
const __cache = Object.create(null);
function __export(target, getters) {
  for (const name of Object.keys(getters)) {
    Object.defineProperty(target, name, { enumerable: true, get: getters[name] });
  }
}
function __exportStar(target, source) {
  for (const name of Object.keys(source)) {
    if (name !== "default" && !Object.prototype.hasOwnProperty.call(target, name)) {
      Object.defineProperty(target, name, { enumerable: true, get: () => source[name] });
    }
  }
}
function __load(id) {
  let exports = __cache[id];
  if (!exports) {
    exports = __cache[id] = {};
    __defs[id](exports);
  }
  return exports;
}"""


@dataclass
class BundleOptions:
    """Options for one bundle invocation.

    Attributes:
        entry: Path of the entry document; its extension picks the loader.
        files: Local modules keyed by path relative to the project root.
        policy: Import policy applied to bare specifiers.
        transpile: Force the esbuild step on or off. By default it runs for
            .jsx/.ts/.tsx modules only.
    """

    entry: str = "index.tsx"
    files: dict[str, str] = field(default_factory=dict)
    policy: ImportPolicy = field(default_factory=ImportPolicy)
    transpile: bool | None = None


@dataclass
class _Module:
    id: str
    code: str
    locals: dict[str, str] = field(default_factory=dict)


def _normalize_path(path: str) -> str:
    return posixpath.normpath(path.lstrip("/"))


def _specifier_pairs(text: str) -> list[tuple[str, str]]:
    """Parse 'a, b as c' into [(a, a), (b, c)]."""
    pairs = []
    for item in text.strip().strip("{}").split(","):
        words = item.split()
        if not words:
            continue
        if len(words) == 3 and words[1] == "as":
            pairs.append((words[0], words[2]))
        elif len(words) == 1:
            pairs.append((words[0], words[0]))
        else:
            raise BundleError(f"Unsupported import/export list item: {item.strip()}")
    return pairs


def _star_alias(clause: str) -> str | None:
    match = STAR_ALIAS_RE.match(clause.strip())
    return match.group(1) if match else None


def _binding_statements(clause: str, source: str) -> str:
    """Turn an import clause into const bindings read from a namespace."""
    clause = " ".join(clause.split())
    default_name = ""
    rest = clause
    if not clause.startswith(("{", "*")):
        default_name, _, rest = clause.partition(",")
        default_name, rest = default_name.strip(), rest.strip()

    statements = []
    if default_name:
        statements.append(f"const {default_name} = {source}.default;")
    if rest.startswith("*"):
        alias = _star_alias(rest)
        if alias is None:
            raise BundleError(f"Invalid import clause: {clause}")
        statements.append(f"const {alias} = {source};")
    elif rest.startswith("{"):
        pairs = _specifier_pairs(rest)
        if pairs:
            pattern = ", ".join(
                name if name == alias else f"{name}: {alias}" for name, alias in pairs
            )
            statements.append(f"const {{ {pattern} }} = {source};")
    elif rest:
        raise BundleError(f"Invalid import clause: {clause}")
    return " ".join(statements)


def _module_specifiers(code: str) -> list[str]:
    """Every literal import/export-from specifier in source order."""
    found: list[tuple[int, str]] = []
    for pattern in (STATIC_IMPORT_RE, SIDE_EFFECT_IMPORT_RE, EXPORT_FROM_RE, DYNAMIC_IMPORT_RE):
        for match in pattern.finditer(code):
            specifier = match.group("specifier")
            if "${" not in specifier:
                found.append((match.start("specifier"), specifier))
    found.sort()
    return [specifier for _, specifier in found]


def _resolve_local(importer: str, specifier: str, files: dict[str, str]) -> str:
    """Map a relative specifier to a key of the local file map."""
    target = posixpath.normpath(posixpath.join(posixpath.dirname(importer), specifier))
    if target == ".." or target.startswith("../"):
        raise BundleError(f"Import {specifier} in {importer} escapes the project root")

    candidates = [target]
    candidates.extend(target + ext for ext in LOCAL_EXTENSIONS)
    candidates.extend(f"{target}/index{ext}" for ext in LOCAL_EXTENSIONS)
    for candidate in candidates:
        if candidate in files:
            return candidate
    raise BundleError(f"Local module not found: {specifier} (imported from {importer})")


class _Emitter:
    """Rewrites collected modules into one bundle."""

    def __init__(self, modules: dict[str, _Module], urls: dict[str, str]) -> None:
        self.modules = modules
        self.urls = urls
        self.hoisted: dict[str, str] = {}
        self._counter = 0

    def _external(self, url: str) -> str:
        var = self.hoisted.get(url)
        if var is None:
            var = f"__ext_{len(self.hoisted)}"
            self.hoisted[url] = var
        return var

    def _temp(self) -> str:
        name = f"__reexport_{self._counter}"
        self._counter += 1
        return name

    def _url(self, specifier: str) -> str:
        return self.urls.get(specifier, specifier)

    def _dynamic(self, module: _Module, match: re.Match[str]) -> str:
        specifier = match.group("specifier")
        if "${" in specifier:
            return match.group(0)
        if specifier in module.locals:
            return f"Promise.resolve().then(() => __load({json.dumps(module.locals[specifier])}))"
        return f"import({json.dumps(self._url(specifier))})"

    def export_names(self, module_id: str, seen: frozenset[str] = frozenset()) -> list[str]:
        """Statically known export names of a local module."""
        if module_id in seen:
            return []
        seen = seen | {module_id}
        module = self.modules[module_id]
        code = module.code
        names: list[str] = []

        if EXPORT_DEFAULT_RE.search(code):
            names.append("default")
        names.extend(m.group("name") for m in EXPORT_DECL_RE.finditer(code))
        for match in EXPORT_LIST_RE.finditer(code):
            names.extend(alias for _, alias in _specifier_pairs(match.group("names")))
        for match in EXPORT_FROM_RE.finditer(code):
            clause = match.group("clause")
            specifier = match.group("specifier")
            if not clause.startswith("*"):
                names.extend(alias for _, alias in _specifier_pairs(clause))
            elif _star_alias(clause):
                names.append(_star_alias(clause))
            elif specifier in module.locals:
                names.extend(
                    n for n in self.export_names(module.locals[specifier], seen) if n != "default"
                )
            else:
                raise BundleError(
                    f"Cannot re-export * from {specifier} through {module_id} in the entry module"
                )
        return list(dict.fromkeys(names))

    def rewrite_wrapped(self, module: _Module) -> str:
        """Rewrite a local module into a registry definition."""
        getters: list[tuple[str, str]] = []
        stars: list[str] = []

        def namespace(specifier: str) -> str:
            if specifier in module.locals:
                return f"__load({json.dumps(module.locals[specifier])})"
            return self._external(self._url(specifier))

        def on_static(match: re.Match[str]) -> str:
            source = namespace(match.group("specifier"))
            return match.group("indent") + _binding_statements(match.group("clause"), source)

        def on_side_effect(match: re.Match[str]) -> str:
            specifier = match.group("specifier")
            if specifier in module.locals:
                return f"{match.group('indent')}__load({json.dumps(module.locals[specifier])});"
            self._external(self._url(specifier))
            return match.group("indent")

        def on_export_from(match: re.Match[str]) -> str:
            source = namespace(match.group("specifier"))
            clause = match.group("clause")
            if clause.startswith("*"):
                alias = _star_alias(clause)
                if alias:
                    getters.append((alias, source))
                else:
                    stars.append(source)
            else:
                getters.extend((alias, f"{source}.{name}") for name, alias in _specifier_pairs(clause))
            return match.group("indent")

        def on_default_decl(match: re.Match[str]) -> str:
            getters.append(("default", match.group("name")))
            return match.group("indent") + match.group("kw") + match.group("name")

        def on_decl(match: re.Match[str]) -> str:
            getters.append((match.group("name"), match.group("name")))
            return match.group("indent") + match.group("kw") + match.group("name")

        def on_list(match: re.Match[str]) -> str:
            getters.extend((alias, name) for name, alias in _specifier_pairs(match.group("names")))
            return match.group("indent")

        if EXPORT_DESTRUCTURE_RE.search(module.code):
            raise BundleError(f"Destructuring exports are not supported in {module.id}")

        code = STATIC_IMPORT_RE.sub(on_static, module.code)
        code = SIDE_EFFECT_IMPORT_RE.sub(on_side_effect, code)
        code = EXPORT_FROM_RE.sub(on_export_from, code)
        code = DYNAMIC_IMPORT_RE.sub(lambda m: self._dynamic(module, m), code)
        code = EXPORT_DEFAULT_DECL_RE.sub(on_default_decl, code)
        code = EXPORT_DECL_RE.sub(on_decl, code)
        code = EXPORT_DEFAULT_RE.sub(lambda m: m.group("indent") + "__exports.default = ", code)
        code = EXPORT_LIST_RE.sub(on_list, code)
        if LEFTOVER_EXPORT_RE.search(code):
            raise BundleError(f"Unsupported export statement in {module.id}")

        prologue = []
        if getters:
            entries = ", ".join(f"{json.dumps(name)}: () => {expr}" for name, expr in getters)
            prologue.append(f"__export(__exports, {{ {entries} }});")
        prologue.extend(f"__exportStar(__exports, {source});" for source in stars)

        body = "\n".join([*prologue, code.rstrip("\n")])
        return f"__defs[{json.dumps(module.id)}] = function (__exports) {{\n{body}\n}};"

    def rewrite_entry(self, module: _Module) -> str:
        """Rewrite the entry module; it stays a top-level ES module."""

        def load(specifier: str) -> str:
            return f"__load({json.dumps(module.locals[specifier])})"

        def on_static(match: re.Match[str]) -> str:
            specifier = match.group("specifier")
            clause = match.group("clause")
            if specifier in module.locals:
                return match.group("indent") + _binding_statements(clause, load(specifier))
            return f"{match.group('indent')}import {clause.strip()} from {json.dumps(self._url(specifier))};"

        def on_side_effect(match: re.Match[str]) -> str:
            specifier = match.group("specifier")
            if specifier in module.locals:
                return f"{match.group('indent')}{load(specifier)};"
            return f"{match.group('indent')}import {json.dumps(self._url(specifier))};"

        def on_export_from(match: re.Match[str]) -> str:
            specifier = match.group("specifier")
            clause = match.group("clause")
            indent = match.group("indent")
            if specifier not in module.locals:
                return f"{indent}export {clause.strip()} from {json.dumps(self._url(specifier))};"

            alias = _star_alias(clause) if clause.startswith("*") else None
            if alias:
                return f"{indent}export const {alias} = {load(specifier)};"

            var = self._temp()
            statements = [f"const {var} = {load(specifier)};"]
            if clause.startswith("*"):
                names = [n for n in self.export_names(module.locals[specifier]) if n != "default"]
                pairs = [(n, n) for n in names]
            else:
                pairs = _specifier_pairs(clause)
            named = []
            for name, exported in pairs:
                if exported == "default":
                    statements.append(f"export default {var}.{name};")
                else:
                    named.append(name if name == exported else f"{name}: {exported}")
            if named:
                statements.append(f"export const {{ {', '.join(named)} }} = {var};")
            return indent + " ".join(statements)

        code = STATIC_IMPORT_RE.sub(on_static, module.code)
        code = SIDE_EFFECT_IMPORT_RE.sub(on_side_effect, code)
        code = EXPORT_FROM_RE.sub(on_export_from, code)
        return DYNAMIC_IMPORT_RE.sub(lambda m: self._dynamic(module, m), code)


class InlineBundler:
    """Bundle untrusted single-document sources.

    Args:
        resolver: Import resolver used for every bare specifier.
        settings: Application settings (esbuild and target options).
    """

    def __init__(self, resolver: ImportResolver, settings: Settings) -> None:
        self.resolver = resolver
        self.settings = settings

    def _prepare(self, module_id: str, text: str, options: BundleOptions) -> str:
        should_transpile = options.transpile
        if should_transpile is None:
            should_transpile = loader_for(module_id) is not None
        if should_transpile:
            return transpile(text, module_id, self.settings)
        return text

    def _collect(
        self,
        entry: str,
        source_text: str,
        files: dict[str, str],
        options: BundleOptions,
    ) -> tuple[dict[str, _Module], list[str], list[str]]:
        modules: dict[str, _Module] = {}
        order: list[str] = []
        bare: list[str] = []

        def visit(module_id: str, text: str) -> None:
            if len(modules) >= MAX_LOCAL_MODULES:
                raise BundleError(f"Too many local modules (limit {MAX_LOCAL_MODULES})")
            module = _Module(id=module_id, code=self._prepare(module_id, text, options))
            modules[module_id] = module
            for specifier in _module_specifiers(module.code):
                if is_relative(specifier):
                    target = _resolve_local(module_id, specifier, files)
                    if target == entry:
                        raise BundleError(f"{module_id} imports the entry module {entry}")
                    module.locals[specifier] = target
                    if target not in modules:
                        visit(target, files[target])
                elif is_bare_specifier(specifier) and specifier not in bare:
                    bare.append(specifier)
            order.append(module_id)

        visit(entry, source_text)
        return modules, order, bare

    def bundle(self, source_text: str, options: BundleOptions) -> str:
        """Bundle one source document.

        Args:
            source_text: Entry document source.
            options: Bundle options.

        Returns:
            Bundled ES module text.

        Raises:
            BundleError: If a module fails to compile or cannot be inlined.
            ResolutionError: If a bare specifier is not allowed or unreachable.
            UnresolvedImportsError: If the output still has bare imports.
        """
        entry = _normalize_path(options.entry)
        files = {_normalize_path(path): text for path, text in options.files.items()}

        modules, order, bare = self._collect(entry, source_text, files, options)
        resolved = self.resolver.resolve_all(bare, options.policy)
        urls = {specifier: item.resolved_url for specifier, item in resolved.items()}

        emitter = _Emitter(modules, urls)
        wrapped = [emitter.rewrite_wrapped(modules[mid]) for mid in order if mid != entry]
        entry_code = emitter.rewrite_entry(modules[entry])

        parts = [f"import * as {var} from {json.dumps(url)};" for url, var in emitter.hoisted.items()]
        if wrapped:
            parts.append(RUNTIME_PRELUDE)
            parts.extend(wrapped)
        parts.append(entry_code.rstrip("\n"))
        output = "\n".join(parts) + "\n"

        assert_no_bare_imports(output)
        logger.info(
            "Bundled %s: %d local module(s), %d external import(s), %d bytes",
            entry,
            len(modules),
            len(urls),
            len(output),
        )
        return output


def bundle(
    source_text: str,
    options: BundleOptions,
    resolver: ImportResolver,
    settings: Settings,
) -> str:
    """Bundle one source document with a fresh InlineBundler."""
    return InlineBundler(resolver, settings).bundle(source_text, options)


__all__ = [
    "BundleOptions",
    "InlineBundler",
    "bundle",
]
