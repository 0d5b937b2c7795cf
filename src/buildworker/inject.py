"""Wire an extension module into the host's entry point.

The host program discovers plugins through side-effect imports in one Go
source file. Injection adds ``import _ "<module>"`` to that file with a
narrow, syntax-aware edit: parse with tree-sitter, locate the import block,
splice the new spec in, and re-parse the result before anything touches the
disk. A module that is already imported is left alone, so applying the same
injection twice never produces a duplicate import.
"""

from __future__ import annotations

import os
import stat
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import tree_sitter_go
from tree_sitter import Language, Node, Parser

from buildworker.errors import InjectionError

GO_LANGUAGE = Language(tree_sitter_go.language())


def _parse(source: bytes) -> Node:
    return Parser(GO_LANGUAGE).parse(source).root_node


def imported_paths(root: Node) -> set[str]:
    paths: set[str] = set()
    for declaration in root.children:
        if declaration.type != "import_declaration":
            continue
        for spec in _import_specs(declaration):
            path = spec.child_by_field_name("path")
            if path is not None and path.text is not None:
                paths.add(path.text.decode("utf-8").strip("\"`"))
    return paths


def _import_specs(declaration: Node) -> Iterator[Node]:
    for child in declaration.children:
        if child.type == "import_spec":
            yield child
        elif child.type == "import_spec_list":
            yield from (spec for spec in child.children if spec.type == "import_spec")


def add_blank_import(source: bytes, module: str) -> bytes:
    """Return ``source`` with a side-effect import of ``module`` added.

    Returns ``source`` unchanged when ``module`` is already imported.
    """
    root = _parse(source)
    if root.has_error:
        raise InjectionError(
            "Entry file does not parse as Go source.",
            hint="The host checkout may be corrupt or at an unexpected revision.",
            context={"module": module},
        )
    if module in imported_paths(root):
        return source

    spec = f'_ "{module}"'.encode()
    declarations = [child for child in root.children if child.type == "import_declaration"]
    grouped = [child for decl in declarations for child in decl.children if child.type == "import_spec_list"]

    if grouped:
        closing = grouped[0].children[-1]
        offset = closing.start_byte
        line_start = source.rfind(b"\n", 0, offset) + 1
        prefix = b"" if not source[line_start:offset].strip() else b"\n"
        edited = source[:offset] + prefix + b"\t" + spec + b"\n" + source[offset:]
    elif declarations:
        offset = declarations[-1].end_byte
        edited = source[:offset] + b"\nimport " + spec + source[offset:]
    else:
        package = next((child for child in root.children if child.type == "package_clause"), None)
        if package is None:
            raise InjectionError("Entry file has no package clause.", context={"module": module})
        offset = package.end_byte
        edited = source[:offset] + b"\n\nimport " + spec + source[offset:]

    if _parse(edited).has_error:
        raise InjectionError(
            "Edited entry file no longer parses.",
            hint="The import block has a layout the injector does not handle.",
            context={"module": module},
        )
    return edited


def inject_module(entry_file: Path, module: str) -> bool:
    """Add a side-effect import of ``module`` to ``entry_file``.

    Returns whether the file changed. The file is replaced atomically and
    keeps its permission bits; on any failure it is left untouched.
    """
    try:
        original = entry_file.read_bytes()
        mode = stat.S_IMODE(entry_file.stat().st_mode)
    except OSError as exc:
        raise InjectionError(
            "Entry file cannot be read.",
            context={"module": module, "path": str(entry_file), "error": str(exc)},
        ) from exc

    try:
        edited = add_blank_import(original, module)
    except InjectionError as exc:
        raise InjectionError(exc.message, hint=exc.hint, context={**exc.context, "path": str(entry_file)}) from exc
    if edited == original:
        return False
    _replace_file(entry_file, edited, mode)
    return True


@contextmanager
def injected(entry_file: Path, modules: Iterable[str]) -> Iterator[Path]:
    """Inject ``modules`` for the duration of the block, then restore the file."""
    try:
        original = entry_file.read_bytes()
        mode = stat.S_IMODE(entry_file.stat().st_mode)
    except OSError as exc:
        raise InjectionError(
            "Entry file cannot be read.",
            hint="Check that the host version ships the configured entry file.",
            context={"path": str(entry_file), "error": str(exc)},
        ) from exc
    try:
        for module in modules:
            inject_module(entry_file, module)
        yield entry_file
    finally:
        _replace_file(entry_file, original, mode)


def _replace_file(path: Path, content: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise InjectionError(
            "Saving the edited entry file failed.",
            context={"path": str(path), "error": str(exc)},
        ) from exc
