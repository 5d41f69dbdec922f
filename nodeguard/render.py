"""Rendering templated manifest files into Kubernetes-style objects."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import yaml

MANIFEST_SUFFIXES = (".yml", ".yaml", ".json")


class TemplateError(Exception):
    """Raised when a manifest cannot be read, parsed, rendered or decoded."""


def get_or(m: Mapping[str, Any], key: str, fallback: str) -> Any:
    """Return ``m[key]``, or ``fallback`` if it is missing or the empty string."""
    if key not in m:
        return fallback
    val = m[key]
    if isinstance(val, str) and val == "":
        return fallback
    return val


def is_set(m: Mapping[str, Any], key: str) -> Any:
    """Return ``m[key]`` if the key exists, otherwise False."""
    return m.get(key, False) if key in m else False


def _default(fallback: Any, value: Any = None) -> Any:
    return value if value not in (None, "", 0, False, [], {}) else fallback


_BUILTINS: dict[str, Callable[..., Any]] = {
    "getOr": get_or,
    "isSet": is_set,
    "default": _default,
    "quote": lambda *args: " ".join(json.dumps(str(a)) for a in args),
    "upper": lambda s: str(s).upper(),
    "lower": lambda s: str(s).lower(),
    "trim": lambda s: str(s).strip(),
}


@dataclass
class RenderData:
    funcs: dict[str, Callable[..., Any]] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)


_ACTION = re.compile(r"\{\{(-\s)?(.*?)(\s-)?\}\}", re.S)
_LEXEME = re.compile(
    r'\s*(?:(?P<str>"(?:\\.|[^"\\])*")|(?P<raw>`[^`]*`)|(?P<pipe>\|)'
    r"|(?P<field>\.(?:[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)?)"
    r"|(?P<num>-?\d+(?:\.\d+)?)|(?P<ident>[A-Za-z_]\w*))"
)


@dataclass(frozen=True)
class _Operand:
    kind: str
    value: Any


def _lex(text: str, where: str) -> list[_Operand]:
    operands, pos = [], 0
    while pos < len(text):
        if not text[pos:].strip():
            break
        match = _LEXEME.match(text, pos)
        if not match or match.end() == pos:
            raise TemplateError(f"{where}: unexpected {text[pos:].strip()!r} in command")
        pos = match.end()
        kind = match.lastgroup
        raw = match.group(kind)
        if kind == "str":
            operands.append(_Operand("lit", json.loads(raw)))
        elif kind == "raw":
            operands.append(_Operand("lit", raw[1:-1]))
        elif kind == "num":
            operands.append(_Operand("lit", float(raw) if "." in raw else int(raw)))
        elif kind == "ident" and raw in ("true", "false", "nil"):
            operands.append(_Operand("lit", {"true": True, "false": False, "nil": None}[raw]))
        else:
            operands.append(_Operand(kind, raw))
    return operands


def _parse(source: str, path: str, funcs: Mapping[str, Callable[..., Any]]) -> list[Any]:
    """Split the source into text pieces and pipelines of commands."""
    parts: list[Any] = []
    pos = 0
    for match in _ACTION.finditer(source):
        text = source[pos:match.start()]
        if match.group(1):
            text = text.rstrip()
        if parts and isinstance(parts[-1], tuple) and parts[-1][0] == "trim":
            text = text.lstrip()
            parts.pop()
        parts.append(text)
        line = source.count("\n", 0, match.start()) + 1
        where = f"template: {path}:{line}"
        commands: list[list[_Operand]] = [[]]
        for operand in _lex(match.group(2), where):
            if operand.kind == "pipe":
                commands.append([])
                continue
            if operand.kind == "ident" and operand.value not in funcs:
                raise TemplateError(f'{where}: function "{operand.value}" not defined')
            commands[-1].append(operand)
        if any(not cmd for cmd in commands):
            raise TemplateError(f"{where}: missing value for command")
        parts.append((where, commands))
        if match.group(3):
            parts.append(("trim",))
        pos = match.end()
    text = source[pos:]
    if parts and isinstance(parts[-1], tuple) and parts[-1][0] == "trim":
        parts.pop()
        text = text.lstrip()
    parts.append(text)
    return parts


def _field(root: Any, path: str, where: str) -> Any:
    value = root
    for name in filter(None, path.split(".")):
        if not isinstance(value, Mapping):
            raise TemplateError(f"{where}: can't evaluate field {name} in {type(value).__name__}")
        if name not in value:
            raise TemplateError(f'{where}: map has no entry for key "{name}"')
        value = value[name]
    return value


def _format(value: Any) -> str:
    if value is None:
        return "<no value>"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _execute(parts: list[Any], root: Any, funcs: Mapping[str, Callable[..., Any]]) -> str:
    out: list[str] = []
    for part in parts:
        if isinstance(part, str):
            out.append(part)
            continue
        where, commands = part
        previous: list[Any] = []
        for command in commands:
            values = [
                _field(root, op.value, where) if op.kind == "field" else op.value
                for op in command[1:] if op.kind != "ident"
            ]
            head = command[0]
            if head.kind == "ident":
                try:
                    result = funcs[head.value](*values, *previous)
                except TypeError as err:
                    raise TemplateError(f"{where}: error calling {head.value}: {err}") from err
            else:
                if len(command) > 1 or previous:
                    raise TemplateError(f"{where}: can't give argument to non-function")
                result = _field(root, head.value, where) if head.kind == "field" else head.value
            previous = [result]
        out.append(_format(previous[0]))
    return "".join(out)


def _render_text(path: str, data: RenderData) -> str:
    funcs = {**data.funcs, **_BUILTINS}
    try:
        with open(path, encoding="utf-8") as fh:
            source = fh.read()
    except OSError as err:
        raise TemplateError(f"failed to read manifest {path}: {err}") from err
    try:
        parts = _parse(source, path, funcs)
    except TemplateError as err:
        raise TemplateError(f"failed to parse manifest {path} as template: {err}") from err
    try:
        return _execute(parts, data.data, funcs)
    except TemplateError as err:
        raise TemplateError(f"failed to render manifest {path}: {err}") from err


def render_template(path: str, data: RenderData) -> list[dict[str, Any]]:
    """Render a YAML or JSON manifest file into the objects it holds."""
    rendered = _render_text(path, data)
    if not rendered.strip():
        return []
    try:
        documents = list(yaml.safe_load_all(rendered))
    except yaml.YAMLError as err:
        raise TemplateError(f"failed to unmarshal manifest {path}: {err}") from err
    objects = []
    for doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise TemplateError(f"failed to unmarshal manifest {path}: not an object")
        if "kind" not in doc:
            raise TemplateError(f"failed to unmarshal manifest {path}: Object 'Kind' is missing")
        objects.append(doc)
    return objects


def render_dir(manifest_dir: str, data: RenderData) -> list[dict[str, Any]]:
    """Render every manifest below a directory, in sorted walk order."""
    if not os.path.isdir(manifest_dir):
        raise TemplateError(f"error rendering manifests: no such directory {manifest_dir}")
    out: list[dict[str, Any]] = []
    try:
        for root, dirs, files in os.walk(manifest_dir):
            dirs.sort()
            for name in sorted(files):
                if name.endswith(MANIFEST_SUFFIXES):
                    out.extend(render_template(os.path.join(root, name), data))
    except TemplateError as err:
        raise TemplateError(f"error rendering manifests: {err}") from err
    return out