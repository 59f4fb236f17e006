"""
Static discovery of rollout entry points.

The discoverer never imports the user's module: it parses the source with
`ast` and looks for module-level exports marked with
`observe(rollout_entrypoint=True)`, either as a decorator or as a wrapping
call assigned to a module-level name.
"""

import ast
from dataclasses import dataclass, field

from lmnr_rollout.sdk.errors import (
    AmbiguousEntryPoint,
    DiscoveryEmpty,
    DiscoveryParseError,
    EntryPointNotFound,
)
from lmnr_rollout.sdk.types import EntryPointFunction, ParameterSpec

DESTRUCTURED_PARAM_NAME = "_destructured"

_RECORD_BASES = ("TypedDict", "BaseModel")
_TRANSPARENT_WRAPPERS = ("Optional", "Required", "NotRequired", "ReadOnly", "Final")
_FIELD_FACTORIES = ("Field", "field")


@dataclass
class _RecordField:
    name: str
    annotation: ast.expr
    required: bool
    default: str | None


@dataclass
class _Record:
    name: str
    fields: list[_RecordField] = field(default_factory=list)


def _dotted_tail(node: ast.expr) -> str | None:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def _is_dataclass_decorator(node: ast.expr) -> bool:
    if isinstance(node, ast.Call):
        node = node.func
    return _dotted_tail(node) == "dataclass"


def _subscript_name(node: ast.expr) -> str | None:
    if isinstance(node, ast.Subscript):
        return _dotted_tail(node.value)
    return None


def _literal_source(node: ast.expr | None) -> str | None:
    if node is None:
        return None
    return ast.unparse(node)


def _field_default(value: ast.expr | None) -> tuple[bool, str | None]:
    """Return (required, default source) for a class-level field value."""
    if value is None:
        return True, None
    # pydantic.Field(...) / dataclasses.field(...)
    if isinstance(value, ast.Call) and _dotted_tail(value.func) in _FIELD_FACTORIES:
        for kw in value.keywords:
            if kw.arg == "default":
                return False, _literal_source(kw.value)
            if kw.arg == "default_factory":
                return False, None
        if value.args and not (
            isinstance(value.args[0], ast.Constant) and value.args[0].value is Ellipsis
        ):
            return False, _literal_source(value.args[0])
        return True, None
    return False, _literal_source(value)


class _Analyzer:
    def __init__(self, tree: ast.Module):
        self.tree = tree
        self.records: dict[str, _Record] = {}
        self.functions: dict[str, ast.FunctionDef | ast.AsyncFunctionDef] = {}
        self._collect()

    def _collect(self) -> None:
        for node in self.tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                self.functions[node.name] = node
            elif isinstance(node, ast.ClassDef):
                record = self._record_from_class(node)
                if record is not None:
                    self.records[record.name] = record

    def _record_from_class(self, node: ast.ClassDef) -> _Record | None:
        base_names = [_dotted_tail(b) for b in node.bases]
        local_bases = [self.records[b] for b in base_names if b in self.records]
        is_typed_dict = "TypedDict" in base_names
        is_record = (
            any(b in _RECORD_BASES for b in base_names)
            or any(_is_dataclass_decorator(d) for d in node.decorator_list)
            or bool(local_bases)
        )
        if not is_record:
            return None

        total = True
        for kw in node.keywords:
            if kw.arg == "total" and isinstance(kw.value, ast.Constant):
                total = bool(kw.value.value)

        record = _Record(node.name)
        for base in local_bases:
            record.fields.extend(base.fields)
        for stmt in node.body:
            if not isinstance(stmt, ast.AnnAssign) or not isinstance(
                stmt.target, ast.Name
            ):
                continue
            if _subscript_name(stmt.annotation) == "ClassVar":
                continue
            annotation = stmt.annotation
            wrapper = _subscript_name(annotation)
            if is_typed_dict or wrapper in ("Required", "NotRequired"):
                if wrapper == "NotRequired":
                    required = False
                elif wrapper == "Required":
                    required = True
                else:
                    required = total
                default = None
            else:
                required, default = _field_default(stmt.value)
            # a redeclared field replaces the inherited one
            record.fields = [f for f in record.fields if f.name != stmt.target.id]
            record.fields.append(
                _RecordField(stmt.target.id, annotation, required, default)
            )
        return record

    def record_for(self, annotation: ast.expr | None) -> _Record | None:
        """Resolve an annotation to a record declared in this file, looking
        through Optional/NotRequired/Annotated and `X | None`."""
        if annotation is None:
            return None
        if isinstance(annotation, ast.Constant) and isinstance(annotation.value, str):
            try:
                annotation = ast.parse(annotation.value, mode="eval").body
            except SyntaxError:
                return None
        if isinstance(annotation, ast.Name):
            return self.records.get(annotation.id)
        if isinstance(annotation, ast.Subscript):
            wrapper = _dotted_tail(annotation.value)
            inner = annotation.slice
            if wrapper == "Annotated" and isinstance(inner, ast.Tuple):
                return self.record_for(inner.elts[0])
            if wrapper in _TRANSPARENT_WRAPPERS:
                return self.record_for(inner)
            return None
        if isinstance(annotation, ast.BinOp) and isinstance(annotation.op, ast.BitOr):
            for side in (annotation.left, annotation.right):
                if not (isinstance(side, ast.Constant) and side.value is None):
                    return self.record_for(side)
        return None

    def nested_specs(
        self, record: _Record, seen: frozenset[str] = frozenset()
    ) -> list[ParameterSpec]:
        if record.name in seen:
            return []
        seen = seen | {record.name}
        specs = []
        for f in record.fields:
            inner = self.record_for(f.annotation)
            specs.append(
                ParameterSpec(
                    name=f.name,
                    type=_annotation_text(f.annotation),
                    required=f.required,
                    default=f.default,
                    nested=self.nested_specs(inner, seen) if inner else [],
                )
            )
        return specs


def _annotation_text(annotation: ast.expr | None) -> str | None:
    if annotation is None:
        return None
    if _subscript_name(annotation) in ("Required", "NotRequired", "ReadOnly"):
        annotation = annotation.slice
    return ast.unparse(annotation)


def _synthesized_names(count: int, taken: set[str]) -> list[str]:
    """Names for parameters the caller never names.

    One such parameter is `_destructured`, several are `_destructured0`,
    `_destructured1`, ... in order. A name already taken by a sibling moves
    on to the next free numeric suffix.
    """
    used = set(taken)
    names = []
    for i in range(count):
        suffix = -1 if count == 1 else i
        candidate = (
            DESTRUCTURED_PARAM_NAME
            if suffix < 0
            else f"{DESTRUCTURED_PARAM_NAME}{suffix}"
        )
        while candidate in used:
            suffix += 1
            candidate = f"{DESTRUCTURED_PARAM_NAME}{suffix}"
        used.add(candidate)
        names.append(candidate)
    return names


def _unpacked_record(analyzer: _Analyzer, annotation: ast.expr | None):
    if annotation is not None and _subscript_name(annotation) == "Unpack":
        return analyzer.record_for(annotation.slice)
    return None


def extract_params(
    analyzer: _Analyzer, args: ast.arguments, skip_bound: bool = True
) -> tuple[ParameterSpec, ...]:
    positional = [*args.posonlyargs, *args.args]
    # defaults align with the tail of the positional parameters
    defaults: list[ast.expr | None] = [None] * (
        len(positional) - len(args.defaults)
    ) + list(args.defaults)
    posonly = {id(a) for a in args.posonlyargs}

    # (real name, spec fields, destructured)
    entries: list[tuple[str | None, dict, bool]] = []

    for i, (arg, default) in enumerate(zip(positional, defaults)):
        if skip_bound and i == 0 and arg.arg in ("self", "cls"):
            continue
        record = analyzer.record_for(arg.annotation)
        kind = "positional" if id(arg) in posonly else "keyword"
        values = dict(
            type=_annotation_text(arg.annotation),
            required=default is None,
            default=_literal_source(default),
            nested=analyzer.nested_specs(record) if record else [],
            kind=kind,
        )
        destructured = record is not None and kind == "positional"
        entries.append((None if destructured else arg.arg, values, destructured))

    if args.vararg is not None:
        entries.append(
            (
                args.vararg.arg,
                dict(
                    type=_annotation_text(args.vararg.annotation),
                    required=False,
                    kind="var_positional",
                ),
                False,
            )
        )

    for arg, default in zip(args.kwonlyargs, args.kw_defaults):
        record = analyzer.record_for(arg.annotation)
        entries.append(
            (
                arg.arg,
                dict(
                    type=_annotation_text(arg.annotation),
                    required=default is None,
                    default=_literal_source(default),
                    nested=analyzer.nested_specs(record) if record else [],
                    kind="keyword",
                ),
                False,
            )
        )

    if args.kwarg is not None:
        record = _unpacked_record(analyzer, args.kwarg.annotation)
        values = dict(
            type=_annotation_text(
                args.kwarg.annotation.slice if record else args.kwarg.annotation
            ),
            required=False,
            nested=analyzer.nested_specs(record) if record else [],
            kind="var_keyword",
        )
        if record is not None:
            values["required"] = any(p.required for p in values["nested"])
        entries.append((None if record else args.kwarg.arg, values, record is not None))

    taken = {name for name, _, destructured in entries if not destructured}
    synthesized = iter(
        _synthesized_names(sum(1 for *_, d in entries if d), taken)
    )
    return tuple(
        ParameterSpec(name=next(synthesized) if destructured else name, **values)
        for name, values, destructured in entries
    )


def _rollout_marker(node: ast.expr) -> tuple[bool, str | None]:
    """Check for `observe(..., rollout_entrypoint=True)`; return the span name
    given with `name=` if any."""
    if not isinstance(node, ast.Call) or _dotted_tail(node.func) != "observe":
        return False, None
    marked = False
    span_name = None
    for kw in node.keywords:
        if kw.arg == "rollout_entrypoint" and isinstance(kw.value, ast.Constant):
            marked = kw.value.value is True
        elif kw.arg == "name" and isinstance(kw.value, ast.Constant):
            if isinstance(kw.value.value, str):
                span_name = kw.value.value
    return marked, span_name


def _declared_all(tree: ast.Module) -> set[str] | None:
    for node in tree.body:
        if (
            isinstance(node, ast.Assign)
            and any(isinstance(t, ast.Name) and t.id == "__all__" for t in node.targets)
            and isinstance(node.value, (ast.List, ast.Tuple))
        ):
            return {
                elt.value
                for elt in node.value.elts
                if isinstance(elt, ast.Constant) and isinstance(elt.value, str)
            }
    return None


def discover_entrypoints(
    source: str, filename: str = "<source>"
) -> dict[str, EntryPointFunction]:
    """
    Find the rollout entry points declared in a Python source text.

    Args:
        source: Python source code
        filename: Used in error messages only

    Returns:
        Mapping from export name to entry point, in declaration order. Empty
        when the source declares none.

    Raises:
        DiscoveryParseError: the source is not valid Python
    """
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as e:
        raise DiscoveryParseError(filename, e.lineno, e.msg) from e

    analyzer = _Analyzer(tree)
    exported = _declared_all(tree)

    def is_exported(name: str) -> bool:
        if exported is not None:
            return name in exported
        return not name.startswith("_")

    entrypoints: dict[str, EntryPointFunction] = {}
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            for decorator in node.decorator_list:
                marked, span_name = _rollout_marker(decorator)
                if marked and is_exported(node.name):
                    entrypoints[node.name] = EntryPointFunction(
                        name=span_name or node.name,
                        export_name=node.name,
                        params=extract_params(analyzer, node.args),
                    )
                    break
        elif isinstance(node, ast.Assign):
            if len(node.targets) != 1 or not isinstance(node.targets[0], ast.Name):
                continue
            export_name = node.targets[0].id
            call = node.value
            if not isinstance(call, ast.Call) or len(call.args) != 1:
                continue
            marked, span_name = _rollout_marker(call.func)
            if not marked or not is_exported(export_name):
                continue
            wrapped = call.args[0]
            if isinstance(wrapped, ast.Lambda):
                params = extract_params(analyzer, wrapped.args, skip_bound=False)
            elif isinstance(wrapped, ast.Name) and wrapped.id in analyzer.functions:
                params = extract_params(analyzer, analyzer.functions[wrapped.id].args)
            else:
                # wraps something defined elsewhere; its shape is unknown here
                params = ()
            entrypoints[export_name] = EntryPointFunction(
                name=span_name or export_name,
                export_name=export_name,
                params=params,
            )
    return entrypoints


def discover_entrypoints_in_file(path: str) -> dict[str, EntryPointFunction]:
    with open(path, encoding="utf-8") as f:
        source = f.read()
    return discover_entrypoints(source, filename=path)


def select_entrypoint(
    entrypoints: dict[str, EntryPointFunction], function_name: str | None = None
) -> EntryPointFunction:
    """Pick the entry point to run.

    With an explicit name, match the export name first and then the span
    name. Without one, the module must declare exactly one entry point.
    """
    if function_name:
        if function_name in entrypoints:
            return entrypoints[function_name]
        for entrypoint in entrypoints.values():
            if entrypoint.name == function_name:
                return entrypoint
        available = ", ".join(entrypoints.keys()) or "none"
        raise EntryPointNotFound(
            f"Function '{function_name}' not found. Available: {available}"
        )

    if not entrypoints:
        raise DiscoveryEmpty(
            "No rollout entrypoints found. "
            "Add @observe(rollout_entrypoint=True) to a function."
        )
    if len(entrypoints) > 1:
        raise AmbiguousEntryPoint(
            "Multiple rollout entrypoints found: "
            f"{', '.join(entrypoints.keys())}. Specify one with functionName."
        )
    return next(iter(entrypoints.values()))
