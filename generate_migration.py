#!/usr/bin/env python3
"""Generate one squashed Alembic migration (+ optional summary markdown) from YAML model definitions."""

from __future__ import annotations

import argparse
import dataclasses
import difflib
import enum
import re
import sys
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc


DEFAULT_CONFIG = "squash.yaml"
MODEL_SUFFIXES = (".yaml", ".yml")
FALLBACK_TYPE = "STRING"
DEFAULT_DECIMAL = (10, 0)
PG_IDENTIFIER_BYTES = 63

# Relation metadata never reaches the generated columns: the squashed
# migration defines columns only, no foreign key constraints.
RELATION_KEYS = frozenset({"references", "onDelete", "onUpdate"})
BOOKKEEPING_KEYS = frozenset({"Model", "field", "fieldName", "_modelAttribute", "get", "set"})
ATTRIBUTE_KEYS = frozenset(
    {
        "type",
        "length",
        "precision",
        "scale",
        "values",
        "allowNull",
        "primaryKey",
        "autoIncrement",
        "unique",
        "defaultValue",
        "comment",
    }
)


class EnumCollisionError(ValueError):
    pass


@dataclasses.dataclass
class Diagnostics:
    """Collects warnings and errors of one run and echoes them to stderr.

    Errors mark the run as degraded; warnings do not.
    """

    warnings: list[str] = dataclasses.field(default_factory=list)
    errors: list[str] = dataclasses.field(default_factory=list)
    echo: bool = True

    @property
    def had_errors(self) -> bool:
        return bool(self.errors)

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        if self.echo:
            print(f"[warn] {message}", file=sys.stderr)

    def error(self, message: str) -> None:
        self.errors.append(message)
        if self.echo:
            print(f"[error] {message}", file=sys.stderr)


@dataclasses.dataclass
class GeneratorConfig:
    type_aliases: dict[str, str] = dataclasses.field(default_factory=dict)
    exclude_models: frozenset[str] = frozenset()
    strict_enum_names: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> GeneratorConfig:
        data = data or {}
        if not isinstance(data, Mapping):
            raise ValueError("Config must be a mapping")
        unknown = sorted(set(data) - {"type_aliases", "exclude_models", "strict_enum_names"})
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")

        aliases = data.get("type_aliases") or {}
        if not isinstance(aliases, Mapping):
            raise ValueError("type_aliases must be a mapping")
        excluded = data.get("exclude_models") or []
        if not isinstance(excluded, list):
            raise ValueError("exclude_models must be a list")
        strict = data.get("strict_enum_names", False)
        if not isinstance(strict, bool):
            raise ValueError("strict_enum_names must be a boolean")

        return cls(
            type_aliases={base_type_name(str(k)): base_type_name(str(v)) for k, v in aliases.items()},
            exclude_models=frozenset(str(name) for name in excluded),
            strict_enum_names=strict,
        )


def load_config(path: Path | None) -> GeneratorConfig:
    if path is None:
        return GeneratorConfig()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    return GeneratorConfig.from_dict(data)


# ---------------------------------------------------------------------------
# Column types
# ---------------------------------------------------------------------------


class ColumnKind(enum.Enum):
    BOOLEAN = "BOOLEAN"
    STRING = "STRING"
    TEXT = "TEXT"
    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    DECIMAL = "DECIMAL"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    DATE = "DATE"
    ENUM = "ENUM"
    JSON = "JSON"
    JSONB = "JSONB"
    VIRTUAL = "VIRTUAL"
    OTHER = "OTHER"


KIND_BY_TOKEN: dict[str, ColumnKind] = {kind.value: kind for kind in ColumnKind if kind is not ColumnKind.OTHER}

TYPE_ALIASES: dict[str, str] = {
    "STRING": "STRING",
    "VARCHAR": "STRING",
    "CHARACTER VARYING": "STRING",
    "TEXT": "TEXT",
    "BOOLEAN": "BOOLEAN",
    "BOOL": "BOOLEAN",
    "INTEGER": "INTEGER",
    "INT": "INTEGER",
    "INT4": "INTEGER",
    "BIGINT": "BIGINT",
    "INT8": "BIGINT",
    "DECIMAL": "DECIMAL",
    "NUMERIC": "DECIMAL",
    "FLOAT": "FLOAT",
    "REAL": "FLOAT",
    "DOUBLE": "DOUBLE",
    "DOUBLE PRECISION": "DOUBLE",
    "FLOAT8": "DOUBLE",
    "DATE": "DATE",
    "DATETIME": "DATE",
    "TIMESTAMP": "DATE",
    "TIMESTAMPTZ": "DATE",
    "TIMESTAMP WITH TIME ZONE": "DATE",
    "TIMESTAMP WITHOUT TIME ZONE": "DATE",
    "TIME WITHOUT TIME ZONE": "TIME",
    "TIME WITH TIME ZONE": "TIMETZ",
    "ENUM": "ENUM",
    "JSON": "JSON",
    "JSONB": "JSONB",
    "VIRTUAL": "VIRTUAL",
}

# Tokens whose type-vocabulary name differs from the token itself.
TOKEN_EXPRESSIONS: dict[str, str] = {
    "FLOAT": "sa.Float",
    "DOUBLE": "sa.Double",
    "DATEONLY": "sa.Date",
    "UUID": "sa.Uuid",
    "UUIDV4": "sa.Uuid",
}


@dataclasses.dataclass(frozen=True)
class ColumnType:
    kind: ColumnKind
    name: str
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    values: tuple[str, ...] = ()


def base_type_name(declared: str) -> str:
    name = declared.split("(", 1)[0]
    return " ".join(name.upper().split())


def type_params(declared: str) -> list[str]:
    m = re.search(r"\(([^)]*)\)", declared)
    if not m:
        return []
    return [p.strip() for p in m.group(1).split(",") if p.strip()]


def canonical_type_name(declared: str, aliases: Mapping[str, str] | None = None) -> str:
    base = base_type_name(declared)
    if aliases:
        base = aliases.get(base, base)
    return TYPE_ALIASES.get(base, base)


def _optional_int(value: Any, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"{label} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be an integer, got {value!r}") from exc


def parse_column_type(
    declared: Any,
    raw: Mapping[str, Any],
    aliases: Mapping[str, str] | None = None,
) -> ColumnType | None:
    """Turn a declared type string plus its raw attribute properties into a ColumnType."""
    if declared is None:
        return None
    if not isinstance(declared, str):
        raise TypeError(f"type must be a string, got {type(declared).__name__}")

    token = canonical_type_name(declared, aliases)
    kind = KIND_BY_TOKEN.get(token, ColumnKind.OTHER)
    params = type_params(declared)

    if kind is ColumnKind.STRING:
        length = raw.get("length", params[0] if params else None)
        return ColumnType(kind, declared, length=_optional_int(length, "length"))

    if kind is ColumnKind.DECIMAL:
        precision = raw.get("precision", params[0] if params else None)
        scale = raw.get("scale", params[1] if len(params) > 1 else None)
        return ColumnType(
            kind,
            declared,
            precision=_optional_int(precision, "precision"),
            scale=_optional_int(scale, "scale"),
        )

    if kind is ColumnKind.ENUM:
        values = raw.get("values")
        if not isinstance(values, list) or not values:
            raise ValueError("ENUM requires a non-empty 'values' list")
        return ColumnType(kind, declared, values=tuple(str(v) for v in values))

    return ColumnType(kind, declared)


def resolve_type(
    column_type: ColumnType | None,
    diagnostics: Diagnostics,
    *,
    context: str = "",
    aliases: Mapping[str, str] | None = None,
) -> str:
    """Map a declared column type to its canonical token, falling back to STRING."""
    if column_type is None:
        diagnostics.warn(f"{context}: type is undefined, falling back to {FALLBACK_TYPE}")
        return FALLBACK_TYPE
    try:
        return canonical_type_name(column_type.name, aliases)
    except (AttributeError, TypeError, ValueError) as exc:
        diagnostics.warn(f"{context}: cannot resolve type {column_type.name!r} ({exc}), falling back to {FALLBACK_TYPE}")
        return FALLBACK_TYPE


def vocabulary_type(token: str) -> str | None:
    """Return the sa./postgresql. callable for a pass-through token, or None when unsupported."""
    if token in TOKEN_EXPRESSIONS:
        return TOKEN_EXPRESSIONS[token]
    ident = token.replace(" ", "_")
    if not ident.isidentifier():
        return None
    for prefix, module in (("sa", sa), ("postgresql", postgresql)):
        candidate = getattr(module, ident, None)
        if not (isinstance(candidate, type) and issubclass(candidate, sa.types.TypeEngine)):
            continue
        try:
            candidate()
        except TypeError:
            # needs constructor arguments (ARRAY and friends)
            return None
        return f"{prefix}.{ident}"
    return None


# ---------------------------------------------------------------------------
# Statement IR
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class TypeExpr:
    callable: str
    kwargs: tuple[tuple[str, Any], ...] = ()


@dataclasses.dataclass(frozen=True)
class SqlText:
    sql: str


@dataclasses.dataclass(frozen=True)
class ColumnDef:
    name: str
    type_expr: TypeExpr
    options: tuple[tuple[str, Any], ...] = ()


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def pg_identifier(name: str) -> str:
    """Return ``name`` as PostgreSQL stores it: cut to 63 bytes on a character boundary."""
    encoded = name.encode("utf-8")
    if len(encoded) <= PG_IDENTIFIER_BYTES:
        return name
    return encoded[:PG_IDENTIFIER_BYTES].decode("utf-8", errors="ignore")


def dollar_quote_tag(body: str) -> str:
    tag = "$enum$"
    n = 0
    while tag in body:
        n += 1
        tag = f"$enum{n}$"
    return tag


@dataclasses.dataclass(frozen=True)
class CreateEnum:
    name: str
    values: tuple[str, ...]

    def sql_fragments(self) -> list[str]:
        values = ", ".join(quote_literal(v) for v in self.values)
        body = [
            "BEGIN ",
            f"IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = {quote_literal(pg_identifier(self.name))}) THEN ",
            f"CREATE TYPE {quote_ident(self.name)} AS ENUM ({values}); ",
            "END IF; END ",
        ]
        tag = dollar_quote_tag("".join(body))
        return [f"DO {tag} {body[0]}", *body[1:-1], f"{body[-1]}{tag};"]

    def sql(self) -> str:
        return "".join(self.sql_fragments())


@dataclasses.dataclass(frozen=True)
class CreateTable:
    table: str
    columns: tuple[ColumnDef, ...]


@dataclasses.dataclass(frozen=True)
class DropTable:
    table: str


@dataclasses.dataclass(frozen=True)
class DropEnum:
    name: str

    def sql(self) -> str:
        return f"DROP TYPE IF EXISTS {quote_ident(self.name)};"


Statement = Union[CreateEnum, CreateTable, DropTable, DropEnum]


@dataclasses.dataclass
class MigrationScript:
    up: list[Statement]
    down: list[Statement]

    def tables(self) -> list[CreateTable]:
        return [s for s in self.up if isinstance(s, CreateTable)]

    def enums(self) -> list[CreateEnum]:
        return [s for s in self.up if isinstance(s, CreateEnum)]


# ---------------------------------------------------------------------------
# Models and attributes
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class ModelDefinition:
    name: str
    table_name: str
    attributes: Any
    source: str | None = None


@dataclasses.dataclass(frozen=True)
class AttributeSpec:
    name: str
    column_type: ColumnType | None
    allow_null: bool = True
    primary_key: bool = False
    autoincrement: bool = False
    unique: bool = False
    default: Any = None
    comment: str | None = None
    references: Mapping[str, Any] | None = None

    @property
    def is_virtual(self) -> bool:
        return self.column_type is not None and self.column_type.kind is ColumnKind.VIRTUAL

    @property
    def is_enum(self) -> bool:
        return self.column_type is not None and self.column_type.kind is ColumnKind.ENUM

    @property
    def enum_values(self) -> tuple[str, ...]:
        return self.column_type.values if self.is_enum else ()


@dataclasses.dataclass(frozen=True)
class NormalizedAttribute:
    name: str
    type_expr: TypeExpr
    allow_null: bool = True
    primary_key: bool = False
    autoincrement: bool = False
    unique: bool = False
    default: str | SqlText | None = None
    comment: str | None = None


def _flag(raw: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = raw.get(key, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise TypeError(f"{key} must be a boolean, got {value!r}")
    return value


def parse_attribute(name: Any, raw: Any, aliases: Mapping[str, str] | None = None) -> AttributeSpec:
    if not isinstance(name, str) or not name:
        raise TypeError(f"field name must be a non-empty string, got {name!r}")
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, Mapping):
        raise TypeError(f"attribute must be a mapping or a type name, got {type(raw).__name__}")

    comment = raw.get("comment")
    return AttributeSpec(
        name=name,
        column_type=parse_column_type(raw.get("type"), raw, aliases),
        allow_null=_flag(raw, "allowNull", True),
        primary_key=_flag(raw, "primaryKey"),
        autoincrement=_flag(raw, "autoIncrement"),
        unique=_flag(raw, "unique"),
        default=raw.get("defaultValue"),
        comment=None if comment is None else str(comment),
        references=raw.get("references"),
    )


def enum_type_name(table_name: str, field_name: str) -> str:
    return f"enum_{table_name}_{field_name}"


def finish_type(kind: ColumnKind, token: str, column_type: ColumnType | None, table_name: str, field: str) -> TypeExpr | None:
    if kind is ColumnKind.BOOLEAN:
        return TypeExpr("sa.Boolean")
    if kind is ColumnKind.STRING:
        if column_type is not None and column_type.length:
            return TypeExpr("sa.String", (("length", column_type.length),))
        return TypeExpr("sa.String")
    if kind is ColumnKind.TEXT:
        return TypeExpr("sa.Text")
    if kind is ColumnKind.INTEGER:
        return TypeExpr("sa.Integer")
    if kind is ColumnKind.BIGINT:
        return TypeExpr("sa.BigInteger")
    if kind is ColumnKind.DECIMAL:
        precision, scale = DEFAULT_DECIMAL
        if column_type is not None and column_type.precision is not None and column_type.scale is not None:
            precision, scale = column_type.precision, column_type.scale
        return TypeExpr("sa.Numeric", (("precision", precision), ("scale", scale)))
    if kind is ColumnKind.DATE:
        return TypeExpr("sa.DateTime", (("timezone", True),))
    if kind is ColumnKind.ENUM:
        return TypeExpr(
            "postgresql.ENUM",
            (("name", enum_type_name(table_name, field)), ("create_type", False)),
        )
    if kind is ColumnKind.JSON:
        return TypeExpr("sa.JSON")
    if kind is ColumnKind.JSONB:
        return TypeExpr("postgresql.JSONB")

    if token == "TIMETZ":
        return TypeExpr("sa.Time", (("timezone", True),))

    # FLOAT, DOUBLE and everything unrecognized: the resolved token as-is.
    callable_name = vocabulary_type(token)
    if callable_name is None:
        return None
    return TypeExpr(callable_name)


def server_default(value: Any, context: str, diagnostics: Diagnostics) -> str | SqlText | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return SqlText("true" if value else "false")
    if isinstance(value, (int, float)):
        return SqlText(str(value))
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping) and set(value) == {"sql"} and isinstance(value["sql"], str):
        return SqlText(value["sql"])
    diagnostics.warn(f"{context}: unsupported defaultValue {value!r}, default dropped")
    return None


def normalize_attributes(
    attributes: Mapping[Any, Any],
    table_name: str,
    diagnostics: Diagnostics,
    config: GeneratorConfig | None = None,
) -> dict[str, NormalizedAttribute]:
    """Normalize one model's raw attributes into emittable columns.

    Never raises: a field that cannot be normalized is logged, left out of the
    result and marks the run as degraded.
    """
    config = config or GeneratorConfig()
    normalized: dict[str, NormalizedAttribute] = {}

    for field, raw in attributes.items():
        context = f"{table_name}.{field}"
        if raw is None:
            diagnostics.error(f"{context}: attribute is undefined, skipping")
            continue
        try:
            attr = parse_attribute(field, raw, config.type_aliases)
            if attr.is_virtual:
                continue

            if isinstance(raw, Mapping):
                unknown = sorted(set(raw) - ATTRIBUTE_KEYS - RELATION_KEYS - BOOKKEEPING_KEYS)
                if unknown:
                    diagnostics.warn(f"{context}: ignoring unknown properties {unknown}")

            token = resolve_type(attr.column_type, diagnostics, context=context, aliases=config.type_aliases)
            kind = attr.column_type.kind if attr.column_type is not None else KIND_BY_TOKEN[FALLBACK_TYPE]
            type_expr = finish_type(kind, token, attr.column_type, table_name, field)
            if type_expr is None:
                diagnostics.error(f"{context}: unsupported type {token!r}, dropping column")
                continue

            normalized[field] = NormalizedAttribute(
                name=field,
                type_expr=type_expr,
                allow_null=attr.allow_null,
                primary_key=attr.primary_key,
                autoincrement=attr.autoincrement,
                unique=attr.unique,
                default=server_default(attr.default, context, diagnostics),
                comment=attr.comment,
            )
        except (TypeError, ValueError) as exc:
            diagnostics.error(f"{context}: {exc}, skipping")

    return normalized


def column_def(attr: NormalizedAttribute) -> ColumnDef:
    options: list[tuple[str, Any]] = []
    if attr.primary_key:
        options.append(("primary_key", True))
    if attr.autoincrement:
        options.append(("autoincrement", True))
    options.append(("nullable", attr.allow_null))
    if attr.unique:
        options.append(("unique", True))
    if attr.default is not None:
        options.append(("server_default", attr.default))
    if attr.comment is not None:
        options.append(("comment", attr.comment))
    return ColumnDef(name=attr.name, type_expr=attr.type_expr, options=tuple(options))


# ---------------------------------------------------------------------------
# Enum registry
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class EnumDefinition:
    name: str
    values: tuple[str, ...]
    table: str
    field: str


def iter_enum_fields(
    models: Iterable[ModelDefinition],
    aliases: Mapping[str, str] | None = None,
) -> Iterator[tuple[ModelDefinition, str, AttributeSpec]]:
    for model in models:
        if not isinstance(model.attributes, Mapping):
            continue
        for field, raw in model.attributes.items():
            if raw is None:
                continue
            try:
                attr = parse_attribute(field, raw, aliases)
            except (TypeError, ValueError):
                # reported by normalize_attributes
                continue
            if attr.is_enum:
                yield model, field, attr


def collect_enums(
    models: Iterable[ModelDefinition],
    diagnostics: Diagnostics,
    config: GeneratorConfig | None = None,
) -> tuple[list[CreateEnum], dict[str, EnumDefinition]]:
    config = config or GeneratorConfig()
    statements: list[CreateEnum] = []
    registry: dict[str, EnumDefinition] = {}

    for model, field, attr in iter_enum_fields(models, config.type_aliases):
        definition = EnumDefinition(
            name=enum_type_name(model.table_name, field),
            values=attr.enum_values,
            table=model.table_name,
            field=field,
        )
        key = pg_identifier(definition.name)
        if key != definition.name:
            message = (
                f"enum type {definition.name} from {definition.table}.{definition.field} is longer than "
                f"{PG_IDENTIFIER_BYTES} bytes and is stored as {key}"
            )
            if config.strict_enum_names:
                raise EnumCollisionError(message)
            diagnostics.error(message)

        existing = registry.get(key)
        if existing is None:
            registry[key] = definition
            statements.append(CreateEnum(definition.name, definition.values))
            continue
        same_field = (existing.table, existing.field) == (definition.table, definition.field)
        if same_field and existing.values == definition.values:
            continue

        message = (
            f"enum type {key} from {definition.table}.{definition.field} collides with "
            f"{existing.table}.{existing.field}; keeping the first definition"
        )
        if config.strict_enum_names:
            raise EnumCollisionError(message)
        if existing.values != definition.values:
            diagnostics.error(f"{message} (values differ)")
        else:
            diagnostics.warn(message)

    return statements, registry


def enum_names_for_drop(
    models: Iterable[ModelDefinition],
    aliases: Mapping[str, str] | None = None,
) -> list[str]:
    names = (enum_type_name(model.table_name, field) for model, field, _ in iter_enum_fields(models, aliases))
    return list(dict.fromkeys(names))


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


def unique_tables(models: list[ModelDefinition], diagnostics: Diagnostics) -> list[ModelDefinition]:
    kept: list[ModelDefinition] = []
    owners: dict[str, str] = {}
    for model in models:
        owner = owners.get(model.table_name)
        if owner is not None:
            diagnostics.error(f"{model.name}: table {model.table_name} is already defined by {owner}, skipping model")
            continue
        owners[model.table_name] = model.name
        kept.append(model)
    return kept


def emit_migration(
    models: list[ModelDefinition],
    diagnostics: Diagnostics,
    config: GeneratorConfig | None = None,
) -> MigrationScript:
    config = config or GeneratorConfig()
    models = unique_tables([m for m in models if m.name not in config.exclude_models], diagnostics)

    enum_statements, _ = collect_enums(models, diagnostics, config)

    tables: list[CreateTable] = []
    for model in models:
        if not isinstance(model.attributes, Mapping):
            diagnostics.error(f"{model.name}: attributes of table {model.table_name} cannot be read, skipping model")
            continue
        attributes = normalize_attributes(model.attributes, model.table_name, diagnostics, config)
        if not attributes:
            diagnostics.error(f"{model.name}: table {model.table_name} has no usable attributes, skipping model")
            continue
        tables.append(CreateTable(model.table_name, tuple(column_def(a) for a in attributes.values())))

    up: list[Statement] = [*enum_statements, *tables]
    down: list[Statement] = [DropTable(t.table) for t in reversed(tables)]
    down.extend(DropEnum(name) for name in enum_names_for_drop(models, config.type_aliases))
    return MigrationScript(up=up, down=down)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

SCRIPT_HEADER = '''"""Squashed migrations

Revision ID: {revision}
Revises:
Create Date: {created_at}

Recreates every modeled table and enum type from scratch.
Generated by generate_migration.py; review before applying.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = {revision_literal}
down_revision = None
branch_labels = None
depends_on = None
'''

SCRIPT_FOOTER = '''

def upgrade():
    up(op, sa)


def downgrade():
    down(op, sa)
'''

REVISION_HEADER_RE = re.compile(r"^(Revision ID:|Create Date:|revision = )")


def escape_bind_colons(sql: str) -> str:
    # op.execute() wraps strings in sa.text(), which treats ":name" as a bind parameter
    return sql.replace(":", "\\:")


def render_value(value: Any) -> str:
    if isinstance(value, SqlText):
        return f"sa.text({value.sql!r})"
    if isinstance(value, TypeExpr):
        return render_type(value)
    return repr(value)


def render_type(expr: TypeExpr) -> str:
    args = ", ".join(f"{key}={render_value(value)}" for key, value in expr.kwargs)
    return f"{expr.callable}({args})"


def render_statement(stmt: Statement, indent: str = "    ") -> list[str]:
    if isinstance(stmt, CreateEnum):
        lines = [f"{indent}op.execute("]
        lines.extend(f"{indent}    {escape_bind_colons(fragment)!r}" for fragment in stmt.sql_fragments())
        lines.append(f"{indent})")
        return lines
    if isinstance(stmt, CreateTable):
        lines = [f"{indent}op.create_table(", f"{indent}    {stmt.table!r},"]
        for column in stmt.columns:
            parts = [repr(column.name), render_type(column.type_expr)]
            parts.extend(f"{key}={render_value(value)}" for key, value in column.options)
            lines.append(f"{indent}    sa.Column({', '.join(parts)}),")
        lines.append(f"{indent})")
        return lines
    if isinstance(stmt, DropTable):
        return [f"{indent}op.drop_table({stmt.table!r})"]
    if isinstance(stmt, DropEnum):
        return [f"{indent}op.execute({escape_bind_colons(stmt.sql())!r})"]
    raise TypeError(f"Unsupported statement: {stmt!r}")


def render_function(name: str, statements: list[Statement]) -> str:
    lines = [f"def {name}(op, sa):"]
    if not statements:
        lines.append("    pass")
    for stmt in statements:
        lines.extend(render_statement(stmt))
    return "\n".join(lines)


def revision_id(now: datetime) -> str:
    return now.strftime("%Y%m%d%H%M%S")


def render_script(script: MigrationScript, now: datetime) -> str:
    revision = revision_id(now)
    header = SCRIPT_HEADER.format(
        revision=revision,
        created_at=now.strftime("%Y-%m-%d %H:%M:%S"),
        revision_literal=repr(revision),
    )
    parts = [header, "", render_function("up", script.up), "", "", render_function("down", script.down)]
    return "\n".join(parts) + "\n" + SCRIPT_FOOTER


def generate_markdown(script: MigrationScript, diagnostics: Diagnostics, now: datetime) -> str:
    lines: list[str] = []
    lines.append(f"# Squashed migration {revision_id(now)}")
    lines.append("")
    lines.append("## Tables")
    lines.append("")
    lines.append("| # | Table | Columns |")
    lines.append("|---|-------|---------|")
    for idx, table in enumerate(script.tables(), 1):
        lines.append(f"| {idx} | `{table.table}` | {len(table.columns)} |")
    lines.append("")

    lines.append("## Enum types")
    lines.append("")
    enums = script.enums()
    if enums:
        for enum_stmt in enums:
            lines.append(f"- `{enum_stmt.name}`: " + ", ".join(quote_literal(v) for v in enum_stmt.values))
    else:
        lines.append("No enum types.")
    lines.append("")

    lines.append("## Diagnostics")
    lines.append("")
    if not diagnostics.errors and not diagnostics.warnings:
        lines.append("No problems were found while generating the migration.")
    for message in diagnostics.errors:
        lines.append(f"- error: {message}")
    for message in diagnostics.warnings:
        lines.append(f"- warning: {message}")
    lines.append("")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Model loading
# ---------------------------------------------------------------------------


def is_model_file(path: Path) -> bool:
    name = path.name
    return (
        not name.startswith(".")
        and path.suffix in MODEL_SUFFIXES
        and path.stem != "index"
        and ".test." not in name
    )


def parse_model(entry: Any, source_path: Path) -> ModelDefinition:
    if not isinstance(entry, Mapping):
        raise ValueError(f"Expected a model mapping in {source_path}")
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError(f"Model without a name in {source_path}")
    table = entry.get("table", name)
    if not isinstance(table, str) or not table:
        raise ValueError(f"Model {name} has an invalid table name in {source_path}")
    return ModelDefinition(
        name=name,
        table_name=table,
        attributes=entry.get("attributes"),
        source=str(source_path),
    )


def load_models(models_dir: Path) -> list[ModelDefinition]:
    if not models_dir.is_dir():
        raise NotADirectoryError(f"Models directory not found: {models_dir}")

    models: list[ModelDefinition] = []
    seen: dict[str, Path] = {}
    for path in sorted(p for p in models_dir.iterdir() if p.is_file() and is_model_file(p)):
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
        if document is None:
            continue
        entries = document if isinstance(document, list) else [document]
        for entry in entries:
            model = parse_model(entry, path)
            if model.name in seen:
                raise ValueError(f"Duplicate model name {model.name} in {path} (first defined in {seen[model.name]})")
            seen[model.name] = path
            models.append(model)
    return models


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def generate_outputs(
    models_dir: Path,
    config: GeneratorConfig,
    now: datetime,
    diagnostics: Diagnostics | None = None,
) -> tuple[str, str, MigrationScript, Diagnostics]:
    diagnostics = diagnostics or Diagnostics()
    models = load_models(models_dir)
    script = emit_migration(models, diagnostics, config)
    return render_script(script, now), generate_markdown(script, diagnostics, now), script, diagnostics


def output_path(output_dir: Path, now: datetime) -> Path:
    return output_dir / f"{revision_id(now)}-squashed-migrations.py"


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def strip_revision_header(text: str) -> list[str]:
    return [line for line in text.splitlines() if not REVISION_HEADER_RE.match(line)]


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = strip_revision_header(path.read_text(encoding="utf-8"))
    fresh = strip_revision_header(generated)
    if existing == fresh:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(existing, fresh, fromfile=str(path), tofile=f"generated:{path}", lineterm="")
    for idx, line in enumerate(diff):
        if idx > 200:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate one squashed migration from the current model definitions")
    parser.add_argument("--models-dir", default="models", help="Directory of YAML model definitions")
    parser.add_argument("--output-dir", default="migrations", help="Directory for the generated migration")
    parser.add_argument("--config", default=None, help=f"Declarative YAML config (default: {DEFAULT_CONFIG} if present)")
    parser.add_argument("--out-md", default=None, help="Also write a markdown summary to this file")
    parser.add_argument("--check", default=None, metavar="PATH", help="Verify an existing squashed migration is up-to-date without writing")
    parser.add_argument("--dry-run", action="store_true", help="Print the migration to stdout instead of writing it")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    now = datetime.now()

    config_path = Path(args.config) if args.config else None
    if config_path is None and Path(DEFAULT_CONFIG).exists():
        config_path = Path(DEFAULT_CONFIG)

    try:
        config = load_config(config_path)
        script_text, md_output, _, diagnostics = generate_outputs(Path(args.models_dir), config, now)
    except (OSError, ValueError) as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    if args.check:
        return 0 if check_equal(Path(args.check), script_text) else 1

    if args.dry_run:
        sys.stdout.write(script_text)
    else:
        out_path = output_path(Path(args.output_dir), now)
        try:
            write_text(out_path, script_text)
            if args.out_md:
                write_text(Path(args.out_md), md_output)
        except OSError as exc:
            print(f"[error] failed to write output: {exc}", file=sys.stderr)
            return 1
        print(f"Generated {out_path}")
        if args.out_md:
            print(f"Generated {args.out_md}")

    if diagnostics.had_errors:
        print(
            f"[warn] migration generated with {len(diagnostics.errors)} error(s); "
            "review it manually before applying",
            file=sys.stderr,
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
