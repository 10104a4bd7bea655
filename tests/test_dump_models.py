import contextlib
import io
import sys
import tempfile
import types
import unittest
from pathlib import Path
from unittest import mock

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dump_models import (
    column_to_attribute,
    dump_metadata,
    load_metadata_from_module,
    main,
    reflect_database,
    table_to_model,
    type_to_attribute,
)
from generate_migration import CreateTable, Diagnostics, emit_migration, load_models, render_type


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(sa.String(120), nullable=False, unique=True)
    plan: Mapped[str] = mapped_column(sa.Enum("free", "pro", name="plan"), server_default="free")
    created_at = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(sa.BigInteger, primary_key=True)
    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id", ondelete="CASCADE"))
    amount = mapped_column(sa.Numeric(12, 2), nullable=False)
    paid = mapped_column(sa.Boolean, default=False, comment="set by the payment webhook")
    lines = mapped_column(postgresql.JSONB)


def quiet_stdout():
    return contextlib.redirect_stdout(io.StringIO())


class TestTypeToAttribute(unittest.TestCase):
    def test_maps_sqlalchemy_types_to_model_types(self) -> None:
        cases = [
            (sa.Enum("a", "b", name="ab"), {"type": "ENUM", "values": ["a", "b"]}),
            (sa.Boolean(), {"type": "BOOLEAN"}),
            (sa.BigInteger(), {"type": "BIGINT"}),
            (sa.Integer(), {"type": "INTEGER"}),
            (sa.Double(), {"type": "DOUBLE"}),
            (postgresql.DOUBLE_PRECISION(), {"type": "DOUBLE"}),
            (sa.Float(), {"type": "FLOAT"}),
            (sa.Numeric(12, 3), {"type": "DECIMAL", "precision": 12, "scale": 3}),
            (sa.Numeric(), {"type": "DECIMAL"}),
            (sa.Text(), {"type": "TEXT"}),
            (sa.String(50), {"type": "STRING", "length": 50}),
            (sa.String(), {"type": "STRING"}),
            (sa.Time(), {"type": "TIME"}),
            (sa.Time(timezone=True), {"type": "TIMETZ"}),
            (sa.DateTime(), {"type": "DATETIME"}),
            (sa.Date(), {"type": "DATEONLY"}),
            (postgresql.JSONB(), {"type": "JSONB"}),
            (sa.JSON(), {"type": "JSON"}),
            (postgresql.INET(), {"type": "INET"}),
        ]
        for column_type, expected in cases:
            with self.subTest(column_type=repr(column_type)):
                self.assertEqual(type_to_attribute(column_type), expected)


class TestColumnToAttribute(unittest.TestCase):
    def test_account_columns(self) -> None:
        table = Account.__table__
        self.assertEqual(
            column_to_attribute(table.c.id),
            {"type": "INTEGER", "allowNull": False, "primaryKey": True, "autoIncrement": True},
        )
        self.assertEqual(
            column_to_attribute(table.c.email),
            {"type": "STRING", "length": 120, "allowNull": False, "unique": True},
        )
        self.assertEqual(column_to_attribute(table.c.plan)["defaultValue"], "free")
        self.assertEqual(column_to_attribute(table.c.created_at)["defaultValue"], {"sql": "now()"})

    def test_invoice_columns(self) -> None:
        table = Invoice.__table__
        account_id = column_to_attribute(table.c.account_id)
        self.assertEqual(account_id["references"], {"table": "accounts", "key": "id"})
        self.assertEqual(account_id["onDelete"], "CASCADE")

        paid = column_to_attribute(table.c.paid)
        self.assertIs(paid["defaultValue"], False)
        self.assertEqual(paid["comment"], "set by the payment webhook")


class TestDumpMetadata(unittest.TestCase):
    def test_dumped_models_feed_the_generator_in_dependency_order(self) -> None:
        names = {"accounts": "Account", "invoices": "Invoice"}
        with tempfile.TemporaryDirectory() as td, quiet_stdout():
            written = dump_metadata(Base.metadata, names, Path(td))
            self.assertEqual([p.name for p in written], ["001_accounts.yaml", "002_invoices.yaml"])

            models = load_models(Path(td))
            self.assertEqual([m.name for m in models], ["Account", "Invoice"])

            diagnostics = Diagnostics(echo=False)
            script = emit_migration(models, diagnostics)
            self.assertEqual(diagnostics.errors, [])
            self.assertEqual([s.table for s in script.up if isinstance(s, CreateTable)], ["accounts", "invoices"])
            self.assertEqual([s.name for s in script.enums()], ["enum_accounts_plan"])

    def test_model_documents_hold_plain_strings(self) -> None:
        document = table_to_model(Account.__table__, "Account")
        self.assertIs(type(document["table"]), str)
        self.assertTrue(all(type(name) is str for name in document["attributes"]))

    def test_time_columns_survive_dump_and_generate(self) -> None:
        metadata = sa.MetaData()
        sa.Table(
            "shifts",
            metadata,
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("starts_at", sa.Time),
            sa.Column("tz", sa.Time(timezone=True)),
        )
        with tempfile.TemporaryDirectory() as td, quiet_stdout():
            dump_metadata(metadata, {}, Path(td))
            diagnostics = Diagnostics(echo=False)
            script = emit_migration(load_models(Path(td)), diagnostics)

        self.assertEqual(diagnostics.errors, [])
        columns = script.tables()[0].columns
        self.assertEqual(
            [(c.name, render_type(c.type_expr)) for c in columns],
            [("id", "sa.Integer()"), ("starts_at", "sa.TIME()"), ("tz", "sa.Time(timezone=True)")],
        )

    def test_load_metadata_from_module(self) -> None:
        module = types.ModuleType("billing_models")
        module.Base = Base
        with mock.patch.dict(sys.modules, {"billing_models": module}):
            metadata, names = load_metadata_from_module("billing_models")
            self.assertIs(metadata, Base.metadata)
            self.assertEqual(names, {"accounts": "Account", "invoices": "Invoice"})

            metadata, names = load_metadata_from_module("billing_models:Base")
            self.assertIs(metadata, Base.metadata)

    def test_load_metadata_from_plain_metadata(self) -> None:
        module = types.ModuleType("plain_models")
        module.metadata = sa.MetaData()
        with mock.patch.dict(sys.modules, {"plain_models": module}):
            metadata, names = load_metadata_from_module("plain_models:metadata")
            self.assertIs(metadata, module.metadata)
            self.assertEqual(names, {})

    def test_reflect_database(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            url = f"sqlite:///{Path(td) / 'app.db'}"
            engine = sa.create_engine(url)
            metadata = sa.MetaData()
            sa.Table("users", metadata, sa.Column("id", sa.Integer, primary_key=True), sa.Column("name", sa.String(40)))
            metadata.create_all(engine)
            engine.dispose()

            reflected, names = reflect_database(url)
            self.assertEqual(names, {})
            users = reflected.tables["users"]
            self.assertEqual(column_to_attribute(users.c.name), {"type": "STRING", "length": 40, "allowNull": True})


class TestMain(unittest.TestCase):
    def test_unknown_module_fails(self) -> None:
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            code = main(["--models-module", "no_such_models_module_here"])
        self.assertEqual(code, 1)
        self.assertIn("Error loading models", err.getvalue())

    def test_writes_models_from_module(self) -> None:
        module = types.ModuleType("billing_models")
        module.Base = Base
        with tempfile.TemporaryDirectory() as td, mock.patch.dict(sys.modules, {"billing_models": module}):
            out = io.StringIO()
            with contextlib.redirect_stdout(out):
                code = main(["--models-module", "billing_models", "--output-dir", td])
            self.assertEqual(code, 0)
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["001_accounts.yaml", "002_invoices.yaml"])
            self.assertIn("Total: 2 models written", out.getvalue())


if __name__ == "__main__":
    unittest.main()
