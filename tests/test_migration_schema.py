from __future__ import annotations

import importlib.util
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import sqlalchemy as sa

from app.models import Base

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "app" / "migrations" / "versions" / "0001_initial.py"


def _load_migration():  # type: ignore[no-untyped-def]
    spec = importlib.util.spec_from_file_location("migration_0001_initial", MIGRATION_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class InitialMigrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.migration = _load_migration()
        self.op = MagicMock()
        with patch.object(self.migration, "op", self.op), patch.object(self.migration, "_ENUMS", ()):
            self.migration.upgrade()

    def _created_tables(self) -> dict[str, set[str]]:
        tables: dict[str, set[str]] = {}
        for call in self.op.create_table.call_args_list:
            name, *elements = call.args
            tables[name] = {element.name for element in elements if isinstance(element, sa.Column)}
        return tables

    def test_revision_is_root(self) -> None:
        self.assertEqual(self.migration.revision, "0001_initial")
        self.assertIsNone(self.migration.down_revision)

    def test_tables_and_columns_match_models(self) -> None:
        created = self._created_tables()
        self.assertEqual(set(created), set(Base.metadata.tables))
        for table_name, table in Base.metadata.tables.items():
            with self.subTest(table=table_name):
                self.assertEqual(created[table_name], {column.name for column in table.columns})

    def test_open_shift_uniqueness_is_partial(self) -> None:
        calls = [call for call in self.op.create_index.call_args_list if call.args[0] == "uq_shifts_employee_open"]
        self.assertEqual(len(calls), 1)
        self.assertTrue(calls[0].kwargs["unique"])
        self.assertIn("postgresql_where", calls[0].kwargs)

    def test_downgrade_drops_every_table(self) -> None:
        op = MagicMock()
        with patch.object(self.migration, "op", op), patch.object(self.migration, "_ENUMS", ()):
            self.migration.downgrade()
        dropped = {call.args[0] for call in op.drop_table.call_args_list}
        self.assertEqual(dropped, set(Base.metadata.tables))


if __name__ == "__main__":
    unittest.main()
