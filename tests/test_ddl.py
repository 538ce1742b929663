"""Tests for table preparation."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from refdb import CreateTable, NotNullConstraint, create_statement, pivot_schema

from tests.schemas import Course, Food, Guest, Hero, Item, Player, Reservation, Student


class TestCreateStatement:
    """CREATE TABLE generation from templates."""

    def test_columns_then_foreign_keys_then_groups(self):
        assert create_statement(Player).schema() == "\n".join([
            'CREATE TABLE "player" (',
            '    "id" TEXT PRIMARY KEY NOT NULL,',
            '    "name" TEXT NOT NULL,',
            '    "team" INTEGER NOT NULL,',
            '    "jersey_number" INTEGER NOT NULL,',
            '    FOREIGN KEY("team") REFERENCES "team"("id") ON DELETE CASCADE,',
            '    UNIQUE("team", "jersey_number")',
            ')'
        ])

    def test_multiple_foreign_keys(self):
        sql = str(create_statement(Hero))
        assert 'FOREIGN KEY("equipped") REFERENCES "item"("id")' in sql
        # Relations never become columns
        assert "lunch" not in sql
        assert "items" not in sql

    def test_composite_primary_key(self):
        sql = str(create_statement(Guest))
        assert 'PRIMARY KEY("first_name", "last_name", "email")' in sql

    def test_composite_foreign_key(self):
        sql = str(create_statement(Reservation))
        assert (
            'FOREIGN KEY("guest_first_name", "guest_last_name", "guest_email") '
            'REFERENCES "guest"("first_name", "last_name", "email")'
        ) in sql

    def test_if_not_exists(self):
        assert str(create_statement(Item, if_not_exists=True)).startswith(
            'CREATE TABLE IF NOT EXISTS "item" ('
        )


class TestPivotSchema:
    """Synthesized join schemas."""

    def test_shared_between_sides(self):
        assert pivot_schema(Course, Student) is pivot_schema(Student, Course)
        assert Course.students.schema is Student.courses.schema

    def test_shape(self):
        join = Course.students.schema
        assert join.__tablename__ == "course_student"
        assert [c.name for c in join.columns()] == ["course_id", "student_id"]
        assert Course.students.left_column.name == "course_id"
        assert Course.students.right_column.name == "student_id"
        assert Student.courses.left_column.name == "student_id"

    def test_sql(self):
        sql = str(create_statement(Course.students.schema))
        assert '"course_id" TEXT NOT NULL' in sql
        assert '"student_id" INTEGER NOT NULL' in sql
        assert 'FOREIGN KEY("course_id") REFERENCES "course"("id") ON DELETE CASCADE' in sql
        assert sql.rstrip().endswith('PRIMARY KEY("course_id", "student_id")\n)')

    def test_self_pivot(self):
        with pytest.raises(TypeError):
            pivot_schema(Hero, Hero)


class TestCreateTable:
    """The fluent builder."""

    def test_builder(self):
        sql = (CreateTable("t")
            .column("a", "INTEGER", NotNullConstraint())
            .column("b", "TEXT")
            .unique("a", "b")
            .foreign_key("a", "other", "id", on_update="CASCADE")
        ).schema()
        assert sql == "\n".join([
            'CREATE TABLE "t" (',
            '    "a" INTEGER NOT NULL,',
            '    "b" TEXT,',
            '    UNIQUE("a", "b"),',
            '    FOREIGN KEY("a") REFERENCES "other"("id") ON UPDATE CASCADE',
            ')'
        ])

    def test_quotes_identifiers(self):
        assert '"we""ird" TEXT' in CreateTable("t").column('we"ird', "TEXT").schema()

    def test_no_columns(self):
        with pytest.raises(ValueError):
            CreateTable("t").schema()

    async def test_unbound(self):
        with pytest.raises(RuntimeError):
            await CreateTable("t").column("a", "TEXT").run()

    async def test_bound(self, db):
        await db.create("things").column("a", "TEXT").primary_key("a").run()
        assert await db.unsafe_table_exists("things")


class TestPrepare:
    """Preparing tables against a database."""

    async def test_table_shape(self, heroes):
        """Persisted columns match each template exactly."""
        assert sorted(await heroes.unsafe_get_all_tables()) == ["food", "hero", "item"]

        for schema in (Hero, Item, Food):
            meta = await heroes.unsafe_table_meta(schema.__tablename__)
            assert [m.name for m in meta] == [c.name for c in schema.columns()]

    async def test_column_meta(self, heroes):
        meta = {m.name: m for m in await heroes.unsafe_table_meta("hero")}
        assert meta["id"].is_primary_key
        assert meta["id"].type == "TEXT"
        assert meta["name"].notnull
        assert not meta["nickname"].notnull
        assert meta["equipped"].type == "INTEGER"

    async def test_uuid_key_not_null(self, heroes):
        meta = {m.name: m for m in await heroes.unsafe_table_meta("hero")}
        assert meta["id"].notnull

        with pytest.raises(IntegrityError):
            await heroes.insert("hero", {"id": None, "name": "Link", "age": 17})

    async def test_duplicate_table(self, heroes):
        with pytest.raises(OperationalError):
            await heroes.prepare(Hero)
        await heroes.prepare(Hero, if_not_exists=True)

    async def test_schema_prepare(self, db):
        await Item.prepare(db)
        assert await db.unsafe_get_all_tables() == ["item"]

    async def test_logs_tables(self, db, caplog):
        with caplog.at_level("INFO", logger="refdb"):
            await db.prepare(Guest, Reservation)
        assert "preparing: guest" in caplog.text
        assert "preparing: reservation" in caplog.text
