"""Tests for Ref accessors and the save lifecycle."""

import asyncio
import uuid

import pytest

from refdb import DecodeError, ForeignKey, LinkError, MissingPrimaryKey, Ref, delete_all, save_all

from tests.schemas import Food, Guest, Hero, Item, Note


async def make_hero(db, name="Link", age=17, **values) -> Ref:
    hero = Hero.new(db)
    hero[Hero.name] = name
    hero[Hero.age] = age
    hero.set(**values)
    await hero.save()
    return hero


class TestLifecycle:
    """New, persisted and dirty states."""

    async def test_new(self, heroes):
        hero = Hero.new(heroes)
        assert not hero.exists
        assert not hero.is_dirty
        assert hero.id is None
        assert hero[Hero.id] is None

    async def test_save_assigns_uuid(self, heroes):
        hero = await make_hero(heroes)

        assert hero.exists
        assert not hero.is_dirty
        assert isinstance(hero.id, str) and hero.id
        assert uuid.UUID(hero.id)

    async def test_int_key_from_database(self, heroes):
        item = Item.new(heroes)
        item[Item.power] = 9
        await item.save()

        rows = await heroes.execute("SELECT last_insert_rowid() AS id")
        assert item.id == rows[0]["id"]
        assert item[Item.id] == item.id

        second = await Item.create(heroes, power=3)
        assert second.id == item.id + 1

    async def test_round_trip(self, heroes):
        hero = await make_hero(heroes, nickname="Hero of Time")

        loaded = await Hero.load(heroes, hero.id)
        assert loaded is not None
        assert loaded.exists
        assert not loaded.is_dirty
        for col in Hero.columns():
            if not isinstance(col, ForeignKey):
                assert loaded[col] == hero[col]
        assert loaded.backing["equipped"] is None

    async def test_dirty_tracking(self, heroes):
        hero = await make_hero(heroes)
        loaded = await Hero.load(heroes, hero.id)
        assert not loaded.is_dirty

        loaded[Hero.age] = 18
        assert loaded.is_dirty

        await loaded.save()
        assert not loaded.is_dirty

        await hero.reload()
        assert hero[Hero.age] == 18

    async def test_empty_insert_is_noop(self, heroes):
        hero = Hero.new(heroes)
        await hero.save()

        assert not hero.exists
        assert hero.id is None
        assert await heroes.select("hero") == []

    async def test_constraint_violation_propagates(self, heroes):
        from sqlalchemy.exc import IntegrityError

        hero = Hero.new(heroes)
        hero[Hero.name] = "Nameless"
        with pytest.raises(IntegrityError):
            await hero.save()
        assert not hero.exists

    async def test_update_needs_primary_key(self, hotel):
        guest = Ref(Guest, hotel, {"first_name": "a"}, exists=True)
        with pytest.raises(MissingPrimaryKey):
            await guest.save()

    async def test_delete(self, heroes):
        hero = await make_hero(heroes)
        await hero.delete()

        assert not hero.exists
        assert await Hero.load(heroes, hero.id) is None

    async def test_concurrent_saves(self, heroes):
        """Unrelated saves serialize without corrupting each other."""
        refs = []
        for i in range(20):
            item = Item.new(heroes)
            item[Item.power] = i
            refs.append(item)

        await asyncio.gather(*(ref.save() for ref in refs))

        assert sorted(ref.id for ref in refs) == list(range(1, 21))
        for ref in refs:
            loaded = await Item.load(heroes, ref.id)
            assert loaded[Item.power] == ref[Item.power]

    async def test_repr(self, heroes):
        hero = Hero.new(heroes)
        assert repr(hero) == "Ref[Hero](None, new)"


class TestColumns:
    """Column accessors."""

    async def test_labels(self, heroes):
        hero = Hero.new(heroes)
        hero["name"] = "Zelda"
        hero.set(age=20)
        assert hero.get("name") == "Zelda"
        assert hero[Hero.age] == 20
        assert hero.backing == {"name": "Zelda", "age": 20}

    async def test_backing_is_read_only(self, heroes):
        hero = Hero.new(heroes)
        with pytest.raises(TypeError):
            hero.backing["name"] = "x" # type: ignore

    async def test_absent_required_column(self, heroes):
        hero = Hero.new(heroes)
        with pytest.raises(DecodeError):
            hero[Hero.name]
        assert hero[Hero.nickname] is None

    async def test_undecodable_value(self, heroes):
        hero = Ref(Hero, heroes, {"age": "very old"}, exists=True)
        with pytest.raises(DecodeError, match="Hero.age"):
            hero[Hero.age]

    async def test_foreign_field(self, heroes):
        hero = Hero.new(heroes)
        with pytest.raises(TypeError, match="not a field"):
            hero[Item.power]

    async def test_defaults(self, notes):
        note = Note.new(notes)
        assert note[Note.body] == ""
        assert note[Note.tags] == []
        assert note[Note.status] == "todo"
        assert note[Note.meta] is None

    async def test_json_round_trip(self, notes):
        note = Note.new(notes)
        note[Note.tags] = ["a", "b"]
        note[Note.meta] = {"pinned": True}
        note[Note.status] = "done"
        await note.save()

        loaded = await Note.load(notes, note.id)
        assert loaded[Note.tags] == ["a", "b"]
        assert loaded[Note.meta] == {"pinned": True}
        assert loaded[Note.status] == "done"

    async def test_database_defaults(self, notes):
        """Columns left unset take the table's DEFAULT."""
        note = Note.new(notes)
        note[Note.meta] = None
        await note.save()

        rows = await notes.select("notes", {"id": note.id})
        assert rows[0]["body"] == ""
        assert rows[0]["tags"] == "[]"
        assert rows[0]["status"] == "todo"


class TestForeignKey:
    """Single foreign key relations."""

    async def test_link_unsaved_target(self, heroes):
        hero = Hero.new(heroes)
        item = Item.new(heroes)
        item[Item.power] = 1

        with pytest.raises(LinkError, match="missing primary key"):
            hero[Hero.equipped] = item

        assert "equipped" not in hero.backing
        assert not hero.is_dirty

    async def test_link_and_load(self, heroes):
        item = await Item.create(heroes, power=5)
        hero = Hero.new(heroes)
        hero.set(name="Link", age=17)
        hero[Hero.equipped] = item
        assert hero.backing["equipped"] == item.id
        await hero.save()

        loaded = await Hero.load(heroes, hero.id)
        equipped = await loaded[Hero.equipped]
        assert equipped is not None
        assert equipped.id == item.id
        assert equipped[Item.power] == 5

    async def test_unlink(self, heroes):
        item = await Item.create(heroes, power=5)
        hero = await make_hero(heroes, equipped=item)

        hero[Hero.equipped] = None
        assert hero.is_dirty
        await hero.save()

        loaded = await Hero.load(heroes, hero.id)
        assert loaded.backing["equipped"] is None
        assert await loaded[Hero.equipped] is None

    async def test_absent_link(self, heroes):
        hero = Hero.new(heroes)
        assert await hero[Hero.equipped] is None

    async def test_wrong_schema(self, heroes):
        food = await Food.create(heroes, health=3)
        hero = Hero.new(heroes)
        with pytest.raises(TypeError, match="points to Item"):
            hero[Hero.equipped] = food

    async def test_unknown_target_fails(self, heroes):
        from sqlalchemy.exc import IntegrityError

        hero = Hero.new(heroes)
        hero.set(name="Link", age=17)
        hero[Hero.equipped] = 404
        with pytest.raises(IntegrityError):
            await hero.save()


class TestInverseRelations:
    """ToOne and ToMany accessors."""

    async def test_to_one(self, heroes):
        hero = await make_hero(heroes)
        assert await hero[Hero.lunch] is None

        food = Food.new(heroes)
        food[Food.health] = 10
        food[Food.owner] = hero
        await food.save()

        lunch = await hero[Hero.lunch]
        assert lunch is not None
        assert lunch.id == food.id

    async def test_to_one_unsaved(self, heroes):
        assert await Hero.new(heroes)[Hero.lunch] is None

    async def test_to_many(self, heroes):
        hero = await make_hero(heroes)
        other = await make_hero(heroes, name="Dark Link")
        assert await hero[Hero.items] == []

        swords = await Item.make(heroes, [Item.power, Item.equipped_by], [
            [1, hero.id],
            [2, hero.id],
            [3, other.id]
        ])

        items = await hero[Hero.items]
        assert sorted(i.id for i in items) == sorted(s.id for s in swords[:2])

    async def test_to_many_unsaved(self, heroes):
        assert await Hero.new(heroes)[Hero.items] == []

    async def test_read_only(self, heroes):
        hero = await make_hero(heroes)
        food = await Food.create(heroes, health=1)
        with pytest.raises(TypeError, match="read-only"):
            hero[Hero.lunch] = food


class TestQueries:
    """Schema-level loading helpers."""

    async def test_load_missing(self, heroes):
        assert await Hero.load(heroes, str(uuid.uuid4())) is None

    async def test_load_many(self, heroes):
        a = await make_hero(heroes, name="a")
        b = await make_hero(heroes, name="b")
        await make_hero(heroes, name="c")

        loaded = await Hero.load_many(heroes, [a.id, b.id, "missing"])
        assert sorted(h[Hero.name] for h in loaded) == ["a", "b"]

    async def test_load_all(self, heroes):
        await make_hero(heroes, name="a", age=1)
        await make_hero(heroes, name="b", age=2)
        await make_hero(heroes, name="c", age=2)

        assert len(await Hero.load_all(heroes)) == 3
        twos = await Hero.load_all(heroes, where={Hero.age: 2})
        assert sorted(h[Hero.name] for h in twos) == ["b", "c"]
        nulls = await Hero.load_all(heroes, where={"nickname": None})
        assert len(nulls) == 3

    async def test_load_first(self, heroes):
        await make_hero(heroes, name="a")
        found = await Hero.load_first(heroes, Hero.name, "a")
        assert found is not None and found[Hero.name] == "a"
        assert await Hero.load_first(heroes, "name", "z") is None

    async def test_load_in(self, heroes):
        for n in "abc":
            await make_hero(heroes, name=n)
        found = await Hero.load_in(heroes, Hero.name, ["a", "c"])
        assert sorted(h[Hero.name] for h in found) == ["a", "c"]

    async def test_load_containing(self, heroes):
        await make_hero(heroes, name="Link")
        await make_hero(heroes, name="Dark Link")
        await make_hero(heroes, name="100%")

        found = await Hero.load_containing(heroes, Hero.name, "Link")
        assert len(found) == 2
        # Wildcards match literally
        assert len(await Hero.load_containing(heroes, Hero.name, "%")) == 1

    async def test_make_arity(self, heroes):
        with pytest.raises(ValueError):
            await Item.make(heroes, [Item.power], [[1, 2]])

    async def test_save_and_delete_all(self, heroes):
        items = []
        for power in range(3):
            item = Item.new(heroes)
            item[Item.power] = power
            items.append(item)

        await save_all(items)
        assert all(i.exists for i in items)
        assert len(await Item.load_all(heroes)) == 3

        await delete_all(items)
        assert await Item.load_all(heroes) == []
