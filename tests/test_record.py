"""
Tests for Record field access and change tracking.
"""
import pytest

from hierorm.engine import Engine
from hierorm.errors import ConfigurationError, DestroyedRecordError, HierOrmError
from hierorm.fields import MoneyValue
from hierorm.record import Record, loose_equals, strictly_equal


class TestLooseEquality:
    """Tests for the comparison rules behind change severity."""

    def test_strict_equality_needs_same_type(self):
        assert strictly_equal(1, 1)
        assert not strictly_equal(1, 1.0)
        assert not strictly_equal(0, False)
        assert strictly_equal(None, None)

    @pytest.mark.parametrize("a, b", [
        (0, ""), (None, ""), (None, 0), (1, "1"), ("1.0", "1"), (1, 1.0), (True, 1), (False, "0"),
    ])
    def test_loose_pairs(self, a, b):
        assert loose_equals(a, b)
        assert loose_equals(b, a)

    @pytest.mark.parametrize("a, b", [(0, "x"), (1, 2), ("a", "b"), (None, "0"), (None, 1)])
    def test_different_pairs(self, a, b):
        assert not loose_equals(a, b)


class TestRecordConstruction:
    """Tests for new and hydrated records."""

    def test_new_record_has_no_identity(self, engine):
        record = engine.create("Leaf")
        assert record.id == 0
        assert not record.exists()
        assert record.get("ClassName") == "Leaf"
        assert type(record).__name__ == "Leaf"

    def test_defaults_are_populated_and_marked_changed(self, engine):
        article = engine.create("Article")
        assert article.get("Status") == "Draft"
        assert article.is_changed("Status", min_severity=2)

    def test_values_override_defaults(self, engine):
        article = engine.create("Article", Status="Published")
        assert article.get("Status") == "Published"

    def test_hydrated_record_has_no_changes(self, engine):
        record = engine.registry.class_for("Leaf")(engine, {"ID": 7, "A": 1}, from_storage=True)
        assert record.exists()
        assert record.original == record.record
        assert record.changed_fields() == {}

    def test_unknown_field_reads_none(self, engine):
        assert engine.create("Root").get("Nope") is None

    def test_repr(self, engine):
        assert repr(engine.create("Leaf")) == "Leaf(0)"


class TestChangeTracking:
    """Tests for change severities."""

    @pytest.fixture
    def record(self, engine):
        return engine.registry.class_for("Leaf")(engine, {"ID": 3, "A": 0, "B": "x"}, from_storage=True)

    def test_loose_change_is_severity_one(self, record):
        record.set("A", "")
        assert record.changed == {"A": 1}
        assert record.is_changed("A")
        assert not record.is_changed("A", min_severity=2)
        assert record.changed_fields(min_severity=2) == {}

    def test_strict_change_is_severity_two(self, record):
        record.set("B", "y")
        assert record.changed_fields() == {"B": {"before": "x", "after": "y", "level": 2}}

    def test_severity_is_never_downgraded(self, record):
        record.set("A", 5)
        record.set("A", "5")
        assert record.changed["A"] == 2

    def test_setting_the_same_value_is_a_noop(self, record):
        record.set("A", 0)
        record.set("B", "x")
        assert record.changed == {}

    def test_force_all_changed(self, record):
        record.force_all_changed()
        assert set(record.changed_fields(min_severity=2)) >= {"A", "B", "ClassName"}

    def test_database_fields_only(self, record):
        record.set("B", "y")
        record.set("Scratch", 1)
        assert set(record.changed_fields()) == {"B", "Scratch"}
        assert set(record.changed_fields(database_fields_only=True)) == {"B"}

    def test_item_access(self, record):
        record["B"] = "z"
        assert record["B"] == "z"


class TestCompositeFields:
    """Tests for Money values held by a record."""

    def test_composite_is_built_from_columns(self, engine):
        record = engine.registry.class_for("Leaf")(
            engine, {"ID": 1, "PriceAmount": 9.5, "PriceCurrency": "NZD"}, from_storage=True,
        )
        assert record.get("Price") == MoneyValue(9.5, "NZD")
        assert not record.is_changed()

    def test_inner_change_is_detected(self, engine):
        record = engine.registry.class_for("Leaf")(
            engine, {"ID": 1, "PriceAmount": 9.5, "PriceCurrency": "NZD"}, from_storage=True,
        )
        record.get("Price").amount = 10.0
        assert record.is_changed("Price", min_severity=2)

    def test_set_accepts_a_mapping(self, engine):
        record = engine.create("Leaf", Price={"Amount": 3, "Currency": "USD"})
        assert record.get("Price").currency == "USD"
        assert record.changed["Price"] == 2


class TestRecordHelpers:
    """Tests for class changes, copies and emptiness."""

    def test_is_empty(self, engine):
        assert engine.create("Root").is_empty()
        assert not engine.create("Root", Title="t").is_empty()

    def test_has_field(self, engine):
        record = engine.create("Article")
        assert record.has_field("Headline")
        assert record.has_field("AuthorID")
        assert not record.has_field("Nope")

    def test_set_class_name_outside_hierarchy(self, engine):
        with pytest.raises(ConfigurationError):
            engine.create("Leaf").set_class_name("Article")

    def test_cast_update_decodes_raw_values(self, engine):
        record = engine.create("Leaf")
        record.cast_update({"A": "42", "X": "7"})
        assert record.get("A") == 42
        assert record.get("X") == 7

    def test_destroyed_record_raises(self, engine):
        record = engine.registry.class_for("Leaf")(engine, {"ID": 4}, from_storage=True)
        record.destroy()
        assert record.old_id == 4
        assert not record.exists()
        with pytest.raises(DestroyedRecordError):
            record.get("A")
        with pytest.raises(DestroyedRecordError):
            record.set("A", 1)

    def test_new_class_instance_copies_composites(self, engine):
        leaf = engine.registry.class_for("Leaf")(
            engine, {"ID": 2, "PriceAmount": 1.0, "PriceCurrency": "NZD"}, from_storage=True,
        )
        leaf.get("Price")
        copy = leaf.new_class_instance("Leaf")
        copy.get("Price").amount = 2.0
        assert leaf.get("Price").amount == 1.0
        assert not leaf.is_changed()


class TestCompositeOriginals:
    """The value a composite had when it was last persisted survives later edits."""

    @pytest.mark.integration
    def test_in_place_edit_after_write_keeps_before_value(self, engine):
        record = engine.create("Leaf", Price=MoneyValue(5.0, "NZD"))
        record.write()
        record.get("Price").amount = 7.0

        change = record.changed_fields()["Price"]
        assert change["before"].amount == 5.0
        assert change["after"].amount == 7.0

    def test_replacing_a_loaded_composite_keeps_before_value(self, engine):
        record = engine.registry.class_for("Leaf")(
            engine, {"ID": 1, "PriceAmount": 5.0, "PriceCurrency": "NZD"}, from_storage=True,
        )
        record.set("Price", MoneyValue(6.0, "NZD"))

        change = record.changed_fields()["Price"]
        assert change["before"] == MoneyValue(5.0, "NZD")
        assert change["level"] == 2

    def test_hydrated_original_is_a_copy(self, engine):
        price = MoneyValue(5.0, "NZD")
        record = engine.registry.class_for("Leaf")(engine, {"ID": 1, "Price": price}, from_storage=True)
        record.get("Price").amount = 8.0
        assert record.original["Price"].amount == 5.0


class Counter(Record):
    db = {"Hits": "Int", "Active": "Boolean", "Note": "Varchar(20)"}
    defaults = {"Hits": 0, "Active": False, "Note": ""}


class TestFalsyDefaults:
    """Defaults count as full changes even when loosely equal to unset."""

    def test_falsy_defaults_are_severity_two(self, storage):
        engine = Engine(storage, classes=[Counter])
        counter = engine.create(Counter)
        assert counter.changed == {"Hits": 2, "Active": 2, "Note": 2}
        assert set(counter.changed_fields(min_severity=2)) == {"Hits", "Active", "Note"}


@pytest.mark.integration
class TestManyManyDefaults:
    """A list of IDs as the default of a many-many relation."""

    def test_id_list_default_becomes_components(self, engine, storage):
        tags = []
        for label in ("red", "green"):
            tag = engine.create("Tag", Label=label)
            tag.write()
            tags.append(tag)

        class Featured(engine.registry.class_for("Article")):
            defaults = {"Tags": [tags[0].id, tags[1].id]}

        engine.register(Featured)
        featured = engine.create(Featured, Headline="Pinned")
        assert featured.get("Tags") is None
        featured.write()

        reloaded = engine.get_by_id("Article", featured.id, cache=False)
        assert type(reloaded).__name__ == "Featured"
        assert sorted(reloaded.get_many_many_components("Tags").column("Label")) == ["green", "red"]
        assert reloaded.get("Status") == "Draft"


@pytest.mark.integration
class TestMerge:
    """Tests for merging one saved record into another."""

    @pytest.fixture
    def author(self, engine):
        record = engine.create("Author", Name="Ann")
        record.write()
        return record

    @pytest.fixture
    def pair(self, engine, author):
        left = engine.create("Article", Headline="Left")
        left.write()
        right = engine.create("Article", Headline="Right", AuthorID=author.id)
        right.write()
        return left, right

    def test_right_priority_takes_other_values(self, pair, author):
        left, right = pair
        left.merge(right)
        assert left.get("Headline") == "Right"
        assert left.get("AuthorID") == author.id
        assert left.get_component("Author").id == author.id

    def test_left_priority_only_fills_empty_fields(self, pair, author):
        left, right = pair
        left.merge(right, priority="left")
        assert left.get("Headline") == "Left"
        assert left.get("AuthorID") == author.id

    def test_empty_values_only_overwrite_on_request(self, engine, pair):
        left, _ = pair
        blank = engine.create("Article")
        blank.write()
        left.merge(blank)
        assert left.get("Headline") == "Left"
        left.merge(blank, overwrite_with_empty=True)
        assert left.get("Headline") is None

    def test_many_many_components_are_added(self, engine, pair):
        left, right = pair
        for label in ("red", "green"):
            tag = engine.create("Tag", Label=label)
            tag.write()
            right.get_many_many_components("Tags").add(tag)

        left.merge(right)
        reloaded = engine.get_by_id("Article", left.id, cache=False)
        assert sorted(reloaded.get_many_many_components("Tags").column("Label")) == ["green", "red"]

    def test_relations_can_be_left_alone(self, engine, pair):
        left, right = pair
        tag = engine.create("Tag", Label="red")
        tag.write()
        right.get_many_many_components("Tags").add(tag)

        left.merge(right, include_relations=False)
        reloaded = engine.get_by_id("Article", left.id, cache=False)
        assert len(reloaded.get_many_many_components("Tags")) == 0

    def test_has_many_components_move(self, engine, author, pair):
        _, right = pair
        other = engine.create("Author", Name="Bob")
        other.write()

        other.merge(author)
        moved = engine.get_by_id("Article", right.id, cache=False)
        assert moved.get("AuthorID") == other.id
        assert author.get_components("Articles").get_id_list() == []

    def test_different_classes_are_refused(self, pair, author):
        left, _ = pair
        with pytest.raises(HierOrmError):
            left.merge(author)

    def test_unsaved_other_is_refused(self, engine, pair):
        left, _ = pair
        with pytest.raises(HierOrmError):
            left.merge(engine.create("Article", Headline="Draft"))

    def test_unknown_priority(self, pair):
        left, right = pair
        with pytest.raises(ValueError):
            left.merge(right, priority="middle")


class TestReverseAssociation:
    def test_finds_the_relation_pointing_back(self, engine):
        assert engine.create("Tag").get_reverse_association("Article") == "Articles"
        assert engine.create("Author").get_reverse_association("Article") == "Articles"
        assert engine.create("Article").get_reverse_association("Author") == "Author"

    def test_none_without_a_relation(self, engine):
        assert engine.create("Article").get_reverse_association("Root") is None
