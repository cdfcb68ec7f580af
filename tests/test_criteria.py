"""Tests for the criteria model."""

import uuid

import pytest
from genrepo.criteria import (
    ALL,
    Condition,
    Direction,
    Field,
    Operator,
    OrderField,
    Predicate,
    PrimaryKey,
    as_criteria,
    qualifier_names,
)


def test_scalar_of_key_type_is_primary_key():
    assert as_criteria(5, int) == PrimaryKey(5)
    key = uuid.uuid4()
    assert as_criteria(key, uuid.UUID) == PrimaryKey(key)
    assert as_criteria("abc", str) == PrimaryKey("abc")


def test_mapping_is_equality_predicate():
    crit = as_criteria({"name": "A", "city": None}, int)
    assert crit == Predicate((Condition("name", Operator.EQ, "A"), Condition("city", Operator.EQ, None)))


def test_empty_mapping_matches_all():
    crit = as_criteria({}, int)
    assert crit == ALL
    assert crit.is_empty


def test_criteria_instances_pass_through():
    pred = Predicate().where("name", "like", "A%")
    assert as_criteria(pred, int) is pred
    pk = PrimaryKey(3)
    assert as_criteria(pk, int) is pk


@pytest.mark.parametrize("value", [True, "1", 1.5, None, [1]])
def test_values_of_other_types_are_rejected(value):
    with pytest.raises(TypeError, match="Cannot use"):
        as_criteria(value, int)


def test_where_is_conjunctive_and_immutable():
    base = Predicate.equals(city="Paris")
    narrowed = base.where("name", Operator.NE, "B")
    assert len(base.conditions) == 1
    assert narrowed.conditions == (
        Condition("city", Operator.EQ, "Paris"),
        Condition("name", Operator.NE, "B"),
    )


def test_where_rejects_unknown_operator():
    with pytest.raises(ValueError):
        Predicate().where("name", "approximately", "A")


def test_order_field_helpers():
    assert OrderField.parse("name") == OrderField("name", Direction.ASC)
    assert OrderField.parse("-name") == OrderField("name", Direction.DESC)
    assert OrderField.descending("id").direction is Direction.DESC


def test_qualifier_names_accepts_fields_and_strings():
    assert qualifier_names(Field.parse("email", "city")) == ["email", "city"]
    assert qualifier_names(["email", Field("city")]) == ["email", "city"]
