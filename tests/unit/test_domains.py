from agentrt.dsl.domains import (
    AnyDomain,
    BoolDomain,
    EnumDomain,
    ListDomain,
    NumberDomain,
    RangeDomain,
    StructDomain,
    StructField,
    TextDomain,
)


def test_number_coerces_numeric_text() -> None:
    number = NumberDomain()
    assert number.check("75.50").value == 75.5
    assert number.check(" 12 ").value == 12
    assert not number.check("twelve").ok
    assert not number.check(True).ok
    assert not number.check("nan").ok


def test_range_bounds_are_inclusive() -> None:
    domain = RangeDomain(1, 5)
    assert domain.check(1).ok
    assert domain.check("5").value == 5
    outside = domain.check(6)
    assert not outside.ok
    assert "outside [1, 5]" in outside.reason


def test_enum_matches_type_and_value() -> None:
    domain = EnumDomain(("1", "2"))
    assert domain.check("1").ok
    assert not domain.check(1).ok
    assert EnumDomain((True,)).check(1).ok is False


def test_text_bool_and_list() -> None:
    assert TextDomain().check("x").ok
    assert not TextDomain().check(3).ok
    assert BoolDomain().check(False).value is False
    assert not BoolDomain().check("false").ok
    assert ListDomain().check(("a", "b")).value == ["a", "b"]


def test_struct_checks_required_members() -> None:
    domain = StructDomain(
        (StructField("street", TextDomain()), StructField("zip", TextDomain(), required=False))
    )
    assert domain.check({"street": "Main"}).value == {"street": "Main"}
    missing = domain.check({"zip": "123"})
    assert not missing.ok
    assert "street" in missing.reason
    bad = domain.check({"street": 4})
    assert bad.reason.startswith("street:")


def test_describe_is_serializable_shape() -> None:
    assert RangeDomain(0, 1).describe() == {"kind": "range", "min": 0, "max": 1}
    assert EnumDomain(("a",)).describe() == {"kind": "enum", "options": ["a"]}
    struct = StructDomain((StructField("n", NumberDomain(), required=False),))
    assert struct.describe() == {
        "kind": "struct",
        "fields": {"n": {"kind": "number", "required": False}},
    }


def test_accepts_models_assignability() -> None:
    assert AnyDomain().accepts(EnumDomain(("a",)))
    assert TextDomain().accepts(EnumDomain(("a", "b")))
    assert not TextDomain().accepts(EnumDomain((1,)))
    assert EnumDomain(("a", "b", "c")).accepts(EnumDomain(("a", "b")))
    assert not EnumDomain(("a",)).accepts(EnumDomain(("a", "b")))
    assert NumberDomain().accepts(RangeDomain(0, 3))
    assert RangeDomain(0, 10).accepts(RangeDomain(2, 3))
    assert not RangeDomain(0, 10).accepts(NumberDomain())
