import pytest
from bson.decimal128 import Decimal128

from shakesync.converter import (
    ConversionError,
    RawConverter,
    RawData,
    SameConverter,
    TypeConverter,
    new_converter,
)


def test_raw_single_number():
    out = RawConverter().run({"test": {"N": "12345"}})
    assert out.data == {"test": {"N": "12345"}}


def test_raw_number_and_string():
    out = RawConverter().run({"test": {"N": "12345"}, "fuck": {"S": "hello"}})
    assert out.data == {"test": {"N": "12345"}, "fuck": {"S": "hello"}}


def test_raw_all_scalar_and_set_types():
    src = {
        "test": {"N": "12345"},
        "fuck": {"S": "hello"},
        "test-string-list": {"SS": ["z1", "z2", "z3"]},
        "test-number-list": {"NS": ["123", "456", "78999999999999999999999999999"]},
        "test-bool": {"BOOL": True},
        "test-byte": {"B": bytes([123, 45, 78, 0, 12])},
        "test-byte-list": {"BS": [bytes([123, 33, 44, 0, 55]), bytes([0, 1, 2, 0, 5])]},
    }
    out = RawConverter().run(src)
    assert out.data == {
        "test": {"N": "12345"},
        "fuck": {"S": "hello"},
        "test-string-list": {"SS": ["z1", "z2", "z3"]},
        "test-number-list": {"NS": ["123", "456", "78999999999999999999999999999"]},
        "test-bool": {"BOOL": True},
        "test-byte": {"B": bytes([123, 45, 78, 0, 12])},
        "test-byte-list": {"BS": [bytes([123, 33, 44, 0, 55]), bytes([0, 1, 2, 0, 5])]},
    }


def test_raw_nested_list_map_and_null():
    src = {
        "test": {"N": "12345"},
        "test-inner-struct": {
            "L": [
                {"S": "hello-inner", "N": "12345"},
                {"SS": ["zi1", "zi2", "zi3"]},
            ]
        },
        "test-inner-map": {"M": {"test": {"N": "12345000"}}},
        "test-NULL": {"NULL": False},
    }
    out = RawConverter().run(src)
    assert out.data == {
        "test": {"N": "12345"},
        "test-inner-struct": {
            "L": [
                {"S": "hello-inner", "N": "12345"},
                {"SS": ["zi1", "zi2", "zi3"]},
            ]
        },
        "test-inner-map": {"M": {"test": {"N": "12345000"}}},
        "test-NULL": {"NULL": False},
    }


def test_type_single_number():
    out = TypeConverter().run({"test": {"N": "12345"}})
    assert out.data == {"test": Decimal128("12345")}


def test_type_large_numbers_and_float_fallback():
    src = {
        "test": {"N": "123456789101112131415161718192021"},
        "test2": {"N": "3.141592653589793238462643383279"},
        "test3": {"N": "3.1415926535897932384626433832795012345"},
    }
    out = TypeConverter().run(src)
    assert out.data == {
        "test": Decimal128("123456789101112131415161718192021"),
        "test2": Decimal128("3.141592653589793238462643383279"),
        "test3": Decimal128("3.141592653589793"),
    }


def test_type_number_and_string():
    out = TypeConverter().run({"test": {"N": "12345"}, "fuck": {"S": "hello"}})
    assert out.data == {"test": Decimal128("12345"), "fuck": "hello"}


def test_type_all_scalar_and_set_types():
    src = {
        "test": {"N": "12345"},
        "fuck": {"S": "hello"},
        "test-string-list": {"SS": ["z1", "z2", "z3"]},
        "test-number-list": {"NS": ["123", "456", "789999999999"]},
        "test-bool": {"BOOL": True},
        "test-byte": {"B": bytes([123, 45, 78, 0, 12])},
        "test-byte-list": {"BS": [bytes([123, 33, 44, 0, 55]), bytes([0, 1, 2, 0, 5])]},
    }
    out = TypeConverter().run(src)
    assert out.data == {
        "test": Decimal128("12345"),
        "fuck": "hello",
        "test-string-list": ["z1", "z2", "z3"],
        "test-number-list": [Decimal128("123"), Decimal128("456"), Decimal128("789999999999")],
        "test-bool": True,
        "test-byte": bytes([123, 45, 78, 0, 12]),
        "test-byte-list": [bytes([123, 33, 44, 0, 55]), bytes([0, 1, 2, 0, 5])],
    }


def test_type_nested_list_map_and_null():
    src = {
        "test": {"N": "12345"},
        "test-inner-struct": {
            "L": [
                {"S": "hello-inner"},
                {"SS": ["zi1", "zi2", "zi3"]},
            ]
        },
        "test-inner-map": {"M": {"test": {"N": "12345000"}}},
        "test-NULL": {"NULL": False},
        "N": {"M": {"NN": {"N": "567"}, "M": {"S": "899"}}},
    }
    out = TypeConverter().run(src)
    assert out.data == {
        "test": Decimal128("12345"),
        "test-inner-struct": ["hello-inner", ["zi1", "zi2", "zi3"]],
        "test-inner-map": {"test": Decimal128("12345000")},
        "test-NULL": False,
        "N": {"NN": Decimal128("567"), "M": "899"},
    }


def test_sizes_count_names_and_values():
    raw = RawConverter().run({"a": {"S": "xyz"}})
    typed = TypeConverter().run({"a": {"S": "xyz"}})
    assert raw == RawData(5, {"a": {"S": "xyz"}})
    assert typed == RawData(4, {"a": "xyz"})


def test_empty_item_is_rejected():
    with pytest.raises(ConversionError):
        RawConverter().run({})
    with pytest.raises(ConversionError):
        TypeConverter().run({})


def test_unparsable_number_is_rejected():
    with pytest.raises(ConversionError):
        TypeConverter().run({"n": {"N": "not-a-number"}})


def test_unknown_attribute_type_is_rejected():
    with pytest.raises(ConversionError):
        RawConverter().run({"x": {"Q": "1"}})


def test_same_converter_returns_input():
    item = {"k": {"S": "v"}}
    assert SameConverter().run(item) is item


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        ("raw", {"k": {"S": "v"}}),
        ("change", {"k": "v"}),
    ],
)
def test_new_converter_by_kind(kind, expected):
    assert new_converter(kind).run({"k": {"S": "v"}}).data == expected


def test_new_converter_same_passes_through():
    item = {"k": {"N": "1"}}
    assert new_converter("same").run(item) == {"k": {"N": "1"}}


def test_new_converter_unknown_kind():
    with pytest.raises(ConversionError):
        new_converter("bogus")