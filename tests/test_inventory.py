import io
import json

import pytest

from ntconnect.inventory import Inventory, encode_value


def test_decode_from_stream():
    data = b"\nfoo=bar\nbar=baz\nbar=foo\nbaz=\n"
    inv = Inventory.from_stream(io.BytesIO(data))
    expected = Inventory({"foo": ["bar"], "bar": ["baz", "foo"], "baz": [""]})
    assert inv == expected
    assert inv.digest() == expected.digest()
    assert json.loads(inv.to_json()) == [
        {"name": "bar", "value": ["baz", "foo"]},
        {"name": "baz", "value": ""},
        {"name": "foo", "value": "bar"},
    ]


def test_decode_empty_stream():
    inv = Inventory.from_stream(io.BytesIO(b""))
    assert inv == Inventory()
    assert inv.digest() == Inventory().digest()


def test_empty_digest_is_fnv_offset_basis():
    assert Inventory().digest() == bytes.fromhex("cbf29ce484222325")


class _FailingReader:
    def __iter__(self):
        return self

    def __next__(self):
        raise EOFError("unexpected EOF")


def test_error_unexpected_eof():
    with pytest.raises(EOFError):
        Inventory.from_stream(_FailingReader())


def test_text_stream_and_crlf():
    inv = Inventory.from_stream(io.StringIO("a=1\r\nb=x=y\nnoequals\n"))
    assert inv == {"a": ["1"], "b": ["x=y"]}


def test_digest_depends_on_content_not_insertion_order():
    a = Inventory({"x": ["1"], "y": ["2"]})
    b = Inventory({"y": ["2"], "x": ["1"]})
    assert a.digest() == b.digest()
    assert a.digest() != Inventory({"x": ["1"], "y": ["3"]}).digest()


def test_encode_value():
    assert encode_value([]) == ""
    assert encode_value(["one"]) == "one"
    assert encode_value(["a", "b"]) == ["a", "b"]


def test_to_json_empty_values():
    assert json.loads(Inventory({"k": []}).to_json()) == [{"name": "k", "value": ""}]