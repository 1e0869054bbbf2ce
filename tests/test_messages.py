import pytest

from replidb.messages import (
    Command,
    CommandType,
    DecodeError,
    ExecuteRequest,
    ExecuteResult,
    LoadRequest,
    Noop,
    Parameter,
    QueryRequest,
    QueryRows,
    Request,
    Statement,
    Values,
    decode_message,
    encode_message,
)


def test_command_wire_bytes():
    assert encode_message(Command(type=CommandType.QUERY)) == b"\x08\x01"


def test_empty_message_encodes_to_nothing():
    assert encode_message(Command()) == b""
    assert decode_message(b"", Command) == Command()


@pytest.mark.parametrize(
    "value", [None, 0, -1, 2**62, -(2**63), 1.5, True, False, b"\x00\x01", "fiona", ""]
)
def test_parameter_round_trip(value):
    p = Parameter(value=value, name="n")
    got = decode_message(encode_message(p), Parameter)
    assert got == p
    assert type(got.value) is type(value)


def test_parameter_unsupported_type():
    with pytest.raises(TypeError):
        encode_message(Parameter(value=object()))


def test_query_request_round_trip():
    r = QueryRequest(
        request=Request(
            transaction=True,
            statements=[
                Statement(sql="SELECT ?", parameters=[Parameter(value=5), Parameter(value="x", name="a")]),
                Statement(sql="SELECT 1"),
            ],
        ),
        timings=True,
        freshness=100,
    )
    assert decode_message(encode_message(r), QueryRequest) == r


def test_other_messages_round_trip():
    for msg in (
        ExecuteRequest(request=Request(statements=[Statement(sql="x")]), timings=True),
        LoadRequest(data=b"abc" * 10),
        Noop(id="node-1"),
        Command(type=CommandType.LOAD, sub_command=b"\x01\x02", compressed=True),
        ExecuteResult(last_insert_id=-3, rows_affected=2, error="bad", time=0.25),
        QueryRows(
            columns=["a", "b"],
            types=["int", "text"],
            values=[Values(parameters=[Parameter(value=1), Parameter(value="z")])],
            error="",
            time=1.0,
        ),
    ):
        assert decode_message(encode_message(msg), type(msg)) == msg


def test_decoded_command_type_is_enum():
    got = decode_message(encode_message(Command(type=CommandType.EXECUTE)), Command)
    assert got.type is CommandType.EXECUTE


def test_truncated_data_raises():
    data = encode_message(Noop(id="hello"))
    with pytest.raises(DecodeError):
        decode_message(data[:-2], Noop)